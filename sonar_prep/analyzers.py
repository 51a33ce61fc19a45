"""Roslyn analyzer provisioning: rulesets, plugin assemblies and additional files."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from .build_settings import BuildSettings
from .console import log, log_debug
from .constants import (
    CSHARP_LANGUAGE,
    RULESET_FILE_NAME,
    RULESET_NONE_FILE_NAME,
    SONARLINT_FILE_NAME,
    VBNET_LANGUAGE,
)
from .errors import CLIError
from .properties import AggregateProperties
from .rulesets import (
    ROSLYN_REPOSITORY_PREFIX,
    SONARANALYZER_PARTIAL_REPO_KEY_PREFIX,
    Rule,
    generate_ruleset,
    sonaranalyzer_partial_repo_key,
    write_ruleset,
    write_sonarlint_xml,
)
from .server import SonarServer
from .unpack import ZipUnpacker


@dataclass(frozen=True)
class Plugin:
    key: str
    version: str
    static_resource_name: str


@dataclass(frozen=True)
class AnalyzerPlugin:
    key: str
    version: str
    static_resource_name: str
    assembly_paths: List[str] = field(default_factory=list)


@dataclass
class AnalyzerSettings:
    language: str
    ruleset_path: Optional[str] = None
    deactivated_ruleset_path: Optional[str] = None
    analyzer_plugins: List[AnalyzerPlugin] = field(default_factory=list)
    additional_file_paths: List[str] = field(default_factory=list)

    @property
    def analyzer_assembly_paths(self) -> List[str]:
        return [path for plugin in self.analyzer_plugins for path in plugin.assembly_paths]


class EmbeddedAnalyzerInstaller:
    """Fetches plugin static resources into a per-plugin, per-version cache directory."""

    def __init__(self, server: SonarServer, cache_dir: Path) -> None:
        self.server = server
        self.cache_dir = Path(cache_dir)
        log_debug(f"Local analyzer cache: {self.cache_dir}")

    def plugin_dir(self, plugin: Plugin) -> Path:
        return self.cache_dir / plugin.key / plugin.version

    def install_assemblies(self, plugins: Sequence[Plugin]) -> List[AnalyzerPlugin]:
        if not plugins:
            log("No analyzer plugins were specified")
            return []
        log("Installing required Roslyn analyzers...")
        installed: List[AnalyzerPlugin] = []
        for plugin in plugins:
            files = self._plugin_files(plugin)
            if files:
                installed.append(
                    AnalyzerPlugin(plugin.key, plugin.version, plugin.static_resource_name, files)
                )
        return installed

    def _plugin_files(self, plugin: Plugin) -> List[str]:
        log(f"Processing plugin: {plugin.key} version {plugin.version}")
        target_dir = self.plugin_dir(plugin)
        files = _cached_files(target_dir)
        if files:
            log_debug(f"Cache hit: using plugin resources from {target_dir}")
            return files
        log_debug("Cache miss: fetching plugin resources from the server")
        self._fetch(plugin, target_dir)
        return _cached_files(target_dir)

    def _fetch(self, plugin: Plugin, target_dir: Path) -> None:
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CLIError(f"failed to create plugin cache directory {target_dir}: {exc}") from exc
        downloaded = self.server.download_static_file(
            plugin.key, plugin.static_resource_name, target_dir
        )
        if downloaded is None:
            raise CLIError(
                f"Plugin resource not found: {plugin.key}, version {plugin.version}. "
                f"Resource: {plugin.static_resource_name}."
            )
        if downloaded.suffix.lower() == ".zip":
            log_debug(f"Extracting files to {target_dir}...")
            ZipUnpacker().unpack(downloaded, target_dir)


def _cached_files(directory: Path) -> List[str]:
    if not directory.is_dir():
        return []
    return sorted(
        str(path)
        for path in directory.rglob("*")
        if path.is_file() and path.suffix.lower() != ".zip"
    )


class RoslynAnalyzerProvider:
    def __init__(self, installer: EmbeddedAnalyzerInstaller, build_settings: BuildSettings) -> None:
        self.installer = installer
        self.build_settings = build_settings

    def setup_analyzer(
        self,
        properties: AggregateProperties,
        rules: Sequence[Rule],
        language: str,
    ) -> AnalyzerSettings:
        active = [rule for rule in rules if rule.is_active]
        ruleset_path = self._create_ruleset(properties, rules, language, deactivate_all=False)
        deactivated_path = self._create_ruleset(properties, rules, language, deactivate_all=True)
        plugins = self._fetch_analyzer_plugins(properties, active, language)
        additional_files = self._write_additional_files(properties, active, language)
        return AnalyzerSettings(
            language=language,
            ruleset_path=str(ruleset_path),
            deactivated_ruleset_path=str(deactivated_path),
            analyzer_plugins=plugins,
            additional_file_paths=additional_files,
        )

    def _create_ruleset(
        self,
        properties: AggregateProperties,
        rules: Sequence[Rule],
        language: str,
        *,
        deactivate_all: bool,
    ) -> Path:
        ruleset = generate_ruleset(properties, rules, language, deactivate_all=deactivate_all)
        template = RULESET_NONE_FILE_NAME if deactivate_all else RULESET_FILE_NAME
        path = self.build_settings.sonar_config_dir / template.format(language=language)
        return write_ruleset(ruleset, path)

    def _write_additional_files(
        self, properties: AggregateProperties, active: Sequence[Rule], language: str
    ) -> List[str]:
        language_dir = self.build_settings.sonar_config_dir / language
        path = language_dir / SONARLINT_FILE_NAME
        if path.exists():
            log_debug(f"Additional file for {language} already exists: {path}")
            return []
        log_debug(f"Writing additional file {path}")
        return [str(write_sonarlint_xml(path, language, active, properties))]

    def _fetch_analyzer_plugins(
        self, properties: AggregateProperties, active: Sequence[Rule], language: str
    ) -> List[AnalyzerPlugin]:
        plugins: List[Plugin] = []
        for partial in active_partial_repo_keys(active):
            key = properties.get_value(f"{partial}.pluginKey")
            version = properties.get_value(f"{partial}.pluginVersion")
            resource = properties.get_value(f"{partial}.staticResourceName")
            if key is None or version is None or resource is None:
                if not partial.startswith(SONARANALYZER_PARTIAL_REPO_KEY_PREFIX):
                    log(
                        f"Cannot provision analyzer assemblies for repository "
                        f"'{partial}' ({language}): the plugin properties are not set"
                    )
                continue
            plugins.append(Plugin(key, version, resource))
        if not plugins:
            log(f"No Roslyn analyzer plugins were specified for {language}")
            return []
        log(f"Provisioning analyzer assemblies for {language}...")
        return self.installer.install_assemblies(plugins)


def active_partial_repo_keys(active: Sequence[Rule]) -> List[str]:
    keys = {
        sonaranalyzer_partial_repo_key(CSHARP_LANGUAGE),
        sonaranalyzer_partial_repo_key(VBNET_LANGUAGE),
    }
    keys.update(
        rule.repo_key[len(ROSLYN_REPOSITORY_PREFIX):]
        for rule in active
        if rule.repo_key.startswith(ROSLYN_REPOSITORY_PREFIX)
    )
    return sorted(keys)
