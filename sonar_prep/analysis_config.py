"""The analysis config file handed to the build and end steps."""

from __future__ import annotations

import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .analyzers import AnalyzerPlugin, AnalyzerSettings
from .build_settings import BuildSettings
from .console import log, log_debug
from .constants import (
    JAVA_HOME_ENV_VAR,
    JAVAX_TRUSTSTORE,
    JAVAX_TRUSTSTORE_PASSWORD,
    JAVAX_TRUSTSTORE_TYPE,
    PROP_ORGANIZATION,
    PROP_TRUSTSTORE_PASSWORD,
    PROP_TRUSTSTORE_PATH,
    SCANNER_OPTS_ENV_VAR,
)
from .errors import CLIError
from .properties import Property
from .settings import ProcessedSettings
from .utils import format_version, is_secured_server_property, is_sensitive_property, parse_version

SETTINGS_FILE_PATH_KEY = "settings.file.path"
WINDOWS_TRUSTSTORE_TYPE = "Windows-ROOT"


@dataclass
class AnalysisConfig:
    sonar_project_key: str
    sonar_project_name: Optional[str] = None
    sonar_project_version: Optional[str] = None
    sonar_qube_host_url: Optional[str] = None
    has_begin_step_command_line_credentials: bool = False
    sonar_qube_version: Optional[str] = None
    sonar_config_dir: Optional[str] = None
    sonar_output_dir: Optional[str] = None
    sonar_bin_dir: Optional[str] = None
    sources_directory: Optional[str] = None
    server_settings: List[Property] = field(default_factory=list)
    local_settings: List[Property] = field(default_factory=list)
    scanner_opts_settings: List[Property] = field(default_factory=list)
    analyzers_settings: List[AnalyzerSettings] = field(default_factory=list)
    java_exe_path: Optional[str] = None
    engine_jar_path: Optional[str] = None
    scanner_cli_path: Optional[str] = None
    additional_config: Dict[str, str] = field(default_factory=dict)

    def find_server_version(self) -> Optional[Tuple[int, ...]]:
        return parse_version(self.sonar_qube_version)

    def server_setting(self, key: str) -> Optional[str]:
        for prop in self.server_settings:
            if prop.key == key:
                return prop.value
        return None

    def analyzer_settings_for(self, language: str) -> Optional[AnalyzerSettings]:
        matches = [item for item in self.analyzers_settings if item.language == language]
        if len(matches) > 1:
            raise CLIError(f"the analysis config holds more than one entry for '{language}'")
        return matches[0] if matches else None


def _filtered(properties: Iterable[Property]) -> List[Property]:
    return [prop for prop in properties if not prop.contains_sensitive_data()]


def truststore_password_from_environment(environ: Mapping[str, str]) -> Optional[str]:
    opts = environ.get(SCANNER_OPTS_ENV_VAR)
    if not opts:
        return None
    prefix = f"-D{JAVAX_TRUSTSTORE_PASSWORD}="
    for token in opts.split(" "):
        if token.startswith(prefix):
            return token[len(prefix):]
    return None


def java_truststore_path(environ: Mapping[str, str]) -> Optional[str]:
    java_home = environ.get(JAVA_HOME_ENV_VAR)
    if not java_home:
        log_debug("JAVA_HOME is not set; no default truststore is used")
        return None
    candidate = Path(java_home) / "lib" / "security" / "cacerts"
    if candidate.is_file():
        return str(candidate)
    log_debug(f"The Java truststore '{candidate}' was not found")
    return None


def _quoted(value: str, windows: bool) -> str:
    if not windows or (value.startswith('"') and value.endswith('"')):
        return value
    return f'"{value}"'


def apply_truststore_settings(
    config: AnalysisConfig,
    settings: ProcessedSettings,
    *,
    environ: Optional[Mapping[str, str]] = None,
    windows: Optional[bool] = None,
) -> None:
    """Map truststore settings into JVM options for https SonarQube servers."""
    info = settings.server_info
    if info.is_sonarcloud or not info.server_url.lower().startswith("https://"):
        return
    env = os.environ if environ is None else environ
    is_windows = os.name == "nt" if windows is None else windows

    path = settings.truststore_path
    password = settings.truststore_password
    if path is None:
        if is_windows:
            config.scanner_opts_settings.append(
                Property(JAVAX_TRUSTSTORE_TYPE, WINDOWS_TRUSTSTORE_TYPE)
            )
        else:
            path = java_truststore_path(env)
            if password is None:
                password = truststore_password_from_environment(env)

    if path is not None:
        config.scanner_opts_settings.append(
            Property(JAVAX_TRUSTSTORE, _quoted(path.replace("\\", "/"), is_windows))
        )
    config.local_settings = [
        prop
        for prop in config.local_settings
        if prop.key not in (PROP_TRUSTSTORE_PATH, PROP_TRUSTSTORE_PASSWORD)
    ]
    if password is not None:
        config.scanner_opts_settings.append(
            Property(JAVAX_TRUSTSTORE_PASSWORD, _quoted(password, is_windows))
        )


def generate_analysis_config(
    settings: ProcessedSettings,
    build_settings: BuildSettings,
    server_properties: Mapping[str, str],
    analyzers_settings: Sequence[AnalyzerSettings],
    server_version: Tuple[int, ...],
    *,
    java_exe_path: Optional[Path] = None,
    engine_jar_path: Optional[Path] = None,
    scanner_cli_path: Optional[Path] = None,
    additional_config: Optional[Mapping[str, str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AnalysisConfig:
    config = AnalysisConfig(
        sonar_project_key=settings.project_key,
        sonar_project_name=settings.project_name,
        sonar_project_version=settings.project_version,
        sonar_qube_host_url=settings.server_info.server_url,
        has_begin_step_command_line_credentials=settings.has_cmdline_credentials,
        sonar_qube_version=format_version(server_version),
        sonar_config_dir=str(build_settings.sonar_config_dir),
        sonar_output_dir=str(build_settings.sonar_output_dir),
        sonar_bin_dir=str(build_settings.sonar_bin_dir),
        sources_directory=str(build_settings.sources_dir),
        java_exe_path=str(java_exe_path) if java_exe_path else settings.java_exe_path,
        engine_jar_path=str(engine_jar_path) if engine_jar_path else None,
        scanner_cli_path=str(scanner_cli_path) if scanner_cli_path else None,
        analyzers_settings=list(analyzers_settings),
    )
    config.server_settings = _filtered(
        Property(key, value)
        for key, value in server_properties.items()
        if not is_secured_server_property(key)
    )
    local = list(settings.cmdline_properties.get_all_properties())
    if settings.organization:
        local.append(Property(PROP_ORGANIZATION, settings.organization))
    config.local_settings = _filtered(local)
    if settings.properties_file_name is not None:
        config.additional_config[SETTINGS_FILE_PATH_KEY] = str(settings.properties_file_name)
    config.additional_config.update(additional_config or {})
    apply_truststore_settings(config, settings, environ=environ)

    save_analysis_config(config, build_settings.analysis_config_file_path)
    log(f"Analysis config written to {build_settings.analysis_config_file_path}")
    return config


def _text(parent: ET.Element, tag: str, value: Optional[str]) -> None:
    if value is not None:
        ET.SubElement(parent, tag).text = value


def _properties_element(parent: ET.Element, tag: str, properties: Iterable[Property]) -> None:
    container = ET.SubElement(parent, tag)
    for prop in properties:
        # secrets never reach the saved file
        if is_sensitive_property(prop.key):
            continue
        ET.SubElement(container, "Property", {"Name": prop.key}).text = prop.value


def _paths_element(parent: ET.Element, tag: str, paths: Iterable[str]) -> None:
    container = ET.SubElement(parent, tag)
    for path in paths:
        ET.SubElement(container, "Path").text = path


def _analyzer_settings_element(parent: ET.Element, settings: AnalyzerSettings) -> None:
    element = ET.SubElement(parent, "AnalyzerSettings")
    _text(element, "Language", settings.language)
    _text(element, "RulesetPath", settings.ruleset_path)
    _text(element, "DeactivatedRulesetPath", settings.deactivated_ruleset_path)
    plugins = ET.SubElement(element, "AnalyzerPlugins")
    for plugin in settings.analyzer_plugins:
        plugin_el = ET.SubElement(
            plugins,
            "AnalyzerPlugin",
            {
                "Key": plugin.key,
                "Version": plugin.version,
                "StaticResourceName": plugin.static_resource_name,
            },
        )
        _paths_element(plugin_el, "AssemblyPaths", plugin.assembly_paths)
    _paths_element(element, "AdditionalFilePaths", settings.additional_file_paths)


def save_analysis_config(config: AnalysisConfig, path: Path) -> Path:
    root = ET.Element("AnalysisConfig")
    _text(root, "SonarConfigDir", config.sonar_config_dir)
    _text(root, "SonarOutputDir", config.sonar_output_dir)
    _text(root, "SonarBinDir", config.sonar_bin_dir)
    _text(root, "SourcesDirectory", config.sources_directory)
    _text(root, "SonarQubeHostUrl", config.sonar_qube_host_url)
    _text(root, "SonarQubeVersion", config.sonar_qube_version)
    _text(root, "SonarProjectKey", config.sonar_project_key)
    _text(root, "SonarProjectVersion", config.sonar_project_version)
    _text(root, "SonarProjectName", config.sonar_project_name)
    _text(
        root,
        "HasBeginStepCommandLineCredentials",
        "true" if config.has_begin_step_command_line_credentials else "false",
    )
    _text(root, "JavaExePath", config.java_exe_path)
    _text(root, "EngineJarPath", config.engine_jar_path)
    _text(root, "ScannerCliPath", config.scanner_cli_path)

    additional = ET.SubElement(root, "AdditionalConfig")
    for key, value in config.additional_config.items():
        ET.SubElement(additional, "ConfigSetting", {"Id": key, "Value": value})
    _properties_element(root, "ServerSettings", config.server_settings)
    _properties_element(root, "LocalSettings", config.local_settings)
    _properties_element(root, "ScannerOptsSettings", config.scanner_opts_settings)
    analyzers = ET.SubElement(root, "AnalyzersSettings")
    for settings in config.analyzers_settings:
        _analyzer_settings_element(analyzers, settings)

    tree = ET.ElementTree(root)
    ET.indent(tree, space="  ")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tree.write(path, encoding="utf-8", xml_declaration=True)
    except OSError as exc:
        raise CLIError(f"failed to write analysis config {path}: {exc}") from exc
    return path


def _child_text(element: ET.Element, tag: str) -> Optional[str]:
    child = element.find(tag)
    if child is None:
        return None
    return child.text or ""


def _children(element: Optional[ET.Element], tag: str) -> List[ET.Element]:
    return element.findall(tag) if element is not None else []


def _read_properties(root: ET.Element, tag: str) -> List[Property]:
    container = root.find(tag)
    if container is None:
        return []
    return [
        Property(item.get("Name", ""), item.text or "")
        for item in container.findall("Property")
    ]


def _read_paths(element: ET.Element, tag: str) -> List[str]:
    container = element.find(tag)
    if container is None:
        return []
    return [item.text or "" for item in container.findall("Path")]


def _read_analyzer_settings(element: ET.Element) -> AnalyzerSettings:
    plugins_el = element.find("AnalyzerPlugins")
    plugins = [
        AnalyzerPlugin(
            plugin.get("Key", ""),
            plugin.get("Version", ""),
            plugin.get("StaticResourceName", ""),
            _read_paths(plugin, "AssemblyPaths"),
        )
        for plugin in _children(plugins_el, "AnalyzerPlugin")
    ]
    return AnalyzerSettings(
        language=_child_text(element, "Language") or "",
        ruleset_path=_child_text(element, "RulesetPath"),
        deactivated_ruleset_path=_child_text(element, "DeactivatedRulesetPath"),
        analyzer_plugins=plugins,
        additional_file_paths=_read_paths(element, "AdditionalFilePaths"),
    )


def load_analysis_config(path: Path) -> AnalysisConfig:
    try:
        root = ET.parse(path).getroot()
    except (OSError, ET.ParseError) as exc:
        raise CLIError(f"failed to read analysis config {path}: {exc}") from exc
    additional_el = root.find("AdditionalConfig")
    analyzers_el = root.find("AnalyzersSettings")
    return AnalysisConfig(
        sonar_project_key=_child_text(root, "SonarProjectKey") or "",
        sonar_project_name=_child_text(root, "SonarProjectName"),
        sonar_project_version=_child_text(root, "SonarProjectVersion"),
        sonar_qube_host_url=_child_text(root, "SonarQubeHostUrl"),
        has_begin_step_command_line_credentials=(
            _child_text(root, "HasBeginStepCommandLineCredentials") == "true"
        ),
        sonar_qube_version=_child_text(root, "SonarQubeVersion"),
        sonar_config_dir=_child_text(root, "SonarConfigDir"),
        sonar_output_dir=_child_text(root, "SonarOutputDir"),
        sonar_bin_dir=_child_text(root, "SonarBinDir"),
        sources_directory=_child_text(root, "SourcesDirectory"),
        server_settings=_read_properties(root, "ServerSettings"),
        local_settings=_read_properties(root, "LocalSettings"),
        scanner_opts_settings=_read_properties(root, "ScannerOptsSettings"),
        analyzers_settings=[
            _read_analyzer_settings(item) for item in _children(analyzers_el, "AnalyzerSettings")
        ],
        java_exe_path=_child_text(root, "JavaExePath"),
        engine_jar_path=_child_text(root, "EngineJarPath"),
        scanner_cli_path=_child_text(root, "ScannerCliPath"),
        additional_config={
            item.get("Id", ""): item.get("Value", "")
            for item in _children(additional_el, "ConfigSetting")
        },
    )
