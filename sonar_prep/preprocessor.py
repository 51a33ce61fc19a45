"""The begin-step pipeline."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .analysis_config import generate_analysis_config
from .analyzers import AnalyzerSettings, EmbeddedAnalyzerInstaller, RoslynAnalyzerProvider
from .build_settings import BuildSettings
from .cache import cache_root_for
from .console import configure_console, log, log_debug, log_error, log_warning
from .constants import SUPPORTED_LANGUAGES
from .context import AppContext
from .errors import CLIError
from .properties import AggregateProperties, ListPropertiesProvider
from .resolvers import EngineResolver, JreResolver, Resolver, ScannerCliResolver
from .server import SonarServer, create_server
from .settings import ProcessedSettings
from .utils import redact

DOWNLOAD_TELEMETRY = {
    "CacheHit": "CacheHit",
    "Downloaded": "Downloaded",
    "DownloadError": "Failed",
}


@dataclass
class ResolvedArtifacts:
    java_exe_path: Optional[Path] = None
    engine_jar_path: Optional[Path] = None
    scanner_cli_path: Optional[Path] = None
    telemetry: Optional[Dict[str, str]] = None


class PreProcessor:
    """Runs the begin step against one server and writes the analysis config."""

    def __init__(
        self,
        context: Optional[AppContext] = None,
        *,
        server_factory: Optional[Callable[[ProcessedSettings, AppContext], SonarServer]] = None,
    ) -> None:
        self.context = context or AppContext()
        self.server_factory = server_factory or create_server

    def execute(self, settings: ProcessedSettings, build_settings: BuildSettings) -> bool:
        configure_console(verbose=settings.verbose)
        build_settings.ensure_empty_directories()

        server = self.server_factory(settings, self.context)
        try:
            return self._run(server, settings, build_settings)
        finally:
            server.close()

    def _run(
        self, server: SonarServer, settings: ProcessedSettings, build_settings: BuildSettings
    ) -> bool:
        server.warn_if_deprecated()
        if not server.is_server_license_valid():
            log_error("Exiting: the server license is not valid")
            return False

        artifacts = self.resolve_artifacts(server, settings)
        if artifacts is None:
            return False

        server_properties = server.download_properties(
            settings.project_key, settings.project_branch
        )
        installed = set(server.download_all_languages())
        languages = []
        for language in SUPPORTED_LANGUAGES:
            if language in installed:
                languages.append(language)
            else:
                log_debug(f"The language '{language}' is not installed on the server")

        provider = RoslynAnalyzerProvider(
            EmbeddedAnalyzerInstaller(server, cache_root_for(settings.user_home) / "plugins"),
            build_settings,
        )
        analyzers: List[AnalyzerSettings] = []
        failures = 0
        for language in languages:
            try:
                result = self._setup_language(
                    server, provider, settings, server_properties, language
                )
            except CLIError as exc:
                failures += 1
                log_error(
                    f"error: failed to set up the analyzers for '{language}': {redact(str(exc))}"
                )
                continue
            if result is not None:
                analyzers.append(result)
        if languages and failures == len(languages):
            log_error("Exiting: none of the server languages could be set up")
            return False

        generate_analysis_config(
            settings,
            build_settings,
            server_properties,
            analyzers,
            server.server_version,
            java_exe_path=artifacts.java_exe_path,
            engine_jar_path=artifacts.engine_jar_path,
            scanner_cli_path=artifacts.scanner_cli_path,
            additional_config=artifacts.telemetry,
        )
        return True

    def _setup_language(
        self,
        server: SonarServer,
        provider: RoslynAnalyzerProvider,
        settings: ProcessedSettings,
        server_properties: Dict[str, str],
        language: str,
    ) -> Optional[AnalyzerSettings]:
        profile = server.try_download_quality_profile(
            settings.project_key, settings.project_branch, language
        )
        if not profile:
            log_debug(f"No quality profile found for language '{language}'; skipping it")
            return None
        rules = server.download_rules(profile)
        if not any(rule.is_active for rule in rules):
            log_debug(f"Quality profile '{profile}' has no active rules for '{language}'")
        properties = AggregateProperties(
            *settings.aggregate.providers,
            ListPropertiesProvider(server_properties, provider_type="server"),
        )
        return provider.setup_analyzer(properties, rules, language)

    def resolve_artifacts(
        self, server: SonarServer, settings: ProcessedSettings
    ) -> Optional[ResolvedArtifacts]:
        jre = JreResolver(server, settings.user_home)
        engine = EngineResolver(server, settings.user_home)
        cli = ScannerCliResolver(
            settings.user_home,
            self.context.http_client_factory,
            timeout=settings.http_timeout_seconds,
        )
        resolvers: List[Resolver] = [jre, engine, cli]
        if self.context.parallel > 1:
            log_debug(f"Resolving artifacts in parallel (workers={self.context.parallel})")
            with ThreadPoolExecutor(max_workers=min(self.context.parallel, len(resolvers))) as pool:
                futures = [pool.submit(item.resolve_path, settings) for item in resolvers]
                java_path, engine_path, cli_path = [future.result() for future in futures]
        else:
            java_path, engine_path, cli_path = [item.resolve_path(settings) for item in resolvers]

        if java_path is None and jre.is_provisioning_expected(settings):
            log_error("error: the JRE could not be provisioned")
            return None
        if java_path is None and not settings.java_exe_path:
            log_warning("No JRE was provisioned; the scanner will use the Java found on the PATH")
        if engine_path is None and engine.is_provisioning_expected(settings):
            log_error("error: the scanner engine could not be provisioned")
            return None
        if cli_path is None:
            log_error("error: the scanner CLI could not be provisioned")
            return None

        expected = jre.is_provisioning_expected(settings)
        telemetry = {"jre.bootstrapping": "Enabled" if expected else "Disabled"}
        if jre.last_result is not None:
            telemetry["jre.download"] = DOWNLOAD_TELEMETRY.get(jre.last_result, jre.last_result)
        log("Scanner artifacts resolved")
        return ResolvedArtifacts(java_path, engine_path, cli_path, telemetry)
