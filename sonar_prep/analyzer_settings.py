"""Per-project analyzer settings: merge with or override the project's own configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .analysis_config import AnalysisConfig
from .analyzers import AnalyzerSettings
from .console import log, log_debug
from .constants import (
    MERGE_SETTINGS_MIN_VERSION,
    MERGED_RULESET_FILE_NAME,
    PROP_EXCLUDE_TEST_PROJECTS,
)
from .errors import CLIError
from .rulesets import write_merged_ruleset
from .utils import file_name

SONAR_DOTNET_PLUGIN_KEYS = ("csharp", "vbnet")
SONAR_ANALYZER_PREFIX = "sonaranalyzer"
DLL_EXTENSION = ".dll"


@dataclass
class ProjectInputs:
    project_dir: Path
    project_config_dir: Path
    original_ruleset_path: Optional[str] = None
    original_analyzers: List[str] = field(default_factory=list)
    original_additional_files: List[str] = field(default_factory=list)
    is_test_project: bool = False


@dataclass
class ProjectAnalyzerOutputs:
    ruleset_path: Optional[str]
    analyzer_paths: List[str]
    additional_file_paths: List[str]


def should_merge_analysis_settings(server_version: Optional[Tuple[int, ...]]) -> bool:
    if server_version is not None and server_version >= MERGE_SETTINGS_MIN_VERSION:
        return True
    log(
        "External issues are not supported on this version of SonarQube. "
        "You need at least SonarQube 7.4 to see the issues of third-party Roslyn analyzers."
    )
    return False


def _union(first: Sequence[str], second: Sequence[str]) -> List[str]:
    merged: List[str] = []
    for entry in list(first) + list(second):
        if entry not in merged:
            merged.append(entry)
    return merged


def merge_analyzers(config_paths: Sequence[str], project_paths: Sequence[str]) -> List[str]:
    """Union of both lists without the project's own copies of SonarAnalyzer."""
    duplicates = [
        path for path in project_paths if file_name(path).startswith(SONAR_ANALYZER_PREFIX)
    ]
    _log_removed(duplicates)
    return _union(config_paths, [path for path in project_paths if path not in duplicates])


def merge_additional_files(config_files: Sequence[str], project_files: Sequence[str]) -> List[str]:
    """Union of both lists; project files named like a config file are dropped."""
    config_names = {file_name(path) for path in config_files if file_name(path)}
    duplicates = [path for path in project_files if file_name(path) in config_names]
    _log_removed(duplicates)
    return _union(config_files, [path for path in project_files if path not in duplicates])


def _log_removed(paths: Sequence[str]) -> None:
    log_debug(f"Removing duplicate files: {', '.join(paths) if paths else '{none}'}")


def analyzer_dlls(paths: Sequence[str]) -> List[str]:
    return [path for path in paths if path.lower().endswith(DLL_EXTENSION)]


def _absolute_ruleset_path(project: ProjectInputs, ruleset_path: str) -> Path:
    candidate = Path(ruleset_path)
    if candidate.is_absolute():
        resolved = candidate
    else:
        resolved = (project.project_dir / candidate).resolve()
    if not resolved.exists():
        log_debug(f"The ruleset '{resolved}' does not exist")
    return resolved


def _merged_ruleset(settings: AnalyzerSettings, project: ProjectInputs) -> Optional[str]:
    original = project.original_ruleset_path
    if not original:
        log_debug(f"No project ruleset was supplied; using '{settings.ruleset_path}'")
        return settings.ruleset_path
    if settings.ruleset_path is None:
        raise CLIError(
            f"no generated ruleset is available for language '{settings.language}' "
            f"to merge with '{original}'"
        )
    merged = project.project_config_dir / MERGED_RULESET_FILE_NAME
    write_merged_ruleset(
        _absolute_ruleset_path(project, original), Path(settings.ruleset_path), merged
    )
    return str(merged)


def _excludes_test_projects(config: AnalysisConfig) -> bool:
    value = config.server_setting(PROP_EXCLUDE_TEST_PROJECTS)
    return value is not None and value.strip().lower() == "true"


def resolve_project_analyzer_settings(
    config: AnalysisConfig, language: str, project: ProjectInputs
) -> ProjectAnalyzerOutputs:
    settings = config.analyzer_settings_for(language)
    if settings is None:
        log_debug(f"No analyzer settings for language '{language}'")
        return ProjectAnalyzerOutputs(None, [], list(project.original_additional_files))

    if project.is_test_project and _excludes_test_projects(config):
        log_debug("Configuring the test project with all rules deactivated")
        assemblies = [
            path
            for plugin in settings.analyzer_plugins
            if plugin.key.lower() in SONAR_DOTNET_PLUGIN_KEYS
            for path in plugin.assembly_paths
        ]
        return ProjectAnalyzerOutputs(
            settings.deactivated_ruleset_path,
            analyzer_dlls(assemblies),
            list(settings.additional_file_paths),
        )

    additional_files = merge_additional_files(
        settings.additional_file_paths, project.original_additional_files
    )
    if should_merge_analysis_settings(config.find_server_version()):
        log_debug("Merging the project analyzer settings with the generated ones")
        analyzers = merge_analyzers(settings.analyzer_assembly_paths, project.original_analyzers)
        ruleset = _merged_ruleset(settings, project)
    else:
        log_debug("Overwriting the project analyzer settings")
        analyzers = list(settings.analyzer_assembly_paths)
        ruleset = settings.ruleset_path
    return ProjectAnalyzerOutputs(ruleset, analyzer_dlls(analyzers), additional_files)
