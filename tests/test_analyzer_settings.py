import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

from sonar_prep.analysis_config import AnalysisConfig, load_analysis_config, save_analysis_config
from sonar_prep.analyzer_settings import (
    ProjectInputs,
    merge_additional_files,
    merge_analyzers,
    resolve_project_analyzer_settings,
    should_merge_analysis_settings,
)
from sonar_prep.analyzers import (
    AnalyzerPlugin,
    AnalyzerSettings,
    EmbeddedAnalyzerInstaller,
    RoslynAnalyzerProvider,
)
from sonar_prep.build_settings import BuildSettings
from sonar_prep.errors import CLIError
from sonar_prep.properties import AggregateProperties, ListPropertiesProvider, Property
from sonar_prep.rulesets import Rule, RuleSetInclude, load_ruleset


def _analyzer_settings(tmp_path: Path) -> AnalyzerSettings:
    ruleset = tmp_path / "conf" / "Sonar-cs.ruleset"
    ruleset.parent.mkdir(parents=True, exist_ok=True)
    ruleset.write_text('<?xml version="1.0" encoding="utf-8"?>\n<RuleSet />', encoding="utf-8")
    return AnalyzerSettings(
        language="cs",
        ruleset_path=str(ruleset),
        deactivated_ruleset_path=str(tmp_path / "conf" / "Sonar-cs-none.ruleset"),
        analyzer_plugins=[
            AnalyzerPlugin(
                "csharp",
                "9.0",
                "cs.zip",
                ["/cache/csharp/SonarAnalyzer.CSharp.dll", "/cache/csharp/readme.txt"],
            ),
            AnalyzerPlugin("wintellect", "1.0", "w.zip", ["/cache/wintellect/Wintellect.dll"]),
        ],
        additional_file_paths=[str(tmp_path / "conf" / "cs" / "SonarLint.xml")],
    )


def _config(tmp_path: Path, version: str, *server_settings: Property) -> AnalysisConfig:
    return AnalysisConfig(
        sonar_project_key="my-project",
        sonar_qube_version=version,
        server_settings=list(server_settings),
        analyzers_settings=[_analyzer_settings(tmp_path)],
    )


def _project(tmp_path: Path, **kwargs) -> ProjectInputs:
    project_dir = tmp_path / "src" / "App"
    project_dir.mkdir(parents=True, exist_ok=True)
    defaults = dict(
        project_dir=project_dir,
        project_config_dir=tmp_path / "out" / "0" / "conf",
        original_ruleset_path="custom.ruleset",
        original_analyzers=["/nuget/other.analyzer.dll", "/nuget/SonarAnalyzer.CSharp.dll"],
        original_additional_files=["/repo/SonarLint.xml", "/repo/extra.txt"],
    )
    defaults.update(kwargs)
    return ProjectInputs(**defaults)


@pytest.mark.parametrize(
    "version, expected",
    [((7, 3), False), ((7, 4), True), ((8, 9, 0, 1), True), (None, False)],
)
def test_should_merge_analysis_settings(version, expected):
    assert should_merge_analysis_settings(version) is expected


def test_merge_analyzers_drops_project_sonaranalyzer_copies():
    merged = merge_analyzers(
        ["/cache/SonarAnalyzer.CSharp.dll"],
        ["/nuget/other.dll", "C:\\nuget\\SonarAnalyzer.CSharp.dll", "/cache/SonarAnalyzer.CSharp.dll"],
    )
    assert merged == ["/cache/SonarAnalyzer.CSharp.dll", "/nuget/other.dll"]


def test_merge_additional_files_prefers_generated_files():
    merged = merge_additional_files(
        ["/conf/cs/SonarLint.xml"],
        ["/repo/sonarlint.XML", "/repo/extra.txt"],
    )
    assert merged == ["/conf/cs/SonarLint.xml", "/repo/extra.txt"]


def test_resolve_settings_merges_on_recent_servers(tmp_path):
    config = _config(tmp_path, "7.5.0.1234")
    outputs = resolve_project_analyzer_settings(config, "cs", _project(tmp_path))

    merged = tmp_path / "out" / "0" / "conf" / "merged.ruleset"
    assert outputs.ruleset_path == str(merged)
    include = ET.parse(merged).getroot().find("Include")
    assert include.get("Path") == str((tmp_path / "src" / "App" / "custom.ruleset").resolve())
    assert outputs.analyzer_paths == [
        "/cache/csharp/SonarAnalyzer.CSharp.dll",
        "/cache/wintellect/Wintellect.dll",
        "/nuget/other.analyzer.dll",
    ]
    assert outputs.additional_file_paths == [
        str(tmp_path / "conf" / "cs" / "SonarLint.xml"),
        "/repo/extra.txt",
    ]


def test_resolve_settings_overrides_on_old_servers(tmp_path):
    config = _config(tmp_path, "7.3")
    outputs = resolve_project_analyzer_settings(config, "cs", _project(tmp_path))

    assert outputs.ruleset_path == config.analyzers_settings[0].ruleset_path
    assert outputs.analyzer_paths == [
        "/cache/csharp/SonarAnalyzer.CSharp.dll",
        "/cache/wintellect/Wintellect.dll",
    ]
    assert "/repo/extra.txt" in outputs.additional_file_paths


def test_resolve_settings_without_project_ruleset(tmp_path):
    config = _config(tmp_path, "9.9")
    outputs = resolve_project_analyzer_settings(
        config, "cs", _project(tmp_path, original_ruleset_path=None)
    )
    assert outputs.ruleset_path == config.analyzers_settings[0].ruleset_path


def test_excluded_test_project_gets_deactivated_ruleset(tmp_path):
    config = _config(tmp_path, "9.9", Property("sonar.dotnet.excludeTestProjects", "true"))
    outputs = resolve_project_analyzer_settings(
        config, "cs", _project(tmp_path, is_test_project=True)
    )
    assert outputs.ruleset_path == config.analyzers_settings[0].deactivated_ruleset_path
    assert outputs.analyzer_paths == ["/cache/csharp/SonarAnalyzer.CSharp.dll"]
    assert outputs.additional_file_paths == config.analyzers_settings[0].additional_file_paths


def test_test_project_is_analyzed_normally_without_exclusion(tmp_path):
    config = _config(tmp_path, "9.9", Property("sonar.dotnet.excludeTestProjects", "false"))
    outputs = resolve_project_analyzer_settings(
        config, "cs", _project(tmp_path, is_test_project=True)
    )
    assert outputs.ruleset_path.endswith("merged.ruleset")


def test_language_without_settings_keeps_project_files(tmp_path):
    config = _config(tmp_path, "9.9")
    outputs = resolve_project_analyzer_settings(config, "vbnet", _project(tmp_path))
    assert outputs.ruleset_path is None
    assert outputs.analyzer_paths == []
    assert outputs.additional_file_paths == ["/repo/SonarLint.xml", "/repo/extra.txt"]


def test_merge_without_generated_ruleset_fails(tmp_path):
    config = _config(tmp_path, "9.9")
    config.analyzers_settings[0].ruleset_path = None
    with pytest.raises(CLIError) as excinfo:
        resolve_project_analyzer_settings(config, "cs", _project(tmp_path))
    assert "no generated ruleset" in str(excinfo.value)


class StaticResources:
    def __init__(self, resources):
        self.resources = resources

    def download_static_file(self, plugin_key, resource, target_dir):
        target = target_dir / resource
        target.write_bytes(self.resources[resource])
        return target


def _saved_config_from_server(tmp_path, make_zip, version):
    """Run the generated-settings path the way the begin step does, then reload it."""
    build = BuildSettings(analysis_base_dir=tmp_path / ".sonarqube", sources_dir=tmp_path)
    build.ensure_empty_directories()
    server = StaticResources(
        {"SonarAnalyzer-9.0.zip": make_zip({"SonarAnalyzer.CSharp.dll": b"dll"})}
    )
    provider = RoslynAnalyzerProvider(
        EmbeddedAnalyzerInstaller(server, tmp_path / "plugins"), build
    )
    properties = AggregateProperties(
        ListPropertiesProvider(
            {
                "sonaranalyzer-cs.analyzerId": "SonarAnalyzer.CSharp",
                "sonaranalyzer-cs.ruleNamespace": "SonarAnalyzer.CSharp",
                "sonaranalyzer-cs.pluginKey": "csharp",
                "sonaranalyzer-cs.pluginVersion": "9.0",
                "sonaranalyzer-cs.staticResourceName": "SonarAnalyzer-9.0.zip",
            }
        )
    )
    settings = provider.setup_analyzer(properties, [Rule("csharpsquid", "S1000", True)], "cs")
    config = AnalysisConfig(
        sonar_project_key="my-project",
        sonar_qube_version=version,
        analyzers_settings=[settings],
    )
    save_analysis_config(config, build.analysis_config_file_path)
    return load_analysis_config(build.analysis_config_file_path)


def _rule_actions(ruleset_path):
    ruleset = load_ruleset(Path(ruleset_path))
    return {(rule.id, rule.action) for group in ruleset.rules for rule in group.rule_list}


def test_old_server_replaces_project_analyzers_with_generated_ones(tmp_path, make_zip):
    config = _saved_config_from_server(tmp_path, make_zip, "7.3")
    project = _project(
        tmp_path,
        original_ruleset_path="project.ruleset",
        original_analyzers=["/nuget/other.analyzer.dll"],
    )
    outputs = resolve_project_analyzer_settings(config, "cs", project)

    assert "/nuget/other.analyzer.dll" not in outputs.analyzer_paths
    assert [Path(path).name for path in outputs.analyzer_paths] == ["SonarAnalyzer.CSharp.dll"]
    assert outputs.ruleset_path == config.analyzers_settings[0].ruleset_path
    assert _rule_actions(outputs.ruleset_path) == {("S1000", "Warning")}


def test_recent_server_merges_project_analyzers_and_ruleset(tmp_path, make_zip):
    config = _saved_config_from_server(tmp_path, make_zip, "7.5")
    project = _project(
        tmp_path,
        original_ruleset_path="project.ruleset",
        original_analyzers=["/nuget/other.analyzer.dll"],
    )
    outputs = resolve_project_analyzer_settings(config, "cs", project)

    assert "/nuget/other.analyzer.dll" in outputs.analyzer_paths
    assert [Path(path).name for path in outputs.analyzer_paths] == [
        "SonarAnalyzer.CSharp.dll",
        "other.analyzer.dll",
    ]
    assert outputs.ruleset_path == str(project.project_config_dir / "merged.ruleset")
    merged = load_ruleset(Path(outputs.ruleset_path))
    assert merged.includes == [
        RuleSetInclude(str((project.project_dir / "project.ruleset").resolve()))
    ]
    assert _rule_actions(outputs.ruleset_path) == {("S1000", "Warning")}
