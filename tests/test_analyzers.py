from pathlib import Path
from typing import Dict, List, Optional

import pytest

from sonar_prep.analyzers import (
    EmbeddedAnalyzerInstaller,
    Plugin,
    RoslynAnalyzerProvider,
    active_partial_repo_keys,
)
from sonar_prep.build_settings import BuildSettings
from sonar_prep.errors import CLIError
from sonar_prep.properties import AggregateProperties, ListPropertiesProvider
from sonar_prep.rulesets import Rule, load_ruleset


class FakeStaticServer:
    def __init__(self, resources: Dict[str, bytes]) -> None:
        self.resources = resources
        self.requests: List[str] = []

    def download_static_file(self, plugin_key: str, resource: str, target_dir: Path) -> Optional[Path]:
        self.requests.append(f"{plugin_key}/{resource}")
        data = self.resources.get(resource)
        if data is None:
            return None
        target = target_dir / resource
        target.write_bytes(data)
        return target


PROPERTIES = {
    "sonaranalyzer-cs.analyzerId": "SonarAnalyzer.CSharp",
    "sonaranalyzer-cs.ruleNamespace": "SonarAnalyzer.CSharp",
    "sonaranalyzer-cs.pluginKey": "csharp",
    "sonaranalyzer-cs.pluginVersion": "9.0",
    "sonaranalyzer-cs.staticResourceName": "SonarAnalyzer-9.0.zip",
    "wintellect.analyzerId": "Wintellect",
    "wintellect.ruleNamespace": "Wintellect",
    "sonar.cs.analyzeGeneratedCode": "false",
}


def _build_settings(tmp_path) -> BuildSettings:
    build = BuildSettings(analysis_base_dir=tmp_path / ".sonarqube", sources_dir=tmp_path)
    build.ensure_empty_directories()
    return build


def test_installer_fetches_unzips_and_caches(tmp_path, make_zip):
    server = FakeStaticServer(
        {"SonarAnalyzer-9.0.zip": make_zip({"SonarAnalyzer.dll": b"dll", "sub/Extra.dll": b"x"})}
    )
    installer = EmbeddedAnalyzerInstaller(server, tmp_path / "plugins")
    plugin = Plugin("csharp", "9.0", "SonarAnalyzer-9.0.zip")

    installed = installer.install_assemblies([plugin])
    assert len(installed) == 1
    names = sorted(Path(path).name for path in installed[0].assembly_paths)
    assert names == ["Extra.dll", "SonarAnalyzer.dll"]
    assert installer.plugin_dir(plugin) == tmp_path / "plugins" / "csharp" / "9.0"

    installer.install_assemblies([plugin])
    assert server.requests == ["csharp/SonarAnalyzer-9.0.zip"]


def test_installer_missing_resource_raises(tmp_path):
    installer = EmbeddedAnalyzerInstaller(FakeStaticServer({}), tmp_path / "plugins")
    with pytest.raises(CLIError) as excinfo:
        installer.install_assemblies([Plugin("csharp", "9.0", "missing.zip")])
    assert "Plugin resource not found" in str(excinfo.value)


def test_installer_without_plugins(tmp_path):
    installer = EmbeddedAnalyzerInstaller(FakeStaticServer({}), tmp_path / "plugins")
    assert installer.install_assemblies([]) == []


def test_active_partial_repo_keys_always_include_sonaranalyzer():
    rules = [Rule("roslyn.wintellect", "W1", True), Rule("csharpsquid", "S1", True)]
    assert active_partial_repo_keys(rules) == [
        "sonaranalyzer-cs",
        "sonaranalyzer-vbnet",
        "wintellect",
    ]


def test_setup_analyzer_writes_rulesets_additional_file_and_plugins(tmp_path, make_zip):
    server = FakeStaticServer({"SonarAnalyzer-9.0.zip": make_zip({"SonarAnalyzer.CSharp.dll": b"d"})})
    build = _build_settings(tmp_path)
    provider = RoslynAnalyzerProvider(
        EmbeddedAnalyzerInstaller(server, tmp_path / "plugins"), build
    )
    properties = AggregateProperties(ListPropertiesProvider(PROPERTIES))
    rules = [
        Rule("csharpsquid", "S1", True, parameters={"max": "2"}),
        Rule("csharpsquid", "S2", False),
        Rule("roslyn.wintellect", "W1", True),
    ]

    settings = provider.setup_analyzer(properties, rules, "cs")

    assert settings.language == "cs"
    assert settings.ruleset_path == str(build.sonar_config_dir / "Sonar-cs.ruleset")
    assert settings.deactivated_ruleset_path == str(build.sonar_config_dir / "Sonar-cs-none.ruleset")
    active = load_ruleset(Path(settings.ruleset_path))
    assert [(rule.id, rule.action) for rule in active.rules[0].rule_list] == [
        ("S1", "Warning"),
        ("S2", "None"),
    ]
    deactivated = load_ruleset(Path(settings.deactivated_ruleset_path))
    assert {rule.action for group in deactivated.rules for rule in group.rule_list} == {"None"}

    assert settings.additional_file_paths == [str(build.sonar_config_dir / "cs" / "SonarLint.xml")]
    assert [plugin.key for plugin in settings.analyzer_plugins] == ["csharp"]
    assert [Path(path).name for path in settings.analyzer_assembly_paths] == [
        "SonarAnalyzer.CSharp.dll"
    ]


def test_setup_analyzer_keeps_existing_additional_file(tmp_path, make_zip):
    build = _build_settings(tmp_path)
    existing = build.sonar_config_dir / "cs" / "SonarLint.xml"
    existing.parent.mkdir(parents=True)
    existing.write_text("<AnalysisInput />", encoding="utf-8")
    server = FakeStaticServer({"SonarAnalyzer-9.0.zip": make_zip({"a.dll": b"a"})})
    provider = RoslynAnalyzerProvider(
        EmbeddedAnalyzerInstaller(server, tmp_path / "plugins"), build
    )
    properties = AggregateProperties(ListPropertiesProvider(PROPERTIES))
    settings = provider.setup_analyzer(properties, [Rule("csharpsquid", "S1", True)], "cs")
    assert settings.additional_file_paths == []
    assert existing.read_text(encoding="utf-8") == "<AnalysisInput />"
