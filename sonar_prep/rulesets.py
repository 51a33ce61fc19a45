"""Quality profile rules and the Roslyn ruleset / SonarLint.xml files built from them."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .console import log_debug
from .constants import (
    RULESET_DESCRIPTION,
    RULESET_NAME,
    RULESET_TOOLS_VERSION,
    VBNET_LANGUAGE,
)
from .errors import CLIError
from .properties import AggregateProperties

ROSLYN_REPOSITORY_PREFIX = "roslyn."
SONARANALYZER_PARTIAL_REPO_KEY_PREFIX = "sonaranalyzer-"
SONARANALYZER_REPOSITORIES = ("csharpsquid", "vbnet")

ACTION_WARNING = "Warning"
ACTION_NONE = "None"
ACTION_DEFAULT = "Default"


@dataclass
class Rule:
    repo_key: str
    rule_key: str
    is_active: bool
    internal_key: Optional[str] = None
    template_key: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleAction:
    id: str
    action: str


@dataclass
class AnalyzerRules:
    analyzer_id: str
    rule_namespace: str
    rule_list: List[RuleAction] = field(default_factory=list)


@dataclass(frozen=True)
class RuleSetInclude:
    path: str
    action: str = ACTION_DEFAULT


@dataclass
class RuleSet:
    name: str = RULESET_NAME
    description: str = RULESET_DESCRIPTION
    tools_version: str = RULESET_TOOLS_VERSION
    includes: List[RuleSetInclude] = field(default_factory=list)
    rules: List[AnalyzerRules] = field(default_factory=list)


def sonaranalyzer_partial_repo_key(language: str) -> str:
    return f"{SONARANALYZER_PARTIAL_REPO_KEY_PREFIX}{language}"


def partial_repo_key(repo_key: str, language: str) -> Optional[str]:
    """Map a server repository key to the partial key used for plugin properties."""
    if repo_key.startswith(ROSLYN_REPOSITORY_PREFIX):
        return repo_key[len(ROSLYN_REPOSITORY_PREFIX):]
    if repo_key in SONARANALYZER_REPOSITORIES:
        return sonaranalyzer_partial_repo_key(language)
    return None


def _mandatory_property(properties: AggregateProperties, key: str) -> str:
    found, value = properties.try_get_value(key)
    if found and value is not None:
        return value
    if key.startswith(sonaranalyzer_partial_repo_key(VBNET_LANGUAGE)):
        raise CLIError(
            f"Property doesn't exist: {key}. Possible cause: this Scanner is not compatible "
            "with SonarVB 2.X. If necessary, upgrade SonarVB to 3.0+ in SonarQube."
        )
    raise CLIError(
        f"Key doesn't exist: {key}. This property should be set by the plugin in SonarQube."
    )


def generate_ruleset(
    properties: AggregateProperties,
    rules: Iterable[Rule],
    language: str,
    deactivate_all: bool = False,
) -> RuleSet:
    """
    Group rules by partial repository key and map them to ruleset actions.

    Active rules become `Warning` (or `None` when `deactivate_all` is set),
    inactive rules become `None`. Rules from repositories that are neither
    `roslyn.*` nor SonarAnalyzer ones are ignored.
    """
    grouped: Dict[str, Dict[str, str]] = {}
    for rule in rules:
        partial = partial_repo_key(rule.repo_key, language)
        if partial is None:
            continue
        actions = grouped.setdefault(partial, {})
        action = ACTION_WARNING if rule.is_active and not deactivate_all else ACTION_NONE
        if actions.get(rule.rule_key) == ACTION_WARNING:
            continue
        actions[rule.rule_key] = action

    ruleset = RuleSet()
    for partial in sorted(grouped):
        actions = grouped[partial]
        ruleset.rules.append(
            AnalyzerRules(
                analyzer_id=_mandatory_property(properties, f"{partial}.analyzerId"),
                rule_namespace=_mandatory_property(properties, f"{partial}.ruleNamespace"),
                rule_list=[RuleAction(rule_id, actions[rule_id]) for rule_id in sorted(actions)],
            )
        )
    return ruleset


def _write_xml(root: ET.Element, path: Path) -> None:
    tree = ET.ElementTree(root)
    ET.indent(tree, space="  ")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tree.write(path, encoding="utf-8", xml_declaration=True)
    except OSError as exc:
        raise CLIError(f"failed to write {path}: {exc}") from exc


def ruleset_to_element(ruleset: RuleSet) -> ET.Element:
    root = ET.Element(
        "RuleSet",
        {
            "Name": ruleset.name,
            "Description": ruleset.description,
            "ToolsVersion": ruleset.tools_version,
        },
    )
    for include in ruleset.includes:
        ET.SubElement(root, "Include", {"Path": include.path, "Action": include.action})
    for group in ruleset.rules:
        rules_el = ET.SubElement(
            root,
            "Rules",
            {"AnalyzerId": group.analyzer_id, "RuleNamespace": group.rule_namespace},
        )
        for rule in group.rule_list:
            ET.SubElement(rules_el, "Rule", {"Id": rule.id, "Action": rule.action})
    return root


def write_ruleset(ruleset: RuleSet, path: Path) -> Path:
    log_debug(f"Writing ruleset to {path}")
    _write_xml(ruleset_to_element(ruleset), path)
    return path


def load_ruleset(path: Path) -> RuleSet:
    try:
        root = ET.parse(path).getroot()
    except (OSError, ET.ParseError) as exc:
        raise CLIError(f"failed to read ruleset {path}: {exc}") from exc
    ruleset = RuleSet(
        name=root.get("Name", ""),
        description=root.get("Description", ""),
        tools_version=root.get("ToolsVersion", ""),
    )
    for include_el in root.findall("Include"):
        ruleset.includes.append(
            RuleSetInclude(include_el.get("Path", ""), include_el.get("Action", ACTION_DEFAULT))
        )
    for rules_el in root.findall("Rules"):
        ruleset.rules.append(
            AnalyzerRules(
                analyzer_id=rules_el.get("AnalyzerId", ""),
                rule_namespace=rules_el.get("RuleNamespace", ""),
                rule_list=[
                    RuleAction(rule_el.get("Id", ""), rule_el.get("Action", ""))
                    for rule_el in rules_el.findall("Rule")
                ],
            )
        )
    return ruleset


def write_merged_ruleset(original: Path, generated: Path, merged: Path) -> Path:
    """Write `merged` as the generated ruleset that first includes `original`."""
    ruleset = load_ruleset(generated)
    ruleset.includes.insert(0, RuleSetInclude(str(original)))
    log_debug(f"Merging ruleset '{original}' into '{merged}'")
    _write_xml(ruleset_to_element(ruleset), merged)
    return merged


def _key_value(parent: ET.Element, tag: str, key: str, value: str) -> None:
    entry = ET.SubElement(parent, tag)
    ET.SubElement(entry, "Key").text = key
    ET.SubElement(entry, "Value").text = value


def write_sonarlint_xml(
    path: Path,
    language: str,
    active_rules: Sequence[Rule],
    properties: AggregateProperties,
) -> Path:
    root = ET.Element("AnalysisInput")
    settings_el = ET.SubElement(root, "Settings")
    prefix = f"sonar.{language}."
    for prop in properties.get_all_properties():
        if prop.key.startswith(prefix):
            _key_value(settings_el, "Setting", prop.key, prop.value)

    rules_el = ET.SubElement(root, "Rules")
    for rule in active_rules:
        if rule.repo_key not in SONARANALYZER_REPOSITORIES:
            continue
        rule_el = ET.SubElement(rules_el, "Rule")
        ET.SubElement(rule_el, "Key").text = rule.rule_key
        if rule.parameters:
            params_el = ET.SubElement(rule_el, "Parameters")
            for key in sorted(rule.parameters):
                _key_value(params_el, "Parameter", key, rule.parameters[key])
    ET.SubElement(root, "Files")
    _write_xml(root, path)
    return path
