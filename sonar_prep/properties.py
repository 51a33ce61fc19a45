"""Analysis property providers and their aggregate view."""

from __future__ import annotations

import json
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .constants import (
    DEFAULT_PROPERTIES_FILE_NAME,
    RESERVED_CMDLINE_KEYS,
    SCANNER_PARAMS_ENV_VAR,
)
from .errors import CLIError
from .utils import is_sensitive_property

PropertySource = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


@dataclass(frozen=True)
class Property:
    key: str
    value: str

    def contains_sensitive_data(self) -> bool:
        return is_sensitive_property(self.key)


class PropertyProvider:
    """Immutable, ordered key/value properties from a single source."""

    provider_type = "list"

    def __init__(self, properties: Iterable[Property] = ()) -> None:
        ordered: Dict[str, Property] = {}
        for prop in properties:
            if prop.key in ordered:
                first = ordered[prop.key]
                raise CLIError(
                    f"A value has already been supplied for the property '{prop.key}' "
                    f"in {self.describe_source()}: both '{first.key}={first.value}' "
                    f"and '{prop.key}={prop.value}' were supplied"
                )
            ordered[prop.key] = prop
        self._properties: Tuple[Property, ...] = tuple(ordered.values())
        self._index = ordered

    def describe_source(self) -> str:
        return f"the {self.provider_type} properties"

    def try_get_value(self, key: str) -> Tuple[bool, Optional[str]]:
        prop = self._index.get(key)
        if prop is None:
            return False, None
        return True, prop.value

    def try_get_property(self, key: str) -> Optional[Property]:
        return self._index.get(key)

    def has_property(self, key: str) -> bool:
        return key in self._index

    def get_all_properties(self) -> List[Property]:
        return list(self._properties)

    def __len__(self) -> int:
        return len(self._properties)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({len(self._properties)} properties)"


class ListPropertiesProvider(PropertyProvider):
    def __init__(self, source: PropertySource = (), *, provider_type: str = "list") -> None:
        self.provider_type = provider_type
        pairs = source.items() if isinstance(source, Mapping) else source
        super().__init__(Property(str(key), str(value)) for key, value in pairs)


class CmdLinePropertyProvider(PropertyProvider):
    provider_type = "cmdline"

    @classmethod
    def from_args(cls, args: Sequence[str]) -> "CmdLinePropertyProvider":
        """Parse `key=value` arguments (an optional leading `-d`/`/d:` is accepted)."""
        seen: Dict[str, Tuple[str, str]] = {}
        properties: List[Property] = []
        for raw in args:
            argument = _strip_property_prefix(raw)
            key, sep, value = argument.partition("=")
            key = key.strip()
            if not sep or not key:
                raise CLIError(
                    f"The format of the analysis property {raw} is invalid; "
                    "expected key=value"
                )
            if key in RESERVED_CMDLINE_KEYS:
                option = RESERVED_CMDLINE_KEYS[key]
                hint = f" Use the {option} option instead." if option else ""
                raise CLIError(
                    f"The property '{key}' is automatically set by the scanner and "
                    f"cannot be overridden on the command line.{hint}"
                )
            if key in seen:
                first_raw, first_value = seen[key]
                raise CLIError(
                    f"A value has already been supplied for the property '{key}': "
                    f"both '{first_value}' and '{value}' were supplied "
                    f"(arguments '{first_raw}' and '{raw}')"
                )
            seen[key] = (raw, value)
            properties.append(Property(key, value))
        return cls(properties)


def _strip_property_prefix(raw: str) -> str:
    value = raw.strip()
    for prefix in ("/d:", "-d:", "-D", "-d"):
        if value.startswith(prefix):
            return value[len(prefix):]
    return value


class FilePropertyProvider(PropertyProvider):
    """Properties read from a SonarQube.Analysis.xml file."""

    provider_type = "file"

    def __init__(self, properties: Iterable[Property] = (), path: Optional[Path] = None) -> None:
        self.path = path
        super().__init__(properties)

    def describe_source(self) -> str:
        if self.path is None:
            return super().describe_source()
        return f"the analysis settings file '{self.path}'"

    @classmethod
    def from_path(
        cls, path: Optional[Path], default_dir: Optional[Path] = None
    ) -> "FilePropertyProvider":
        if path is None:
            candidate = (default_dir or Path.cwd()) / DEFAULT_PROPERTIES_FILE_NAME
            if not candidate.is_file():
                return cls()
            path = candidate
        elif not path.is_file():
            raise CLIError(f"Unable to find the analysis settings file '{path}'")
        return cls(_load_properties_xml(path), path=path)


def _load_properties_xml(path: Path) -> List[Property]:
    try:
        root = ET.parse(path).getroot()
    except OSError as exc:
        raise CLIError(f"failed to read analysis settings file {path}: {exc}") from exc
    except ET.ParseError as exc:
        raise CLIError(f"Unable to read the analysis settings file {path}: {exc}") from exc
    properties: List[Property] = []
    for element in root.iter():
        if _local_name(element.tag) != "Property":
            continue
        name = (element.get("Name") or "").strip()
        if not name:
            raise CLIError(f"analysis settings file {path} contains a Property without a Name")
        properties.append(Property(name, (element.text or "").strip()))
    return properties


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


class EnvScannerPropertiesProvider(PropertyProvider):
    """Properties supplied as a JSON object in SONARQUBE_SCANNER_PARAMS."""

    provider_type = "env"

    @classmethod
    def from_environment(
        cls, environ: Optional[Mapping[str, str]] = None
    ) -> "EnvScannerPropertiesProvider":
        env = os.environ if environ is None else environ
        raw = (env.get(SCANNER_PARAMS_ENV_VAR) or "").strip()
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CLIError(
                f"Failed to parse properties from the environment variable "
                f"'{SCANNER_PARAMS_ENV_VAR}': {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise CLIError(
                f"Failed to parse properties from the environment variable "
                f"'{SCANNER_PARAMS_ENV_VAR}': expected a JSON object"
            )
        return cls(
            Property(str(key), "" if value is None else str(value))
            for key, value in data.items()
        )


class AggregateProperties:
    """Read-through view over providers; the first provider holding a key wins."""

    def __init__(self, *providers: PropertyProvider) -> None:
        self.providers: Tuple[PropertyProvider, ...] = tuple(providers)

    def try_get_value(self, key: str) -> Tuple[bool, Optional[str]]:
        for provider in self.providers:
            found, value = provider.try_get_value(key)
            if found:
                return True, value
        return False, None

    def try_get_property(self, key: str) -> Optional[Property]:
        for provider in self.providers:
            prop = provider.try_get_property(key)
            if prop is not None:
                return prop
        return None

    def has_property(self, key: str) -> bool:
        return self.try_get_property(key) is not None

    def get_value(self, key: str, default: Optional[str] = None) -> Optional[str]:
        found, value = self.try_get_value(key)
        return value if found else default

    def get_all_properties(self) -> List[Property]:
        return list(self._iter_effective())

    def _iter_effective(self) -> Iterator[Property]:
        seen = set()
        for provider in self.providers:
            for prop in provider.get_all_properties():
                if prop.key in seen:
                    continue
                seen.add(prop.key)
                yield prop
