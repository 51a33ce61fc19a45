"""Shared utility helpers for sonar_prep."""

from __future__ import annotations

import re
from pathlib import PurePath, PureWindowsPath
from typing import Any, Dict, Optional, Tuple

from .constants import SENSITIVE_PROPERTY_KEYS

_SENSITIVE_KV_PATTERN = re.compile(
    r"(?i)\b("
    r"token|sonar\.token|sonar\.login|sonar\.password|password|passwd|secret"
    r"|trustStorePassword|truststorePassword"
    r")\b\s*([:=])\s*([^\s]+)"
)
_AUTH_HEADER_PATTERN = re.compile(r"(?i)\bAuthorization:\s*(Bearer|Basic)\s+([^\s]+)")
_URL_CREDENTIALS_PATTERN = re.compile(r"(?i)(https?://)([^/\s:@]+):([^/\s@]+)@")


def redact(text: str) -> str:
    """Best-effort redaction for common secret patterns in logs."""
    value = str(text)
    value = _AUTH_HEADER_PATTERN.sub(lambda m: f"Authorization: {m.group(1)} ***", value)
    value = _URL_CREDENTIALS_PATTERN.sub(lambda m: f"{m.group(1)}***@", value)
    value = _SENSITIVE_KV_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}***", value)
    return value


def is_sensitive_property(key: Optional[str]) -> bool:
    """Return True when a property key names a credential."""
    if not key:
        return False
    lowered = key.lower()
    return any(sensitive.lower() in lowered for sensitive in SENSITIVE_PROPERTY_KEYS)


def is_secured_server_property(key: Optional[str]) -> bool:
    return bool(key) and key.lower().endswith(".secured")


def parse_version(value: Any) -> Optional[Tuple[int, ...]]:
    """Parse "9.9.0.65466" style versions into an int tuple."""
    text = safe_str(value)
    if not text:
        return None
    match = re.match(r"^\s*(\d+(?:\.\d+)*)", text)
    if not match:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


def format_version(version: Optional[Tuple[int, ...]]) -> str:
    if not version:
        return ""
    return ".".join(str(part) for part in version)


def file_name(path: str) -> str:
    """File name part of a path that may use either separator, lowercased."""
    if "\\" in path:
        return PureWindowsPath(path).name.lower()
    return PurePath(path).name.lower()


def parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    return None


def safe_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        if isinstance(value, bool):
            return int(value)
        return int(str(value))
    except (TypeError, ValueError):
        return None


def safe_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def as_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}

