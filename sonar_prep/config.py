"""Configuration file support for sonar_prep."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from platformdirs import PlatformDirs

from .constants import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_DIR_NAME,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_SONARCLOUD_URL,
    DEFAULT_USER_HOME_DIR_NAME,
    USER_HOME_ENV_VAR,
)
from .errors import CLIError

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover (py<311)
    import tomli as tomllib


@dataclass(frozen=True)
class ConfigFile:
    host_url: Optional[str] = None
    organization: Optional[str] = None
    user_home: Optional[str] = None
    http_timeout: Optional[float] = None
    skip_jre_provisioning: Optional[bool] = None
    verbose: Optional[bool] = None
    parallel: Optional[int] = None


def default_config_path() -> Path:
    dirs = PlatformDirs(appname=DEFAULT_CONFIG_DIR_NAME, appauthor=False, roaming=True)
    return Path(dirs.user_config_path) / "config.toml"


def resolve_config_path() -> Path:
    env_value = (os.environ.get(CONFIG_ENV_VAR) or "").strip()
    if env_value:
        return Path(env_value).expanduser()
    return default_config_path()


def default_user_home() -> Path:
    return Path.home() / DEFAULT_USER_HOME_DIR_NAME


def _safe_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        normalized = value.strip()
        return normalized or None
    return str(value).strip() or None


def _safe_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


def _safe_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(str(value))
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _first_present(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in mapping:
            return mapping[key]
    return None


def load_config(path: Optional[Path] = None) -> ConfigFile:
    config_path = path or resolve_config_path()
    if not config_path.exists():
        return ConfigFile()
    try:
        data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CLIError(f"failed to read config file {config_path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise CLIError(f"failed to parse config file {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        return ConfigFile()
    return ConfigFile(
        host_url=_safe_str(data.get("host_url") or data.get("hostUrl")),
        organization=_safe_str(data.get("organization")),
        user_home=_safe_str(data.get("user_home") or data.get("userHome")),
        http_timeout=_safe_float(data.get("http_timeout") or data.get("httpTimeout")),
        skip_jre_provisioning=_safe_bool(
            _first_present(data, "skip_jre_provisioning", "skipJreProvisioning")
        ),
        verbose=_safe_bool(data.get("verbose")),
        parallel=_safe_int(data.get("parallel")),
    )


def config_template() -> str:
    return (
        "# sonar_prep configuration (TOML)\n"
        "#\n"
        "# Precedence (highest -> lowest):\n"
        "#   -d properties > SonarQube.Analysis.xml > SONARQUBE_SCANNER_PARAMS\n"
        "#   > environment variables > this file > built-in defaults\n"
        "\n"
        "# host_url = \"https://sonarqube.example.com\"\n"
        "# organization = \"my-org\"\n"
        "\n"
        "# user_home = \"~/.sonar\"  # cache root for JRE/engine/CLI downloads\n"
        "# http_timeout = 100     # seconds\n"
        "\n"
        "# skip_jre_provisioning = false\n"
        "# verbose = false\n"
        "# parallel = 1           # worker threads for JRE/engine/CLI resolution\n"
    )


def write_default_config(path: Optional[Path] = None, *, force: bool) -> Path:
    config_path = path or resolve_config_path()
    if config_path.exists() and not force:
        raise CLIError(f"config file already exists: {config_path} (use --force to overwrite)")
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(config_template(), encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"failed to write config file {config_path}: {exc}") from exc
    return config_path


def effective_config(config: ConfigFile) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """
    Compute the effective config for display (no analysis properties), with sources.

    Returns (values, sources) where sources map key -> one of:
    "env", "config", "default".
    """
    sources: Dict[str, str] = {}

    host_url = config.host_url or DEFAULT_SONARCLOUD_URL
    sources["host_url"] = "config" if config.host_url else "default"

    home_env = (os.environ.get(USER_HOME_ENV_VAR) or "").strip()
    if home_env:
        user_home = home_env
        sources["user_home"] = "env"
    elif config.user_home:
        user_home = config.user_home
        sources["user_home"] = "config"
    else:
        user_home = str(default_user_home())
        sources["user_home"] = "default"

    values: Dict[str, Any] = {
        "host_url": host_url,
        "organization": config.organization,
        "user_home": str(Path(user_home).expanduser()),
        "http_timeout": config.http_timeout or DEFAULT_HTTP_TIMEOUT_SECONDS,
        "skip_jre_provisioning": bool(config.skip_jre_provisioning),
        "verbose": bool(config.verbose),
        "parallel": int(config.parallel) if config.parallel is not None else 1,
    }
    sources["organization"] = "config" if config.organization else "default"
    sources["http_timeout"] = "config" if config.http_timeout else "default"
    sources["skip_jre_provisioning"] = (
        "config" if config.skip_jre_provisioning is not None else "default"
    )
    sources["verbose"] = "config" if config.verbose is not None else "default"
    sources["parallel"] = "config" if config.parallel is not None else "default"
    return values, sources
