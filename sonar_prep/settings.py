"""Validated local settings for the begin step."""

from __future__ import annotations

import os
import platform
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from .config import ConfigFile, default_user_home
from .console import log_warning
from .constants import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    PROP_API_BASE_URL,
    PROP_ARCH,
    PROP_ENGINE_JAR_PATH,
    PROP_HOST_URL,
    PROP_HTTP_TIMEOUT,
    PROP_JAVA_EXE_PATH,
    PROP_LOGIN,
    PROP_ORGANIZATION,
    PROP_OS,
    PROP_PASSWORD,
    PROP_PROJECT_BRANCH,
    PROP_REGION,
    PROP_SCANNER_CLI_PATH,
    PROP_SKIP_JRE_PROVISIONING,
    PROP_SONARCLOUD_URL,
    PROP_TOKEN,
    PROP_TRUSTSTORE_PASSWORD,
    PROP_TRUSTSTORE_PATH,
    PROP_USER_HOME,
    PROP_VERBOSE,
    USER_HOME_ENV_VAR,
)
from .errors import CLIError
from .properties import (
    AggregateProperties,
    CmdLinePropertyProvider,
    EnvScannerPropertiesProvider,
    FilePropertyProvider,
)
from .server_info import ServerInfo, resolve_server_info
from .utils import parse_bool

_PROJECT_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9:\-_.]*[a-zA-Z:\-_.]+[a-zA-Z0-9:\-_.]*$")


@dataclass(frozen=True)
class PlatformInfo:
    os_name: str
    arch: str


def normalize_os(system: str) -> str:
    system_lower = system.lower()
    if system_lower == "darwin":
        return "macos"
    if system_lower == "windows":
        return "windows"
    if system_lower == "linux":
        return "alpine" if _is_alpine() else "linux"
    return system_lower


def normalize_arch(machine: str) -> str:
    value = machine.lower()
    if value in {"x86_64", "amd64", "x64"}:
        return "x64"
    if value in {"arm64", "aarch64"}:
        return "aarch64"
    return value


def _is_alpine() -> bool:
    try:
        release = Path("/etc/os-release").read_text(encoding="utf-8")
    except OSError:
        return False
    return "alpine" in release.lower()


@lru_cache()
def get_platform_info() -> PlatformInfo:
    return PlatformInfo(normalize_os(platform.system()), normalize_arch(platform.machine()))


def parse_http_timeout(value: Optional[str], fallback: Optional[float] = None) -> float:
    default = fallback or DEFAULT_HTTP_TIMEOUT_SECONDS
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        parsed = 0.0
    if parsed <= 0:
        log_warning(
            f"The specified value `{value}` for `{PROP_HTTP_TIMEOUT}` cannot be parsed. "
            f"The default value of {default:g}s will be used. Please remove the parameter "
            "or specify the value in seconds, greater than 0."
        )
        return default
    return parsed


def validate_project_key(key: Optional[str]) -> str:
    normalized = (key or "").strip()
    if not normalized:
        raise CLIError("The project key is required (use --key)")
    if not _PROJECT_KEY_PATTERN.match(normalized):
        raise CLIError(
            f"Invalid project key '{normalized}'. Allowed characters are alphanumeric, "
            "'-', '_', '.' and ':', with at least one non-digit."
        )
    return normalized


@dataclass(frozen=True)
class ProcessedSettings:
    """Local settings produced from the command line, the settings file and the environment."""

    project_key: str
    project_name: Optional[str]
    project_version: Optional[str]
    organization: Optional[str]
    cmdline_properties: CmdLinePropertyProvider
    file_properties: FilePropertyProvider
    env_properties: EnvScannerPropertiesProvider
    aggregate: AggregateProperties
    server_info: ServerInfo
    http_timeout_seconds: float
    user_home: Path
    operating_system: str
    architecture: str
    verbose: bool = False
    skip_jre_provisioning: bool = False

    @property
    def properties_file_name(self) -> Optional[Path]:
        return self.file_properties.path

    def try_get_setting(self, key: str) -> Tuple[bool, Optional[str]]:
        return self.aggregate.try_get_value(key)

    def setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.aggregate.get_value(key, default)

    @property
    def project_branch(self) -> Optional[str]:
        return self.setting(PROP_PROJECT_BRANCH)

    @property
    def java_exe_path(self) -> Optional[str]:
        return _blank_to_none(self.setting(PROP_JAVA_EXE_PATH))

    @property
    def engine_jar_path(self) -> Optional[str]:
        return _blank_to_none(self.setting(PROP_ENGINE_JAR_PATH))

    @property
    def scanner_cli_path(self) -> Optional[str]:
        return _blank_to_none(self.setting(PROP_SCANNER_CLI_PATH))

    @property
    def truststore_path(self) -> Optional[str]:
        return _blank_to_none(self.setting(PROP_TRUSTSTORE_PATH))

    @property
    def truststore_password(self) -> Optional[str]:
        return self.setting(PROP_TRUSTSTORE_PASSWORD)

    @property
    def token(self) -> Optional[str]:
        return _blank_to_none(self.setting(PROP_TOKEN)) or _blank_to_none(self.setting(PROP_LOGIN))

    @property
    def password(self) -> Optional[str]:
        return self.setting(PROP_PASSWORD)

    @property
    def has_cmdline_credentials(self) -> bool:
        return any(
            self.cmdline_properties.has_property(key)
            for key in (PROP_LOGIN, PROP_TOKEN)
        )


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def resolve_user_home(
    aggregate: AggregateProperties,
    config: ConfigFile,
    environ: Mapping[str, str],
) -> Path:
    explicit = _blank_to_none(aggregate.get_value(PROP_USER_HOME))
    env_value = _blank_to_none(environ.get(USER_HOME_ENV_VAR))
    candidate = explicit or env_value or config.user_home
    if candidate:
        return Path(candidate).expanduser()
    return default_user_home()


def build_settings(
    *,
    project_key: Optional[str],
    project_name: Optional[str] = None,
    project_version: Optional[str] = None,
    organization: Optional[str] = None,
    property_args: Optional[List[str]] = None,
    settings_file: Optional[Path] = None,
    cwd: Optional[Path] = None,
    config: Optional[ConfigFile] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProcessedSettings:
    """Validate inputs and build ProcessedSettings; raises CLIError on configuration errors."""
    env = os.environ if environ is None else environ
    cfg = config or ConfigFile()
    key = validate_project_key(project_key)

    cmdline = CmdLinePropertyProvider.from_args(property_args or [])
    file_props = FilePropertyProvider.from_path(settings_file, cwd or Path.cwd())
    env_props = EnvScannerPropertiesProvider.from_environment(env)
    aggregate = AggregateProperties(cmdline, file_props, env_props)

    resolved_org = _blank_to_none(organization) or cfg.organization
    if resolved_org is None and file_props.has_property(PROP_ORGANIZATION):
        raise CLIError(
            f"'{PROP_ORGANIZATION}' parameter has been detected in the analysis settings "
            "file. It can only be supplied on the command line (use --organization)."
        )

    found_host, host_url = aggregate.try_get_value(PROP_HOST_URL)
    if not found_host and cfg.host_url:
        host_url = cfg.host_url
    _, cloud_url = aggregate.try_get_value(PROP_SONARCLOUD_URL)
    server_info = resolve_server_info(
        host_url,
        cloud_url,
        aggregate.get_value(PROP_API_BASE_URL),
        aggregate.get_value(PROP_REGION),
    )

    truststore = _blank_to_none(aggregate.get_value(PROP_TRUSTSTORE_PATH))
    if truststore and not Path(truststore).expanduser().is_file():
        raise CLIError(
            f"The specified truststore file '{truststore}' could not be found. "
            f"Please check the '{PROP_TRUSTSTORE_PATH}' property."
        )

    verbose_raw = aggregate.get_value(PROP_VERBOSE)
    verbose = parse_bool(verbose_raw)
    if verbose_raw is not None and verbose is None:
        log_warning(
            f"Expecting the {PROP_VERBOSE} property to be set to either 'true' or 'false' "
            f"(case-sensitive) but it was set to '{verbose_raw}'."
        )
    skip_raw = aggregate.get_value(PROP_SKIP_JRE_PROVISIONING)
    skip_jre = parse_bool(skip_raw)
    if skip_jre is None:
        skip_jre = bool(cfg.skip_jre_provisioning)

    detected = get_platform_info()
    return ProcessedSettings(
        project_key=key,
        project_name=_blank_to_none(project_name),
        project_version=_blank_to_none(project_version),
        organization=resolved_org,
        cmdline_properties=cmdline,
        file_properties=file_props,
        env_properties=env_props,
        aggregate=aggregate,
        server_info=server_info,
        http_timeout_seconds=parse_http_timeout(
            aggregate.get_value(PROP_HTTP_TIMEOUT), cfg.http_timeout
        ),
        user_home=resolve_user_home(aggregate, cfg, env),
        operating_system=(aggregate.get_value(PROP_OS) or detected.os_name).strip(),
        architecture=(aggregate.get_value(PROP_ARCH) or detected.arch).strip(),
        verbose=bool(verbose) if verbose is not None else bool(cfg.verbose),
        skip_jre_provisioning=skip_jre,
    )
