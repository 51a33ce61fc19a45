"""Server identity resolution (SonarQube vs SonarCloud, regions, API base URLs)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from .console import log_debug, log_warning
from .constants import (
    CLOUD_REGIONS,
    DEFAULT_SONARCLOUD_URL,
    PROP_API_BASE_URL,
    PROP_HOST_URL,
    PROP_REGION,
    PROP_SONARCLOUD_URL,
)
from .errors import CLIError
from .utils import redact


@dataclass(frozen=True)
class ServerInfo:
    server_url: str
    api_base_url: str
    is_sonarcloud: bool
    region: Optional[str] = None

    def log(self) -> None:
        log_debug(f"Server Url: {redact(self.server_url)}")
        log_debug(f"Api Url: {redact(self.api_base_url)}")
        log_debug(f"Is SonarCloud: {self.is_sonarcloud}")


def normalize_base_url(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _same_url(left: str, right: str) -> bool:
    return left.rstrip("/") == right.rstrip("/")


def _normalize_region(region: Optional[str]) -> str:
    normalized = (region or "").strip().lower()
    if normalized not in CLOUD_REGIONS:
        supported = ", ".join(f"'{key}'" for key in CLOUD_REGIONS if key)
        raise CLIError(
            f"Unsupported region '{region}'. List of supported regions: {supported}. "
            f"Please check the '{PROP_REGION}' property."
        )
    return normalized


def resolve_server_info(
    host_url: Optional[str],
    cloud_url: Optional[str],
    api_base_url: Optional[str] = None,
    region: Optional[str] = None,
) -> ServerInfo:
    """
    Reconcile host/cloud/API/region inputs into one ServerInfo.

    `None` means "not supplied"; a supplied blank cloud URL is treated as
    invalid when a host URL is also set.
    """
    region_key = _normalize_region(region)
    region_defaults = CLOUD_REGIONS[region_key]
    explicit_api = normalize_base_url(api_base_url)

    if region_key and (host_url is not None or cloud_url is not None or explicit_api):
        log_warning(
            f'The {PROP_REGION} parameter is set to "{region_key}". The setting will be '
            f"overriden by one or more of the properties {PROP_HOST_URL}, "
            f"{PROP_SONARCLOUD_URL}, or {PROP_API_BASE_URL}."
        )

    if host_url is not None and cloud_url is not None:
        if host_url != cloud_url:
            raise CLIError(
                f"The arguments '{PROP_HOST_URL}' and '{PROP_SONARCLOUD_URL}' are both "
                f"set and are different. Please set either '{PROP_HOST_URL}' for "
                f"SonarQube or '{PROP_SONARCLOUD_URL}' for SonarCloud."
            )
        if not cloud_url.strip():
            raise CLIError(
                f"The arguments '{PROP_HOST_URL}' and '{PROP_SONARCLOUD_URL}' are both "
                "set to an invalid value."
            )
        log_warning(
            f"The arguments '{PROP_HOST_URL}' and '{PROP_SONARCLOUD_URL}' are both set. "
            f"Please set only '{PROP_SONARCLOUD_URL}'."
        )
        return _cloud(cloud_url.strip(), explicit_api, region_key)

    if cloud_url is not None:
        return _cloud(cloud_url.strip(), explicit_api, region_key)

    if host_url is None:
        return _cloud(region_defaults.url, explicit_api, region_key)

    host = host_url.strip()
    if _same_url(host, DEFAULT_SONARCLOUD_URL):
        return _cloud(DEFAULT_SONARCLOUD_URL, explicit_api, region_key)
    api = explicit_api or f"{host.rstrip('/')}/api/v2"
    return ServerInfo(server_url=host, api_base_url=api, is_sonarcloud=False)


def _cloud(url: str, explicit_api: Optional[str], region_key: str) -> ServerInfo:
    api = explicit_api or CLOUD_REGIONS[region_key].api_url
    return ServerInfo(
        server_url=url,
        api_base_url=api,
        is_sonarcloud=True,
        region=region_key or None,
    )


def api_url(base_url: str, path: str) -> httpx.URL:
    normalized_base = base_url.rstrip("/") + "/"
    return httpx.URL(normalized_base).join(path.lstrip("/"))
