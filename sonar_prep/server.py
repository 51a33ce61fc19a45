"""SonarQube / SonarCloud web API clients."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import httpx

from .console import log, log_debug, log_error, log_warning
from .constants import (
    DEPRECATED_BELOW_VERSION,
    JRE_PROVISIONING_MIN_VERSION,
    OLD_DEFAULT_TEST_PROJECT_PATTERN,
    PROP_LEGACY_TEST_PROJECT_PATTERN,
    PROP_TEST_PROJECT_PATTERN,
    RULES_FETCH_LIMIT,
    RULES_PAGE_SIZE,
    SETTINGS_API_MIN_VERSION,
)
from .context import AppContext, HttpClientFactory
from .downloads import HTTPXDownloader, fetch_file
from .errors import CLIError
from .http import (
    caused_by_status,
    describe_http_error,
    http_timeout,
    iter_download,
    request_headers,
    request_with_retries,
)
from .rulesets import Rule
from .server_info import ServerInfo, api_url
from .settings import ProcessedSettings
from .utils import as_dict, format_version, parse_version, safe_int, safe_str

RULE_FIELDS = "repo,name,severity,lang,internalKey,templateKey,params,actives"
OCTET_STREAM = "application/octet-stream"


@dataclass(frozen=True)
class JreMetadata:
    id: str
    filename: str
    sha256: str
    java_path: str
    download_url: Optional[str] = None


@dataclass(frozen=True)
class EngineMetadata:
    filename: str
    sha256: str
    download_url: Optional[str] = None


def component_identifier(project_key: str, branch: Optional[str] = None) -> str:
    if branch and branch.strip():
        return f"{project_key}:{branch}"
    return project_key


def parse_rule_key(key: str) -> str:
    return key[key.find(":") + 1:]


def parse_settings(payload: Any) -> Dict[str, str]:
    """Flatten an `api/settings/values` response into key/value pairs."""
    settings: Dict[str, str] = {}
    entries = as_dict(payload).get("settings")
    if not isinstance(entries, list):
        raise CLIError("invalid settings response: missing 'settings' array")
    for entry in entries:
        item = as_dict(entry)
        key = safe_str(item.get("key"))
        if not key:
            raise CLIError("invalid settings response: setting without a key")
        if "value" in item:
            settings[key] = _as_text(item["value"])
        elif "fieldValues" in item:
            for index, field_set in enumerate(item.get("fieldValues") or [], start=1):
                for name, value in as_dict(field_set).items():
                    settings[f"{key}.{index}.{name}"] = _as_text(value)
        elif "values" in item:
            settings[key] = ",".join(_as_text(value) for value in item.get("values") or [])
        else:
            raise CLIError(f"invalid settings response: no value for '{key}'")
    return settings


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def remap_test_project_pattern(settings: Dict[str, str]) -> Dict[str, str]:
    if PROP_LEGACY_TEST_PROJECT_PATTERN in settings:
        value = settings.pop(PROP_LEGACY_TEST_PROJECT_PATTERN)
        if value != OLD_DEFAULT_TEST_PROJECT_PATTERN:
            log_warning(
                f"The property '{PROP_LEGACY_TEST_PROJECT_PATTERN}' is deprecated. "
                f"Use '{PROP_TEST_PROJECT_PATTERN}' instead."
            )
        settings[PROP_TEST_PROJECT_PATTERN] = value
    return settings


def create_rule(raw: Any, actives: Any) -> Rule:
    item = as_dict(raw)
    full_key = safe_str(item.get("key")) or ""
    active_list = as_dict(actives).get(full_key)
    active = as_dict(active_list[0]) if isinstance(active_list, list) and active_list else None
    rule = Rule(
        repo_key=safe_str(item.get("repo")) or "",
        rule_key=parse_rule_key(full_key),
        is_active=active is not None,
        internal_key=safe_str(item.get("internalKey")),
        template_key=safe_str(item.get("templateKey")),
    )
    if active is not None:
        for param in active.get("params") or []:
            param_item = as_dict(param)
            key = safe_str(param_item.get("key"))
            if key:
                rule.parameters[key] = _as_text(param_item.get("value"))
        if "CheckId" in rule.parameters:
            rule.rule_key = rule.parameters["CheckId"]
    return rule


def _paging(payload: Dict[str, Any]) -> Tuple[int, int]:
    paging = as_dict(payload.get("paging"))
    if paging:
        return safe_int(paging.get("total")) or 0, safe_int(paging.get("pageSize")) or 0
    return safe_int(payload.get("total")) or 0, safe_int(payload.get("ps")) or 0


class SonarServer:
    """Operations shared by SonarQube and SonarCloud."""

    is_sonarcloud = False

    def __init__(
        self,
        client: httpx.Client,
        server_info: ServerInfo,
        version: Tuple[int, ...],
        *,
        organization: Optional[str] = None,
        token: Optional[str] = None,
        auth: Optional[httpx.Auth] = None,
        timeout: Optional[float] = None,
        client_factory: Optional[HttpClientFactory] = None,
    ) -> None:
        self.client = client
        self.server_info = server_info
        self.server_version = version
        self.organization = organization
        self.token = token or ""
        self.auth = auth
        self.timeout = timeout
        self.client_factory = client_factory or AppContext().http_client_factory

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "SonarServer":
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    @property
    def supports_jre_provisioning(self) -> bool:
        return True

    def _url(self, path: str) -> httpx.URL:
        return api_url(self.server_info.server_url, path)

    def _api(self, path: str) -> httpx.URL:
        return api_url(self.server_info.api_base_url, path)

    def _headers(self, accept: str = "application/json") -> Dict[str, str]:
        return request_headers(self.token, accept=accept)

    def _with_organization(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.organization:
            params["organization"] = self.organization
        return params

    def _get(
        self,
        url: Union[str, httpx.URL],
        *,
        params: Any = None,
        accept: str = "application/json",
    ) -> httpx.Response:
        try:
            return request_with_retries(
                self.client,
                "GET",
                url,
                headers=self._headers(accept),
                params=params,
                auth=self.auth,
            )
        except httpx.RequestError as exc:
            raise CLIError(f"failed to reach {url}: {describe_http_error(exc)}") from exc

    def _get_json(
        self,
        url: Union[str, httpx.URL],
        what: str,
        *,
        params: Any = None,
        allow_404: bool = False,
    ) -> Any:
        response = self._get(url, params=params)
        if allow_404 and response.status_code == 404:
            return None
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise CLIError(
                f"failed to fetch {what} from {url}: {describe_http_error(exc)}"
            ) from exc
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise CLIError(f"failed to parse {what} from {url}: {exc}") from exc

    def is_server_license_valid(self) -> bool:
        raise NotImplementedError

    def warn_if_deprecated(self) -> None:
        return None

    def download_all_languages(self) -> List[str]:
        payload = self._get_json(self._url("api/languages/list"), "languages")
        languages = as_dict(payload).get("languages") or []
        return [safe_str(as_dict(item).get("key")) or "" for item in languages]

    def try_download_quality_profile(
        self, project_key: str, branch: Optional[str], language: str
    ) -> Optional[str]:
        component = component_identifier(project_key, branch)
        log_debug(f"Fetching quality profile for project '{component}'...")
        url = self._url("api/qualityprofiles/search")
        payload = self._get_json(
            url,
            "quality profiles",
            params=self._with_organization({"project": component}),
            allow_404=True,
        )
        if payload is None:
            payload = self._get_json(
                url,
                "default quality profiles",
                params=self._with_organization({"defaults": "true"}),
            )
        profiles = as_dict(payload).get("profiles") or []
        matches = [
            as_dict(profile)
            for profile in profiles
            if safe_str(as_dict(profile).get("language")) == language
        ]
        if len(matches) > 1:
            raise CLIError(
                "More than one quality profile was returned for the language "
                f"'{language}'. This version of the server is not supported."
            )
        if not matches:
            return None
        return safe_str(matches[0].get("key"))

    def download_rules(self, qprofile: str) -> List[Rule]:
        return self._download_rules(qprofile, True) + self._download_rules(qprofile, False)

    def _download_rules(self, qprofile: str, activation: bool) -> List[Rule]:
        rules: List[Rule] = []
        fetched = 0
        total = 1
        page = 1
        url = self._url("api/rules/search")
        while fetched < total and fetched < RULES_FETCH_LIMIT:
            log_debug(f"Fetching rules for quality profile '{qprofile}' (page {page})...")
            payload = as_dict(
                self._get_json(
                    url,
                    "rules",
                    params={
                        "f": RULE_FIELDS,
                        "ps": RULES_PAGE_SIZE,
                        "qprofile": qprofile,
                        "activation": "true" if activation else "false",
                        "p": page,
                    },
                )
            )
            total, page_size = _paging(payload)
            if page_size <= 0:
                raise CLIError(f"invalid rules response from {url}: missing page size")
            fetched += page_size
            actives = payload.get("actives")
            rules.extend(create_rule(raw, actives) for raw in payload.get("rules") or [])
            page += 1
        return rules

    def download_properties(self, project_key: str, branch: Optional[str] = None) -> Dict[str, str]:
        if not project_key:
            raise CLIError("a project key is required to fetch properties")
        return self._download_component_properties(component_identifier(project_key, branch))

    def _download_component_properties(self, component: str) -> Dict[str, str]:
        log_debug(f"Fetching analysis properties for '{component}'...")
        url = self._url("api/settings/values")
        payload = self._get_json(
            url, "properties", params={"component": component}, allow_404=True
        )
        if payload is None:
            log_debug(f"No settings for project {component}. Getting global settings...")
            payload = self._get_json(url, "global properties")
        return remap_test_project_pattern(parse_settings(payload))

    def download_static_file(
        self, plugin_key: str, resource: str, target_dir: Path
    ) -> Optional[Path]:
        url = str(self._url(f"static/{plugin_key}/{resource}"))
        log_debug(f"Downloading {resource} to {target_dir}")
        downloader = HTTPXDownloader(
            self.timeout,
            headers=self._headers(OCTET_STREAM),
            auth=self.auth,
            client_factory=self.client_factory,
        )
        try:
            return fetch_file(url, target_dir, resource, downloader)
        except CLIError as exc:
            if caused_by_status(exc, 404):
                return None
            raise

    def download_jre_metadata(self, os_name: str, arch: str) -> Optional[JreMetadata]:
        url = self._api("analysis/jres")
        try:
            payload = self._get_json(url, "JRE metadata", params={"os": os_name, "arch": arch})
        except CLIError as exc:
            log_debug(str(exc))
            return None
        if not isinstance(payload, list) or not payload:
            return None
        first = as_dict(payload[0])
        metadata = JreMetadata(
            id=safe_str(first.get("id")) or "",
            filename=safe_str(first.get("filename")) or "",
            sha256=safe_str(first.get("sha256")) or "",
            java_path=safe_str(first.get("javaPath")) or "",
            download_url=safe_str(first.get("downloadUrl")) or None,
        )
        if not metadata.filename or not metadata.sha256 or not metadata.java_path:
            log_debug(f"incomplete JRE metadata from {url}")
            return None
        return metadata

    def download_engine_metadata(self) -> Optional[EngineMetadata]:
        url = self._api("analysis/engine")
        try:
            payload = as_dict(self._get_json(url, "engine metadata"))
        except CLIError as exc:
            log_debug(str(exc))
            return None
        metadata = EngineMetadata(
            filename=safe_str(payload.get("filename")) or "",
            sha256=safe_str(payload.get("sha256")) or "",
            download_url=safe_str(payload.get("downloadUrl")) or None,
        )
        if not metadata.filename or not metadata.sha256:
            log_debug(f"incomplete engine metadata from {url}")
            return None
        return metadata

    def download_jre(self, metadata: JreMetadata) -> Iterator[bytes]:
        if metadata.download_url:
            return self._anonymous_stream(metadata.download_url)
        return self._authenticated_stream(self._api(f"analysis/jres/{metadata.id}"))

    def download_engine(self, metadata: EngineMetadata) -> Iterator[bytes]:
        if metadata.download_url:
            return self._anonymous_stream(metadata.download_url)
        return self._authenticated_stream(self._api("analysis/engine"))

    def _authenticated_stream(self, url: Union[str, httpx.URL]) -> Iterator[bytes]:
        return iter_download(self.client, url, headers=self._headers(OCTET_STREAM), auth=self.auth)

    def _anonymous_stream(self, url: str) -> Iterator[bytes]:
        with self.client_factory(http_timeout(self.timeout)) as client:
            yield from iter_download(client, url, headers=request_headers(accept=OCTET_STREAM))


class SonarQubeServer(SonarServer):
    @property
    def supports_jre_provisioning(self) -> bool:
        return self.server_version >= JRE_PROVISIONING_MIN_VERSION

    def warn_if_deprecated(self) -> None:
        if self.server_version < DEPRECATED_BELOW_VERSION:
            log_warning(
                "The version of SonarQube you are using is deprecated. Analyses will fail "
                "starting 6.0 release of the Scanner for .NET. Please upgrade to a "
                "supported SonarQube version."
            )

    def is_server_license_valid(self) -> bool:
        log_debug("Checking the validity of the server license...")
        url = self._url("api/editions/is_valid_license")
        response = self._get(url)
        if response.status_code == 401:
            log_error(
                "Unable to authenticate with the server. Please check the provided "
                "credentials."
            )
            return False
        try:
            payload = as_dict(response.json())
        except (json.JSONDecodeError, ValueError):
            payload = {}
        if response.status_code == 404:
            messages = [
                safe_str(as_dict(entry).get("msg"))
                for entry in payload.get("errors") or []
            ]
            if "License not found" in messages:
                log_error(
                    f"Your SonarQube instance seems to have no valid license. "
                    f"Please check it. Server url: {self.server_info.server_url}"
                )
                return False
            log_debug("Community edition detected; no license check is needed.")
            return True
        if not response.is_success:
            raise CLIError(
                f"failed to check the server license at {url}: "
                f"{response.status_code} {response.reason_phrase}"
            )
        if payload.get("isValidLicense") is True:
            return True
        log_error(
            f"Your SonarQube instance seems to have no valid license. "
            f"Please check it. Server url: {self.server_info.server_url}"
        )
        return False

    def _download_component_properties(self, component: str) -> Dict[str, str]:
        if self.server_version >= SETTINGS_API_MIN_VERSION:
            return super()._download_component_properties(component)
        log_debug(f"Fetching legacy analysis properties for '{component}'...")
        url = self._url("api/properties")
        payload = self._get_json(url, "properties", params={"resource": component}, allow_404=True)
        if payload is None:
            payload = self._get_json(url, "global properties")
        if not isinstance(payload, list):
            raise CLIError(f"invalid properties response from {url}: expected a list")
        settings = {
            safe_str(as_dict(item).get("key")) or "": _as_text(as_dict(item).get("value"))
            for item in payload
        }
        settings.pop("", None)
        return remap_test_project_pattern(settings)


class SonarCloudServer(SonarServer):
    is_sonarcloud = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._properties_cache: Dict[str, Dict[str, str]] = {}
        self._properties_lock = threading.Lock()

    def is_server_license_valid(self) -> bool:
        log_debug("SonarCloud detected, skipping license check.")
        return True

    def _download_component_properties(self, component: str) -> Dict[str, str]:
        with self._properties_lock:
            cached = self._properties_cache.get(component)
            if cached is None:
                cached = super()._download_component_properties(component)
                self._properties_cache[component] = cached
        return dict(cached)


def _auth_for(settings: ProcessedSettings) -> Tuple[str, Optional[httpx.Auth]]:
    token = settings.token or ""
    password = settings.password
    if token and password:
        return "", httpx.BasicAuth(token, password)
    return token, None


def create_server(settings: ProcessedSettings, context: AppContext) -> SonarServer:
    """Connect to the configured server and pick the matching client."""
    info = settings.server_info
    info.log()
    client = context.new_http_client(http_timeout(settings.http_timeout_seconds))
    token, auth = _auth_for(settings)
    url = api_url(info.server_url, "api/server/version")
    try:
        response = request_with_retries(
            client,
            "GET",
            url,
            headers=request_headers(token, accept="text/plain"),
            auth=auth,
        )
        response.raise_for_status()
    except httpx.HTTPError as exc:
        client.close()
        raise CLIError(
            f"failed to fetch the server version from {url}: {describe_http_error(exc)}"
        ) from exc
    version = parse_version(response.text)
    if version is None:
        client.close()
        raise CLIError(f"unexpected server version '{response.text.strip()}' from {url}")

    server_cls = SonarCloudServer if info.is_sonarcloud else SonarQubeServer
    product = "SonarCloud" if info.is_sonarcloud else "SonarQube"
    log(f"Using {product} v{format_version(version)}")
    return server_cls(
        client,
        info,
        version,
        organization=settings.organization,
        token=token,
        auth=auth,
        timeout=settings.http_timeout_seconds,
        client_factory=context.http_client_factory,
    )
