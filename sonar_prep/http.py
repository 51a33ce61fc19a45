"""Shared HTTP helpers for sonar_prep."""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, Iterator, Optional, Union

import httpx

from .constants import DEFAULT_HTTP_TIMEOUT_SECONDS
from .utils import as_dict, safe_str
from .version import USER_AGENT

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
STREAM_CHUNK_SIZE = 1024 * 64


def http_timeout(seconds: Optional[float] = None) -> httpx.Timeout:
    value = seconds if seconds and seconds > 0 else DEFAULT_HTTP_TIMEOUT_SECONDS
    return httpx.Timeout(value, connect=value)


def request_headers(
    token: str = "",
    *,
    accept: str = "application/json",
) -> Dict[str, str]:
    headers = {
        "Accept": accept,
        "User-Agent": USER_AGENT,
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _server_error_message(data: Any) -> Optional[str]:
    # SonarQube reports failures as {"errors": [{"msg": "..."}]}
    payload = as_dict(data)
    errors = payload.get("errors")
    if isinstance(errors, list):
        messages = [safe_str(as_dict(entry).get("msg")) for entry in errors]
        joined = "; ".join(message for message in messages if message)
        if joined:
            return joined
    return safe_str(payload.get("message") or payload.get("error"))


def describe_http_error(exc: httpx.HTTPError) -> str:
    detail = ""
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        detail = f"{response.status_code} {response.reason_phrase}".strip()
        try:
            body = (response.text or "").strip()
        except httpx.ResponseNotRead:
            # streamed downloads fail before the body is read
            body = ""
        if body:
            extracted: Optional[str] = None
            try:
                data = response.json()
            except (json.JSONDecodeError, ValueError):
                data = None
            if isinstance(data, dict):
                extracted = _server_error_message(data)
            if extracted:
                suffix = extracted.strip()
            else:
                suffix = body.splitlines()[0].strip()
            if suffix:
                detail = f"{detail}: {suffix}" if detail else suffix
        return detail

    try:
        request: Optional[httpx.Request] = exc.request
    except RuntimeError:
        # httpx raises when the error was built without a request
        request = None
    target = ""
    if request is not None:
        method = getattr(request, "method", "") or ""
        url = getattr(request, "url", None)
        url_str = str(url) if url is not None else ""
        target = f"{method} {url_str}".strip()

    message = str(exc).strip()
    summary = message or exc.__class__.__name__
    if isinstance(exc, httpx.TimeoutException):
        summary = "request timed out"
        if message and "timed out" not in message.lower():
            summary = f"{summary}: {message}"
    elif isinstance(exc, httpx.ConnectError):
        summary = "failed to connect"
        if message and "connect" not in message.lower():
            summary = f"{summary}: {message}"
    elif isinstance(exc, httpx.ProxyError):
        summary = "proxy error"
        if message and "proxy" not in message.lower():
            summary = f"{summary}: {message}"
    elif isinstance(exc, httpx.RequestError):
        summary = "network error"
        if message and "network" not in message.lower():
            summary = f"{summary}: {message}"

    if target and target not in summary:
        summary = f"{summary} ({target})"
    return summary


def _auth_kwargs(auth: Optional[httpx.Auth]) -> Dict[str, Any]:
    # omitting auth keeps the client default
    return {"auth": auth} if auth is not None else {}


def request_with_retries(
    client: httpx.Client,
    method: str,
    url: Union[str, httpx.URL],
    *,
    headers: Optional[Dict[str, str]] = None,
    params: Any = None,
    auth: Optional[httpx.Auth] = None,
    max_attempts: int = 3,
    backoff_initial: float = 0.5,
    backoff_max: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
) -> httpx.Response:
    """Send a request, retrying idempotent methods on transient failures."""
    method_upper = (method or "").upper().strip() or "GET"
    allow_retry = method_upper in {"GET", "HEAD"}

    def retry_delay(attempt: int, response: Optional[httpx.Response]) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    parsed = float(retry_after)
                except ValueError:
                    parsed = 0.0
                if parsed > 0:
                    return min(parsed, backoff_max)
        if attempt <= 0:
            return 0.0
        delay = backoff_initial * (2 ** (attempt - 1))
        return min(delay, backoff_max)

    attempt = 0
    while True:
        attempt += 1
        try:
            response = client.request(
                method_upper,
                url,
                headers=headers,
                params=params,
                **_auth_kwargs(auth),
            )
        except httpx.RequestError:
            if not allow_retry or attempt >= max_attempts:
                raise
            delay = retry_delay(attempt, None)
            if delay > 0:
                sleep(delay)
            continue

        if (
            allow_retry
            and response.status_code in RETRYABLE_STATUSES
            and attempt < max_attempts
        ):
            delay = retry_delay(attempt, response)
            if delay > 0:
                sleep(delay)
            continue
        return response


def iter_download(
    client: httpx.Client,
    url: Union[str, httpx.URL],
    *,
    headers: Optional[Dict[str, str]] = None,
    auth: Optional[httpx.Auth] = None,
) -> Iterator[bytes]:
    """Stream a GET response body; raises httpx errors on non-2xx."""
    with client.stream("GET", url, headers=headers, **_auth_kwargs(auth)) as response:
        response.raise_for_status()
        for chunk in response.iter_bytes(chunk_size=STREAM_CHUNK_SIZE):
            if chunk:
                yield chunk


def caused_by_status(exc: BaseException, status_code: int) -> bool:
    current: Optional[BaseException] = exc
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, httpx.HTTPStatusError):
            return current.response.status_code == status_code
        current = current.__cause__ or current.__context__
    return False
