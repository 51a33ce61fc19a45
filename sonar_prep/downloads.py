"""Pooch-backed file fetching over httpx."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
import pooch

from .console import log_error
from .context import HttpClientFactory, default_http_client_factory
from .errors import CLIError
from .http import RETRYABLE_STATUSES, STREAM_CHUNK_SIZE, describe_http_error, http_timeout


class HTTPXDownloader:
    """Pooch downloader that uses httpx for transfers."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[httpx.Auth] = None,
        max_attempts: int = 3,
        backoff_initial: float = 0.5,
        backoff_max: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
        client_factory: Optional[HttpClientFactory] = None,
    ) -> None:
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.auth = auth
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_initial = max(0.0, float(backoff_initial))
        self.backoff_max = max(self.backoff_initial, float(backoff_max))
        self.sleep = sleep
        self.client_factory = client_factory or default_http_client_factory

    def _retry_delay(self, attempt: int, exc: httpx.HTTPError) -> float:
        if isinstance(exc, httpx.HTTPStatusError):
            retry_after = exc.response.headers.get("Retry-After")
            if retry_after:
                try:
                    parsed = float(retry_after)
                except ValueError:
                    parsed = 0.0
                if parsed > 0:
                    return min(parsed, self.backoff_max)
        if attempt <= 0:
            return 0.0
        return min(self.backoff_initial * (2 ** (attempt - 1)), self.backoff_max)

    @staticmethod
    def _should_retry(exc: httpx.HTTPError) -> bool:
        if isinstance(exc, httpx.RequestError):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in RETRYABLE_STATUSES
        return False

    def __call__(
        self,
        url: str,
        output_file: str,
        pooch_obj: Optional[pooch.Pooch],
        check_only: bool = False,
        **_: Any,
    ) -> None:
        _ = pooch_obj
        output_path = Path(output_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = Path(f"{output_file}.tmp")
        display_name = download_name(url, output_path.name)

        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            try:
                with self.client_factory(http_timeout(self.timeout)) as client:
                    if check_only:
                        response = client.head(url, headers=self.headers, auth=self.auth)
                        response.raise_for_status()
                        return
                    with client.stream(
                        "GET", url, headers=self.headers, auth=self.auth
                    ) as response:
                        response.raise_for_status()
                        with tmp_path.open("wb") as fh:
                            for chunk in response.iter_bytes(chunk_size=STREAM_CHUNK_SIZE):
                                if chunk:
                                    fh.write(chunk)
                    os.replace(tmp_path, output_file)
                    return
            except httpx.HTTPError as exc:
                _discard(tmp_path)
                detail = describe_http_error(exc)
                source = download_source(url)
                if attempt >= self.max_attempts or not self._should_retry(exc):
                    raise CLIError(
                        f"download failed for {display_name} from {source} "
                        f"after {attempt} attempt(s): {detail}"
                    ) from exc
                delay = self._retry_delay(attempt, exc)
                log_error(
                    f"download error for {display_name} from {source}: {detail}; "
                    f"retrying in {delay:.1f}s ({attempt + 1}/{self.max_attempts})"
                )
                if delay > 0:
                    self.sleep(delay)
            except OSError as exc:
                _discard(tmp_path)
                raise CLIError(f"failed to write download file {output_path}: {exc}") from exc


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        log_error(f"could not delete partial download {path}: {exc}")


def download_source(url: str) -> str:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return url
    return str(parsed.host) if parsed.host else url


def download_name(url: str, fallback: str) -> str:
    try:
        candidate = Path(httpx.URL(url).path).name
    except httpx.InvalidURL:
        candidate = ""
    return candidate or fallback


def fetch_file(
    url: str,
    directory: Path,
    fname: str,
    downloader: HTTPXDownloader,
    *,
    known_hash: Optional[str] = None,
) -> Path:
    """Retrieve `url` into `directory/fname` unless it is already there."""
    try:
        return Path(
            pooch.retrieve(
                url=url,
                path=directory,
                fname=fname,
                known_hash=known_hash,
                downloader=downloader,
                progressbar=False,
            )
        )
    except ValueError as exc:
        # pooch reports hash mismatches as ValueError
        raise CLIError(f"failed to verify {fname}: {exc}") from exc
