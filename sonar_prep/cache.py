"""Content-addressed download cache under the Sonar user home."""

from __future__ import annotations

import hashlib
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

import httpx

from .checksum import checksums_match
from .console import log_debug
from .errors import CLIError
from .http import describe_http_error


@dataclass(frozen=True)
class CacheHit:
    path: Path


@dataclass(frozen=True)
class Downloaded:
    path: Path


@dataclass(frozen=True)
class DownloadError:
    message: str


DownloadResult = Union[CacheHit, Downloaded, DownloadError]
StreamFactory = Callable[[], Iterable[bytes]]


@dataclass(frozen=True)
class FileDescriptor:
    filename: str
    sha256: str


def cache_root_for(user_home: Path) -> Path:
    return Path(user_home) / "cache"


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        log_debug(f"could not delete temporary file {path}: {exc}")


class CachedDownloader:
    """
    Downloads a file once into `<user_home>/cache/<sha256>/<filename>`.

    Entries are published with an atomic rename after the checksum has been
    verified, so a file present at the cache location is trusted as-is.
    """

    def __init__(self, user_home: Path, descriptor: FileDescriptor) -> None:
        self.user_home = Path(user_home)
        self.descriptor = descriptor
        self.cache_root = cache_root_for(self.user_home)
        self.file_root = self.cache_root / descriptor.sha256
        self.cache_location = self.file_root / descriptor.filename

    def ensure_directory(self) -> Optional[DownloadError]:
        try:
            self.file_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log_debug(f"failed to create {self.file_root}: {exc}")
            return DownloadError(
                f"The file cache directory in '{self.cache_root}' could not be created."
            )
        return None

    def is_file_cached(self) -> Optional[Path]:
        if self.cache_location.is_file():
            return self.cache_location
        return None

    def download(self, stream_factory: StreamFactory) -> DownloadResult:
        failure = self.ensure_directory()
        if failure is not None:
            return failure
        cached = self.is_file_cached()
        if cached is not None:
            return CacheHit(cached)

        tmp_path = self.file_root / f"{uuid.uuid4().hex}.tmp"
        try:
            hasher = hashlib.sha256()
            with tmp_path.open("wb") as handle:
                for chunk in stream_factory():
                    if not chunk:
                        continue
                    handle.write(chunk)
                    hasher.update(chunk)
            digest = hasher.hexdigest()
            if not checksums_match(digest, self.descriptor.sha256):
                _remove_quietly(tmp_path)
                return DownloadError(
                    f"Checksum mismatch. The downloaded file '{self.descriptor.filename}' "
                    f"does not match the expected checksum: expected "
                    f"{self.descriptor.sha256.lower()}, got {digest}."
                )
            if self.cache_location.exists():
                # Another writer published the same content first.
                _remove_quietly(tmp_path)
            else:
                os.replace(tmp_path, self.cache_location)
        except (httpx.HTTPError, CLIError, OSError) as exc:
            _remove_quietly(tmp_path)
            detail = describe_http_error(exc) if isinstance(exc, httpx.HTTPError) else str(exc)
            return DownloadError(
                f"The download of the file from the server failed with the exception '{detail}'."
            )
        return Downloaded(self.cache_location)
