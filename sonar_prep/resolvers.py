"""Resolve local paths for the JRE, the scanner engine and the scanner CLI."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional, Tuple

from .archive import ArchiveDescriptor, ArchiveDownloader
from .cache import (
    CachedDownloader,
    CacheHit,
    DownloadError,
    DownloadResult,
    FileDescriptor,
    StreamFactory,
    cache_root_for,
)
from .checksum import parse_checksum_text
from .console import log, log_debug, log_warning
from .constants import (
    PROP_ARCH,
    PROP_ENGINE_JAR_PATH,
    PROP_JAVA_EXE_PATH,
    PROP_OS,
    PROP_SCANNER_CLI_PATH,
    PROP_SCANNER_CLI_URL,
    PROP_SKIP_JRE_PROVISIONING,
    SCANNER_CLI_DIR_NAME,
    SCANNER_CLI_FILENAME,
    SCANNER_CLI_URL,
)
from .context import HttpClientFactory, default_http_client_factory
from .downloads import HTTPXDownloader, download_name, fetch_file
from .errors import CLIError
from .http import http_timeout, iter_download, request_headers
from .server import SonarServer
from .settings import ProcessedSettings
from .utils import redact

EXECUTABLE_MODE = 0o755


def set_executable(path: Path) -> None:
    if os.name == "nt":
        return
    try:
        os.chmod(path, EXECUTABLE_MODE)
    except OSError as exc:
        log_debug(f"could not mark {path} as executable: {exc}")


class Resolver:
    """Base class: one resolution attempt plus a single retry after a failed download."""

    name = "Resolver"
    what = "artifact"
    last_result: Optional[str] = None

    def resolve_path(self, settings: ProcessedSettings) -> Optional[Path]:
        log_debug(f"{self.name}: Resolving {self.what} path.")
        path, retry = self._resolve_once(settings)
        if path is None and retry:
            log_debug(f"{self.name}: Resolving {self.what} path. Retrying...")
            path, _ = self._resolve_once(settings)
        return path

    def _resolve_once(self, settings: ProcessedSettings) -> Tuple[Optional[Path], bool]:
        raise NotImplementedError

    def _report(self, result: DownloadResult) -> Tuple[Optional[Path], bool]:
        self.last_result = type(result).__name__
        if isinstance(result, DownloadError):
            log_debug(f"{self.name}: Download failure. {result.message}")
            return None, True
        if isinstance(result, CacheHit):
            log_debug(f"{self.name}: Cache hit '{result.path}'.")
        else:
            log_debug(
                f"{self.name}: Download success. {self.what_title} can be found at "
                f"'{result.path}'."
            )
        return result.path, False

    @property
    def what_title(self) -> str:
        return self.what[:1].upper() + self.what[1:]


class JreResolver(Resolver):
    name = "JreResolver"
    what = "JRE"

    def __init__(self, server: SonarServer, user_home: Path) -> None:
        self.server = server
        self.user_home = Path(user_home)

    def is_provisioning_expected(self, settings: ProcessedSettings) -> bool:
        return (
            not settings.java_exe_path
            and not settings.skip_jre_provisioning
            and self.server.supports_jre_provisioning
        )

    def _resolve_once(self, settings: ProcessedSettings) -> Tuple[Optional[Path], bool]:
        if settings.java_exe_path:
            log_debug(
                f"JreResolver: {PROP_JAVA_EXE_PATH} is set, skipping JRE provisioning."
            )
            return None, False
        if settings.skip_jre_provisioning:
            log_debug(
                f"JreResolver: {PROP_SKIP_JRE_PROVISIONING} is set, skipping JRE provisioning."
            )
            return None, False
        if not self.server.supports_jre_provisioning:
            log_debug(
                "JreResolver: Skipping JRE provisioning because this version of SonarQube "
                "does not support it."
            )
            return None, False
        if not settings.operating_system:
            log_debug(f"JreResolver: {PROP_OS} is not set or detected, skipping JRE provisioning.")
            return None, False
        if not settings.architecture:
            log_debug(
                f"JreResolver: {PROP_ARCH} is not set or detected, skipping JRE provisioning."
            )
            return None, False

        metadata = self.server.download_jre_metadata(
            settings.operating_system, settings.architecture
        )
        if metadata is None:
            log_debug("JreResolver: Metadata could not be retrieved.")
            return None, False

        downloader = ArchiveDownloader(
            self.user_home,
            ArchiveDescriptor(metadata.filename, metadata.sha256, metadata.java_path),
        )
        path, retry = self._report(downloader.download(lambda: self.server.download_jre(metadata)))
        if path is not None:
            set_executable(path)
        return path, retry


class EngineResolver(Resolver):
    name = "EngineResolver"
    what = "scanner engine"

    def __init__(self, server: SonarServer, user_home: Path) -> None:
        self.server = server
        self.user_home = Path(user_home)

    def is_provisioning_expected(self, settings: ProcessedSettings) -> bool:
        return bool(settings.engine_jar_path) or self.server.supports_jre_provisioning

    def _resolve_once(self, settings: ProcessedSettings) -> Tuple[Optional[Path], bool]:
        explicit = settings.engine_jar_path
        if explicit:
            log_debug(
                f"EngineResolver: {PROP_ENGINE_JAR_PATH} is set, skipping engine provisioning."
            )
            return Path(explicit).expanduser(), False
        if not self.server.supports_jre_provisioning:
            log_debug(
                "EngineResolver: Skipping engine provisioning because this version of "
                "SonarQube does not support it."
            )
            return None, False
        metadata = self.server.download_engine_metadata()
        if metadata is None:
            log_debug("EngineResolver: Metadata could not be retrieved.")
            return None, False
        downloader = CachedDownloader(
            self.user_home, FileDescriptor(metadata.filename, metadata.sha256)
        )
        return self._report(downloader.download(lambda: self.server.download_engine(metadata)))


def scanner_cli_target() -> str:
    script = "sonar-scanner.bat" if sys.platform.startswith("win") else "sonar-scanner"
    return f"{SCANNER_CLI_DIR_NAME}/bin/{script}"


class ScannerCliResolver(Resolver):
    name = "ScannerCliResolver"
    what = "scanner CLI"

    def __init__(
        self,
        user_home: Path,
        client_factory: Optional[HttpClientFactory] = None,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self.user_home = Path(user_home)
        self.client_factory = client_factory or default_http_client_factory
        self.timeout = timeout

    def _download_url(self, settings: ProcessedSettings) -> str:
        return (settings.setting(PROP_SCANNER_CLI_URL) or "").strip() or SCANNER_CLI_URL

    def expected_sha256(self, url: str) -> str:
        """Read the digest published next to the archive as `<url>.sha256`."""
        checksum_dir = cache_root_for(self.user_home) / "checksums"
        downloader = HTTPXDownloader(self.timeout, client_factory=self.client_factory)
        checksum_path = fetch_file(
            f"{url}.sha256",
            checksum_dir,
            f"{download_name(url, SCANNER_CLI_FILENAME)}.sha256",
            downloader,
        )
        try:
            return parse_checksum_text(checksum_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise CLIError(f"unable to read checksum file {checksum_path}: {exc}") from exc

    def _stream_factory(self, url: str) -> StreamFactory:
        def stream():
            with self.client_factory(http_timeout(self.timeout)) as client:
                yield from iter_download(
                    client, url, headers=request_headers(accept="application/octet-stream")
                )

        return stream

    def _resolve_once(self, settings: ProcessedSettings) -> Tuple[Optional[Path], bool]:
        explicit = settings.scanner_cli_path
        if explicit:
            log_debug(f"ScannerCliResolver: {PROP_SCANNER_CLI_PATH} is set, skipping download.")
            return Path(explicit).expanduser(), False
        url = self._download_url(settings)
        try:
            sha256 = self.expected_sha256(url)
        except CLIError as exc:
            log_warning(
                f"ScannerCliResolver: could not fetch the checksum for {redact(url)}: {exc}"
            )
            return None, True
        downloader = ArchiveDownloader(
            self.user_home,
            ArchiveDescriptor(
                download_name(url, SCANNER_CLI_FILENAME), sha256, scanner_cli_target()
            ),
        )
        path, retry = self._report(downloader.download(self._stream_factory(url)))
        if path is not None:
            set_executable(path)
            log(f"Using scanner CLI at {path}")
        return path, retry
