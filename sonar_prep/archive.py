"""Download-and-extract on top of the download cache."""

from __future__ import annotations

import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

from .cache import (
    CachedDownloader,
    CacheHit,
    Downloaded,
    DownloadError,
    DownloadResult,
    FileDescriptor,
    StreamFactory,
)
from .console import log_debug
from .errors import CLIError
from .unpack import UNPACKERS, Unpacker, unpacker_for


@dataclass(frozen=True)
class ArchiveDescriptor:
    filename: str
    sha256: str
    target_file_path: str


class ArchiveDownloader:
    def __init__(
        self,
        user_home: Path,
        descriptor: ArchiveDescriptor,
        unpackers: Optional[Dict[str, Callable[[], Unpacker]]] = None,
    ) -> None:
        self.descriptor = descriptor
        self.unpackers = UNPACKERS if unpackers is None else unpackers
        self.file_downloader = CachedDownloader(
            user_home, FileDescriptor(descriptor.filename, descriptor.sha256)
        )
        self.extracted_path = self.file_downloader.file_root / f"{descriptor.filename}_extracted"
        self.target_path = self.extracted_path.joinpath(
            *descriptor.target_file_path.replace("\\", "/").split("/")
        )

    def is_target_file_cached(self) -> Optional[Path]:
        if self.target_path.is_file():
            return self.target_path
        return None

    def download(self, stream_factory: StreamFactory) -> DownloadResult:
        cached = self.is_target_file_cached()
        if cached is not None:
            return CacheHit(cached)

        unpacker = unpacker_for(self.descriptor.filename, self.unpackers)
        if unpacker is None:
            return DownloadError(
                f"The archive format of '{self.descriptor.filename}' is not supported."
            )

        archive = self.file_downloader.download(stream_factory)
        if isinstance(archive, DownloadError):
            return archive
        if isinstance(archive, CacheHit):
            log_debug(
                "The file was already downloaded from the server and stored at "
                f"'{archive.path}'."
            )
        return self._extract(unpacker, archive.path)

    def _extract(self, unpacker: Unpacker, archive_path: Path) -> DownloadResult:
        temp_dir = self.file_downloader.file_root / uuid.uuid4().hex
        try:
            log_debug(f"Extracting '{archive_path}' to '{temp_dir}'")
            unpacker.unpack(archive_path, temp_dir)
            relative = self.target_path.relative_to(self.extracted_path)
            if not (temp_dir / relative).is_file():
                raise CLIError(
                    "the archive does not contain the expected file "
                    f"'{self.descriptor.target_file_path}'"
                )
            if self.extracted_path.exists():
                log_debug(f"'{self.extracted_path}' already exists; discarding '{temp_dir}'")
                _remove_tree(temp_dir)
            else:
                os.replace(temp_dir, self.extracted_path)
        except Exception as exc:
            log_debug(f"The extraction of '{archive_path}' failed: {exc}")
            _remove_tree(temp_dir)
            return DownloadError(
                f"The archive could not be extracted: '{self.file_downloader.cache_location}'."
            )
        if not self.target_path.is_file():
            return DownloadError(
                f"The archive could not be extracted: '{self.file_downloader.cache_location}'."
            )
        return Downloaded(self.target_path)


def _remove_tree(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        log_debug(f"Failed to remove '{path}': {exc}")
