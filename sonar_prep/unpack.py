"""Safe archive extraction, selected by file name."""

from __future__ import annotations

import os
import re
import shutil
import tarfile
import zipfile
import zlib
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from .console import log_debug
from .errors import CLIError


# Raised by the decompressors on corrupt or truncated data.
_STREAM_ERRORS = (zlib.error, EOFError, RuntimeError, NotImplementedError, ValueError)


class Unpacker(Protocol):
    def unpack(self, archive_path: Path, destination: Path) -> None:
        ...


class _SafeTarget:
    """Maps archive member names to paths that stay inside one destination."""

    def __init__(self, archive: Path, dest: Path) -> None:
        self.archive = archive
        self.dest = dest
        self.dest_real = dest.resolve()

    def normalize(self, member: str) -> str:
        normalized = (member or "").replace("\\", "/")
        while normalized.startswith("./"):
            normalized = normalized[2:]
        if not normalized:
            return ""
        if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
            raise CLIError(
                f"archive entry contains an absolute path: {member!r} ({self.archive.name})"
            )
        parts = [part for part in normalized.split("/") if part not in {"", "."}]
        if any(part == ".." for part in parts):
            raise CLIError(
                f"archive entry attempts path traversal: {member!r} ({self.archive.name})"
            )
        return "/".join(parts)

    def ensure_parents(self, parts: List[str]) -> Path:
        current = self.dest
        for part in parts:
            current = current / part
            if current.exists():
                if current.is_symlink() or not current.is_dir():
                    raise CLIError(
                        f"refusing to extract into {current} ({self.archive.name})"
                    )
                continue
            current.mkdir()
        return current

    def file_target(self, entry: str) -> Path:
        rel_path = Path(*entry.split("/"))
        target = self.dest / rel_path
        target_real = self.dest_real / rel_path
        if self.dest_real != target_real and self.dest_real not in target_real.parents:
            raise CLIError(
                f"archive entry escapes destination: {entry!r} ({self.archive.name})"
            )
        self.ensure_parents(entry.split("/")[:-1])
        if target.is_symlink():
            raise CLIError(f"refusing to overwrite symlink {target} ({self.archive.name})")
        return target


def _apply_mode(target: Path, mode: int) -> None:
    mode &= 0o777
    if not mode:
        return
    try:
        os.chmod(target, mode)
    except OSError as exc:
        log_debug(f"could not apply mode {oct(mode)} to {target}: {exc}")


class ZipUnpacker:
    def unpack(self, archive_path: Path, destination: Path) -> None:
        destination.mkdir(parents=True, exist_ok=True)
        safe = _SafeTarget(archive_path, destination)
        try:
            with zipfile.ZipFile(archive_path) as zf:
                for info in zf.infolist():
                    entry = safe.normalize(info.filename)
                    if not entry:
                        continue
                    if info.is_dir():
                        safe.ensure_parents(entry.split("/"))
                        continue
                    target = safe.file_target(entry)
                    with zf.open(info, "r") as src, target.open("wb") as out:
                        shutil.copyfileobj(src, out)
                    _apply_mode(target, info.external_attr >> 16)
        except (zipfile.BadZipFile, *_STREAM_ERRORS) as exc:
            raise CLIError(f"invalid zip archive {archive_path.name}: {exc}") from exc


class TarUnpacker:
    def __init__(self, mode: str = "r:*") -> None:
        self.mode = mode

    def unpack(self, archive_path: Path, destination: Path) -> None:
        destination.mkdir(parents=True, exist_ok=True)
        safe = _SafeTarget(archive_path, destination)
        try:
            with tarfile.open(archive_path, mode=self.mode) as tf:
                for member in tf.getmembers():
                    entry = safe.normalize(member.name)
                    if not entry:
                        continue
                    if member.isdir():
                        safe.ensure_parents(entry.split("/"))
                        continue
                    if member.issym() or member.islnk():
                        log_debug(f"skipping link entry {entry!r} in {archive_path.name}")
                        continue
                    if not member.isreg():
                        log_debug(f"skipping special entry {entry!r} in {archive_path.name}")
                        continue
                    target = safe.file_target(entry)
                    file_obj = tf.extractfile(member)
                    if file_obj is None:
                        continue
                    with file_obj as src, target.open("wb") as out:
                        shutil.copyfileobj(src, out)
                    _apply_mode(target, member.mode)
        except (tarfile.TarError, *_STREAM_ERRORS) as exc:
            raise CLIError(f"invalid tar archive {archive_path.name}: {exc}") from exc


UNPACKERS: Dict[str, Callable[[], Unpacker]] = {
    ".zip": ZipUnpacker,
    ".tar.gz": lambda: TarUnpacker("r:gz"),
    ".tgz": lambda: TarUnpacker("r:gz"),
    ".tar": lambda: TarUnpacker("r:"),
}


def unpacker_for(
    filename: str, registry: Optional[Dict[str, Callable[[], Unpacker]]] = None
) -> Optional[Unpacker]:
    lowered = (filename or "").lower()
    for suffix, factory in (registry if registry is not None else UNPACKERS).items():
        if lowered.endswith(suffix):
            return factory()
    return None
