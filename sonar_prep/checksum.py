"""SHA-256 helpers for downloaded artifacts."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import BinaryIO

from .errors import CLIError

HASH_CHUNK_SIZE = 1024 * 1024
_SHA256_PATTERN = re.compile(r"\b([A-Fa-f0-9]{64})\b")


def compute_hash(stream: BinaryIO) -> str:
    hasher = hashlib.sha256()
    for chunk in iter(lambda: stream.read(HASH_CHUNK_SIZE), b""):
        if not chunk:
            break
        hasher.update(chunk)
    return hasher.hexdigest()


def file_sha256(path: Path) -> str:
    with path.open("rb") as handle:
        return compute_hash(handle)


def checksums_match(actual: str, expected: str) -> bool:
    return (actual or "").strip().lower() == (expected or "").strip().lower()


def parse_checksum_text(text: str) -> str:
    # Accept common formats:
    #  - "<hex>  filename" (GNU coreutils sha256sum)
    #  - "SHA256 (filename) = <hex>" (BSD shasum)
    #  - a bare 64-hex digest
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        match = _SHA256_PATTERN.search(line)
        if match:
            return match.group(1).lower()
    raise CLIError("checksum text did not contain a SHA-256 value")
