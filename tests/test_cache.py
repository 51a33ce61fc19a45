import io
import os
import shutil
import tarfile
import zipfile

import httpx
import pytest

from sonar_prep.archive import ArchiveDescriptor, ArchiveDownloader
from sonar_prep.cache import CachedDownloader, CacheHit, Downloaded, DownloadError, FileDescriptor
from sonar_prep.checksum import checksums_match, file_sha256, parse_checksum_text
from sonar_prep.errors import CLIError
from sonar_prep.unpack import TarUnpacker, ZipUnpacker, unpacker_for

PAYLOAD = b"engine-bytes"


def _stream(data: bytes):
    return lambda: iter([data[:4], b"", data[4:]])


def test_parse_checksum_text_formats():
    digest = "a" * 64
    assert parse_checksum_text(f"{digest}  sonar-scanner.zip\n") == digest
    assert parse_checksum_text(f"SHA256 (file.zip) = {digest.upper()}") == digest
    assert parse_checksum_text(f"\n\n{digest}") == digest
    with pytest.raises(CLIError):
        parse_checksum_text("no digest here")


def test_checksums_match_is_case_insensitive(tmp_path, sha256):
    target = tmp_path / "file.bin"
    target.write_bytes(PAYLOAD)
    assert file_sha256(target) == sha256(PAYLOAD)
    assert checksums_match(sha256(PAYLOAD).upper(), f" {sha256(PAYLOAD)} ")
    assert not checksums_match("abc", "abd")


def test_cached_downloader_downloads_then_hits(tmp_path, sha256):
    downloader = CachedDownloader(tmp_path, FileDescriptor("engine.jar", sha256(PAYLOAD)))
    result = downloader.download(_stream(PAYLOAD))
    assert isinstance(result, Downloaded)
    assert result.path == tmp_path / "cache" / sha256(PAYLOAD) / "engine.jar"
    assert result.path.read_bytes() == PAYLOAD

    def fail():
        raise AssertionError("cache hit must not download")

    again = downloader.download(fail)
    assert again == CacheHit(result.path)


def test_cached_downloader_rejects_checksum_mismatch(tmp_path):
    downloader = CachedDownloader(tmp_path, FileDescriptor("engine.jar", "0" * 64))
    result = downloader.download(_stream(PAYLOAD))
    assert isinstance(result, DownloadError)
    assert "Checksum mismatch" in result.message
    assert not downloader.cache_location.exists()
    assert list(downloader.file_root.iterdir()) == []


def test_cached_downloader_reports_stream_failures(tmp_path, sha256):
    request = httpx.Request("GET", "https://example.com/engine.jar")

    def broken():
        yield b"partial"
        raise httpx.ReadTimeout("slow", request=request)

    downloader = CachedDownloader(tmp_path, FileDescriptor("engine.jar", sha256(PAYLOAD)))
    result = downloader.download(broken)
    assert isinstance(result, DownloadError)
    assert "request timed out" in result.message
    assert list(downloader.file_root.iterdir()) == []


def test_cached_downloader_reports_unwritable_cache(tmp_path, sha256):
    blocker = tmp_path / "cache"
    blocker.write_text("not a directory", encoding="utf-8")
    downloader = CachedDownloader(tmp_path, FileDescriptor("engine.jar", sha256(PAYLOAD)))
    result = downloader.download(_stream(PAYLOAD))
    assert isinstance(result, DownloadError)
    assert "could not be created" in result.message


def test_zip_unpacker_blocks_traversal(tmp_path):
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("../escape.txt", "nope")
    with pytest.raises(CLIError):
        ZipUnpacker().unpack(archive, tmp_path / "out")
    assert not (tmp_path / "escape.txt").exists()


def test_tar_unpacker_skips_links_and_extracts_files(tmp_path):
    archive = tmp_path / "jre.tar.gz"
    with tarfile.open(archive, "w:gz") as tf:
        data = b"#!/bin/sh\n"
        info = tarfile.TarInfo("jdk/bin/java")
        info.size = len(data)
        info.mode = 0o755
        tf.addfile(info, io.BytesIO(data))
        link = tarfile.TarInfo("jdk/bin/link")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/passwd"
        tf.addfile(link)

    dest = tmp_path / "out"
    TarUnpacker("r:gz").unpack(archive, dest)
    assert (dest / "jdk" / "bin" / "java").read_bytes() == b"#!/bin/sh\n"
    assert not (dest / "jdk" / "bin" / "link").exists()
    if os.name != "nt":
        assert os.access(dest / "jdk" / "bin" / "java", os.X_OK)


def test_tar_unpacker_blocks_absolute_paths(tmp_path):
    archive = tmp_path / "evil.tar"
    with tarfile.open(archive, "w") as tf:
        info = tarfile.TarInfo("/abs.txt")
        info.size = 1
        tf.addfile(info, io.BytesIO(b"x"))
    with pytest.raises(CLIError):
        TarUnpacker("r:").unpack(archive, tmp_path / "out")


def test_unpacker_for_selects_by_extension():
    assert isinstance(unpacker_for("jre.ZIP"), ZipUnpacker)
    assert isinstance(unpacker_for("jre.tar.gz"), TarUnpacker)
    assert isinstance(unpacker_for("jre.tgz"), TarUnpacker)
    assert unpacker_for("jre.rar") is None


def test_archive_downloader_extracts_and_reuses(tmp_path, make_zip, sha256):
    archive = make_zip({"sonar-scanner/bin/sonar-scanner": b"run", "sonar-scanner/lib/a.jar": b"a"})
    descriptor = ArchiveDescriptor("cli.zip", sha256(archive), "sonar-scanner/bin/sonar-scanner")
    downloader = ArchiveDownloader(tmp_path, descriptor)

    result = downloader.download(lambda: iter([archive]))
    assert isinstance(result, Downloaded)
    assert result.path == downloader.target_path
    assert result.path.read_bytes() == b"run"
    assert downloader.extracted_path.name == "cli.zip_extracted"

    again = downloader.download(lambda: iter([]))
    assert again == CacheHit(downloader.target_path)


def test_archive_downloader_reextracts_from_cached_archive(tmp_path, make_zip, sha256):
    archive = make_zip({"bin/java": b"java"})
    descriptor = ArchiveDescriptor("jre.zip", sha256(archive), "bin/java")
    first = ArchiveDownloader(tmp_path, descriptor)
    assert isinstance(first.download(lambda: iter([archive])), Downloaded)

    # losing the extracted tree falls back to the cached archive
    shutil.rmtree(first.extracted_path)

    def fail():
        raise AssertionError("the archive is already cached")

    result = ArchiveDownloader(tmp_path, descriptor).download(fail)
    assert isinstance(result, Downloaded)
    assert result.path.read_bytes() == b"java"


def test_archive_downloader_missing_target_fails(tmp_path, make_zip, sha256):
    archive = make_zip({"bin/other": b"x"})
    descriptor = ArchiveDescriptor("jre.zip", sha256(archive), "bin/java")
    downloader = ArchiveDownloader(tmp_path, descriptor)
    result = downloader.download(lambda: iter([archive]))
    assert isinstance(result, DownloadError)
    assert "could not be extracted" in result.message
    assert not downloader.extracted_path.exists()
    leftovers = [
        path for path in downloader.file_downloader.file_root.iterdir() if path.is_dir()
    ]
    assert leftovers == []


def test_archive_downloader_unsupported_format(tmp_path):
    descriptor = ArchiveDescriptor("jre.rar", "0" * 64, "bin/java")
    result = ArchiveDownloader(tmp_path, descriptor).download(lambda: iter([b""]))
    assert isinstance(result, DownloadError)
    assert "not supported" in result.message


def _extraction_leftovers(downloader):
    return [path for path in downloader.file_downloader.file_root.iterdir() if path.is_dir()]


def _tar_gz_bytes(entries):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tf.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def test_archive_downloader_extracts_tar_gz(tmp_path, sha256):
    archive = _tar_gz_bytes({"jdk/bin/java": b"java", "jdk/lib/modules": b"mods"})
    descriptor = ArchiveDescriptor("jre.tar.gz", sha256(archive), "jdk/bin/java")
    downloader = ArchiveDownloader(tmp_path, descriptor)

    result = downloader.download(lambda: iter([archive]))
    assert isinstance(result, Downloaded)
    assert result.path.read_bytes() == b"java"
    assert (downloader.extracted_path / "jdk" / "lib" / "modules").read_bytes() == b"mods"
    assert _extraction_leftovers(downloader) == [downloader.extracted_path]


def test_archive_downloader_corrupt_zip_fails_cleanly(tmp_path, sha256):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("bin/java", bytes(range(256)) * 64)
    archive = bytearray(buffer.getvalue())
    for index in range(40, 60):
        archive[index] ^= 0xFF
    archive = bytes(archive)

    descriptor = ArchiveDescriptor("jre.zip", sha256(archive), "bin/java")
    downloader = ArchiveDownloader(tmp_path, descriptor)
    result = downloader.download(lambda: iter([archive]))
    assert isinstance(result, DownloadError)
    assert "could not be extracted" in result.message
    assert not downloader.extracted_path.exists()
    assert _extraction_leftovers(downloader) == []


def test_archive_downloader_truncated_tar_gz_fails_cleanly(tmp_path, sha256):
    complete = _tar_gz_bytes({"jdk/bin/java": os.urandom(64 * 1024)})
    archive = complete[: len(complete) // 2]

    descriptor = ArchiveDescriptor("jre.tar.gz", sha256(archive), "jdk/bin/java")
    downloader = ArchiveDownloader(tmp_path, descriptor)
    result = downloader.download(lambda: iter([archive]))
    assert isinstance(result, DownloadError)
    assert not downloader.extracted_path.exists()
    assert _extraction_leftovers(downloader) == []


def test_archive_downloader_reports_unexpected_unpacker_errors(tmp_path, make_zip, sha256):
    class Exploding:
        def unpack(self, archive_path, destination):
            destination.mkdir(parents=True)
            (destination / "partial").write_bytes(b"x")
            raise RuntimeError("decoder blew up")

    archive = make_zip({"bin/java": b"java"})
    descriptor = ArchiveDescriptor("jre.zip", sha256(archive), "bin/java")
    downloader = ArchiveDownloader(tmp_path, descriptor, unpackers={".zip": Exploding})
    result = downloader.download(lambda: iter([archive]))
    assert isinstance(result, DownloadError)
    assert _extraction_leftovers(downloader) == []
