"""Archive extraction with single-root stripping.

Supported: .tar.gz/.tgz, .tar.xz, .tar.bz2, .tar.zst, .zip. Members that
would land outside the extraction root are rejected.
"""

import logging
import lzma
import os
import shutil
import tarfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Optional

import zstandard

from ..errors import CorruptArtifact

logger = logging.getLogger("winecellar.archive")

_TAR_MODES = {
    ".tar.gz": "r|gz",
    ".tgz": "r|gz",
    ".tar.xz": "r|xz",
    ".tar.bz2": "r|bz2",
    ".tar": "r|",
}

SUFFIXES = tuple(_TAR_MODES) + (".tar.zst", ".zip")

_DECODE_ERRORS = (
    tarfile.TarError,
    zipfile.BadZipFile,
    EOFError,
    lzma.LZMAError,
    zlib.error,
    zstandard.ZstdError,
    OSError,
)


def archive_suffix(filename: str) -> Optional[str]:
    """Return the archive suffix of filename, or None if unsupported."""
    lower = filename.lower()
    for suffix in SUFFIXES:
        if lower.endswith(suffix):
            return suffix
    return None


def _check_name(name: str) -> None:
    path = PurePosixPath(name)
    if path.is_absolute() or ".." in path.parts:
        raise CorruptArtifact(f"Archive member escapes extraction root: {name}", phase="extract")


def _check_tar_member(member: tarfile.TarInfo) -> None:
    _check_name(member.name)
    if member.issym():
        target = PurePosixPath(member.linkname)
        if target.is_absolute():
            raise CorruptArtifact(f"Absolute symlink in archive: {member.name} -> {member.linkname}",
                                  phase="extract")
        depth = len(PurePosixPath(member.name).parent.parts)
        for part in target.parts:
            depth = depth - 1 if part == ".." else depth + (part != ".")
            if depth < 0:
                raise CorruptArtifact(f"Symlink escapes extraction root: {member.name} -> {member.linkname}",
                                      phase="extract")
    elif member.islnk():
        _check_name(member.linkname)
    elif not (member.isfile() or member.isdir()):
        raise CorruptArtifact(f"Unsupported archive member type: {member.name}", phase="extract")


def _extract_tar_stream(tar: tarfile.TarFile, dest: Path) -> None:
    kwargs = {"filter": "tar"} if hasattr(tarfile, "tar_filter") else {}
    for member in tar:
        _check_tar_member(member)
        tar.extract(member, str(dest), **kwargs)


def _extract_zip(path: Path, dest: Path) -> None:
    with zipfile.ZipFile(path) as zf:
        for info in zf.infolist():
            _check_name(info.filename)
        zf.extractall(dest)
        # zipfile drops unix permissions, restore executable bits
        for info in zf.infolist():
            mode = (info.external_attr >> 16) & 0o777
            if mode & 0o111 and not info.is_dir():
                target = dest / info.filename
                os.chmod(target, target.stat().st_mode | (mode & 0o111))


def extract_archive(path: Path, dest: Path, filename: Optional[str] = None) -> None:
    """
    Extract path into dest.

    filename decides the format when the downloaded file name carries no
    suffix (defaults to path's name).

    Raises:
        CorruptArtifact: Unknown format, undecodable data or unsafe members.
    """
    filename = filename or path.name
    suffix = archive_suffix(filename)
    if suffix is None:
        raise CorruptArtifact(f"Unknown archive format: {filename}", phase="extract")

    dest.mkdir(parents=True, exist_ok=True)
    logger.debug("Extracting %s (%s) into %s", path, suffix, dest)
    try:
        if suffix == ".zip":
            _extract_zip(path, dest)
        elif suffix == ".tar.zst":
            with open(path, "rb") as raw:
                reader = zstandard.ZstdDecompressor().stream_reader(raw)
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    _extract_tar_stream(tar, dest)
        else:
            with tarfile.open(path, mode=_TAR_MODES[suffix]) as tar:
                _extract_tar_stream(tar, dest)
    except CorruptArtifact:
        raise
    except _DECODE_ERRORS as e:
        raise CorruptArtifact(f"Could not extract {filename}: {e}", phase="extract") from e


def strip_single_root(directory: Path) -> Path:
    """If directory holds exactly one real subdirectory and nothing else, return it."""
    entries = list(directory.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    return directory


def extract_member(path: Path, member: str, dest: Path, filename: Optional[str] = None) -> Path:
    """Extract a single file from an archive to dest (a file path)."""
    work = dest.parent / f".{dest.name}.extract"
    try:
        extract_archive(path, work, filename)
        source = work / member
        if not source.is_file():
            raise CorruptArtifact(f"{member} not found in {filename or path.name}", phase="extract")
        os.replace(source, dest)
    finally:
        shutil.rmtree(work, ignore_errors=True)
    return dest
