"""
Deterministic tar creation and safe extraction.

Creates byte-identical tar streams from identical inputs by normalizing
paths, tar headers and entry order. Writes PAX format so long names (sha512
blob paths, deep trees) fit; extended headers appear only where needed. Extraction validates every member path and applies OCI
whiteout files.
"""
from __future__ import annotations

import io
import logging
import os
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import CodecError, FormatError
from .path_safety import safe_relpath

__all__ = ["tar_files", "tar_directory", "tar_members", "read_members", "list_members", "extract_tar"]

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
WHITEOUT_OPAQUE = ".wh..wh..opq"


def tar_files(paths: Sequence[Path | str]) -> bytes:
    """
    Create a tar stream holding a flat set of files under their base names.

    Raises:
        ValueError: If a path is not a regular file or two inputs share a base name
    """
    entries: Dict[str, Path] = {}
    for path in paths:
        path = Path(path)
        if not path.is_file():
            raise ValueError(f"Not a file, or not exist: {path}")
        arcname = safe_relpath(path.name)
        if arcname in entries:
            raise ValueError(f"Duplicate file name in layer: {arcname} ({entries[arcname]} and {path})")
        entries[arcname] = path

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for arcname in sorted(entries):
            _add_path(tar, entries[arcname], arcname)
    return buf.getvalue()


def tar_directory(src_dir: Path | str) -> bytes:
    """
    Create a tar stream of a directory tree, rooted at the directory itself.

    Raises:
        ValueError: If src_dir doesn't exist
    """
    src_path = Path(src_dir)
    if not src_path.is_dir():
        raise ValueError(f"Not a directory, or not exist: {src_dir}")

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for entry_path, arcname in _iter_entries_sorted(src_path):
            # Directory names end with "/" in canonical tars
            arc = arcname + ("/" if entry_path.is_dir() and not entry_path.is_symlink() else "")
            _add_path(tar, entry_path, arc)
    return buf.getvalue()


def tar_members(members: Iterable[Tuple[str, bytes]]) -> bytes:
    """Create a tar stream of in-memory files, in the given order."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name, data in members:
            tarinfo = tarfile.TarInfo(name=safe_relpath(name))
            tarinfo.size = len(data)
            tarinfo.mode = 0o644
            _apply_canonical_headers(tarinfo)
            _addfile(tar, tarinfo, io.BytesIO(data))
    return buf.getvalue()


def read_members(data: bytes) -> Dict[str, bytes]:
    """
    Read all regular files of a tar stream into memory.

    Raises:
        FormatError: If the stream is not a readable tar archive or holds unsafe paths
    """
    members: Dict[str, bytes] = {}
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
            for member in tar:
                if not member.isreg():
                    continue
                name = safe_relpath(member.name)
                extracted = tar.extractfile(member)
                if extracted is None:
                    continue
                members[name] = extracted.read()
    except tarfile.TarError as e:
        raise FormatError(f"Not a valid tar archive: {e}") from e
    return members


def list_members(data: bytes) -> List[str]:
    """
    Names of the non-directory members of a tar stream, in archive order.

    Raises:
        CodecError: If the tar stream is corrupt
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
            return [member.name.lstrip("/") for member in tar if not member.isdir()]
    except tarfile.TarError as e:
        raise CodecError(f"Corrupt layer tar: {e}") from e


def extract_tar(data: bytes, dest: Path) -> None:
    """
    Unpack an uncompressed layer tar into `dest`.

    Whiteout entries (`.wh.<name>`) remove `<name>` from what earlier layers
    unpacked; an opaque whiteout empties its directory.

    Raises:
        FormatError: If a member path or link escapes `dest`
        CodecError: If the tar stream is corrupt
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
            members = []
            for member in tar.getmembers():
                name = member.name.lstrip("/")
                if name in ("", ".", "./"):
                    continue
                rel = safe_relpath(name)
                basename = PurePosixPath(rel).name
                if basename.startswith(WHITEOUT_PREFIX):
                    _apply_whiteout(dest, rel)
                    continue
                member.name = rel
                if member.islnk():
                    member.linkname = safe_relpath(member.linkname.lstrip("/"))
                members.append(member)
            tar.extractall(dest, members=members, filter="tar")
    except tarfile.FilterError as e:
        raise FormatError(f"Unsafe layer member: {e}") from e
    except tarfile.TarError as e:
        raise CodecError(f"Corrupt layer tar: {e}") from e


def _apply_whiteout(dest: Path, rel: str) -> None:
    parent = PurePosixPath(rel).parent
    basename = PurePosixPath(rel).name
    target_dir = dest / parent
    logger.debug(f"Applying whiteout {rel}")
    if basename == WHITEOUT_OPAQUE:
        if target_dir.is_dir():
            for child in target_dir.iterdir():
                _remove(child)
        return
    _remove(target_dir / basename[len(WHITEOUT_PREFIX):])


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def _add_path(tar: tarfile.TarFile, path: Path, arcname: str) -> None:
    tarinfo = tar.gettarinfo(str(path), arcname=arcname)
    _apply_canonical_headers(tarinfo)
    if tarinfo.isreg():
        with open(path, "rb") as f:
            _addfile(tar, tarinfo, f)
    else:
        _addfile(tar, tarinfo)


def _addfile(tar: tarfile.TarFile, tarinfo: tarfile.TarInfo, fileobj: Optional[BinaryIO] = None) -> None:
    try:
        tar.addfile(tarinfo, fileobj)
    except ValueError as e:
        raise FormatError(f"Cannot store {tarinfo.name!r} in tar: {e}") from e


def _iter_entries_sorted(src_dir: Path) -> Iterator[Tuple[Path, str]]:
    """
    Iterate entries in deterministic order.

    Yields (filesystem_path, archive_name) pairs sorted by archive name.
    Directories sort before their contents since their name is a prefix.
    """
    entries = []

    for root, dirs, files in os.walk(src_dir):
        root_path = Path(root)
        rel_root = root_path.relative_to(src_dir)

        if rel_root != Path("."):
            entries.append((root_path, safe_relpath(rel_root.as_posix())))

        # Symlinked directories are listed in `dirs` but not descended into
        for name in files + [d for d in dirs if (root_path / d).is_symlink()]:
            file_path = root_path / name
            entries.append((file_path, safe_relpath(file_path.relative_to(src_dir).as_posix())))

    entries.sort(key=lambda x: x[1])

    yield from entries


def _apply_canonical_headers(tarinfo: tarfile.TarInfo) -> None:
    """
    Apply canonical tar headers for deterministic output.

    Sets consistent ownership, timestamps, and permissions while
    preserving essential file type information.
    """
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = ""
    tarinfo.gname = ""

    tarinfo.mtime = 0

    if tarinfo.isdir():
        tarinfo.mode = 0o755
    elif tarinfo.isreg():
        # Preserve execute bit for regular files
        if tarinfo.mode & 0o100:
            tarinfo.mode = 0o755
        else:
            tarinfo.mode = 0o644
