"""
Path safety utilities for ocipkg.

This module provides shared validation for archive member paths to prevent
directory traversal when packing inputs or unpacking layers.
"""
from __future__ import annotations

import unicodedata
from pathlib import PurePosixPath

from .errors import FormatError


def safe_relpath(path: str) -> str:
    """
    Validate and normalize an archive member path.

    This function enforces the following safety rules:
    - No empty strings or "." (prevents root directory access)
    - No absolute paths (starting with '/')
    - No parent directory references ('..' components)
    - No backslashes or NUL bytes

    Args:
        path: Member path as found in a tar header or built from a file name

    Returns:
        Normalized relative path (NFC, forward slashes, no leading "./")

    Raises:
        FormatError: If path violates safety rules

    Examples:
        >>> safe_relpath("lib/libfoo.a")
        'lib/libfoo.a'

        >>> safe_relpath("./etc/alpine-release")
        'etc/alpine-release'

        >>> safe_relpath("../secrets.txt")
        FormatError: unsafe path: ../secrets.txt
    """
    normalized = unicodedata.normalize("NFC", path)
    while normalized.startswith("./"):
        normalized = normalized[2:]
    rel = PurePosixPath(normalized)
    s = str(rel)
    if not s or s == ".":
        raise FormatError(f"unsafe path: {path}")
    if "\\" in s or "\x00" in s:
        raise FormatError(f"unsafe path: {path}")
    if rel.is_absolute() or ".." in rel.parts:
        raise FormatError(f"unsafe path: {path}")
    return s
