"""
Linker flags for packaged libraries.

Resolves (or fetches) a package from the local store and reports the flags a
C toolchain needs to link against the libraries it contains.
"""
from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import List, Optional

from .errors import NotFound
from .image_name import ImageName
from .store import LocalStore

__all__ = ["link_flags", "library_names"]

_UNIX_LIB_RE = re.compile(r"^lib(.+?)\.(?:a|dylib|so(?:\.[0-9.]+)?)$")
_WINDOWS_LIB_RE = re.compile(r"^(.+)\.lib$")


def library_names(directory: Path, windows: Optional[bool] = None) -> List[str]:
    """
    Names of the libraries found directly in `directory`, sorted.

    Examples:
        `libfoo.a`, `libfoo.so.1.2` and `libfoo.dylib` all give `foo`; on
        Windows `foo.lib` does too.
    """
    if windows is None:
        windows = sys.platform == "win32"
    names = set()
    for path in directory.iterdir():
        if not path.is_file():
            continue
        match = _UNIX_LIB_RE.match(path.name)
        if match is None and windows:
            match = _WINDOWS_LIB_RE.match(path.name)
        if match is not None:
            names.add(match.group(1))
    return sorted(names)


def link_flags(name: ImageName | str, store: Optional[LocalStore] = None, get: bool = True) -> List[str]:
    """
    Flags for linking against the libraries of a stored package.

    Args:
        name: Package image name
        store: Local store (defaults to the store configured by environment)
        get: Fetch the package if it is not stored yet

    Returns:
        `-L{dir}`, `-Wl,-rpath,{dir}` and one `-l{lib}` per library

    Raises:
        NotFound: If `get` is false and the package is not stored
    """
    store = store or LocalStore()
    if isinstance(name, str):
        name = ImageName.parse(name)
    directory = store.get(name) if get else store.resolve(name)
    if directory is None:
        raise NotFound(f"{name} is not in the local store")
    flags = [f"-L{directory}", f"-Wl,-rpath,{directory}"]
    flags.extend(f"-l{lib}" for lib in library_names(directory))
    return flags
