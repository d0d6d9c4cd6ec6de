"""
Path safety utilities for ocipkg.

Shared validation for archive member names, both when packing a tree into a
layer and when unpacking a layer into the local store, to prevent directory
traversal.
"""
from __future__ import annotations

from pathlib import PurePath, PurePosixPath


def safe_relpath(path: str) -> str:
    """
    Validate and normalize a relative archive path.

    This function enforces the following safety rules:
    - No empty strings or "." (prevents root directory access)
    - No absolute paths (starting with '/')
    - No parent directory references ('..' components)
    - No backslashes or NUL bytes

    Args:
        path: Archive member name or relative path

    Returns:
        Normalized relative path safe for use

    Raises:
        ValueError: If path violates safety rules

    Examples:
        >>> safe_relpath("lib/libfoo.so")
        'lib/libfoo.so'

        >>> safe_relpath("./bin/tool")
        'bin/tool'

        >>> safe_relpath("../secrets.txt")
        ValueError: unsafe path: ../secrets.txt
    """
    if "\x00" in path:
        raise ValueError(f"path contains NUL byte: {path!r}")
    rel = PurePosixPath(path)
    s = str(rel)
    if not s or s == ".":
        raise ValueError(f"unsafe path: {path}")
    if "\\" in s:
        raise ValueError(f"unsafe path: {path}")
    if rel.is_absolute() or ".." in rel.parts:
        raise ValueError(f"unsafe path: {path}")
    return s


def archive_relpath(path: PurePath) -> str:
    """
    Archive member name for a filesystem-relative path.

    Only the separator is converted to '/'. Names are otherwise kept as
    they are on disk: no Unicode normalization, and a POSIX file name
    containing a backslash is rejected instead of being split.

    Raises:
        ValueError: If the name cannot be stored safely
    """
    return safe_relpath(path.as_posix())


__all__ = ["safe_relpath", "archive_relpath"]
