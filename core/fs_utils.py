"""Filesystem helpers for obtaining module bytes.

Module files come from directories the operator points at, so reads are
TOCTOU-safe: open once with O_NOFOLLOW, fstat the fd, read from that fd.
"""

from __future__ import annotations
import logging
import os
import stat
from typing import Iterable, List

from models.models import DEFAULT_MAX_MODULE_BYTES

logger = logging.getLogger("warden.fs")

MODULE_SUFFIX = ".wasm"


def read_regular_file(path: str, max_bytes: int, what: str = "File") -> bytes:
    """Read at most max_bytes from a regular file, refusing symlinks.

    Raises OSError when the path cannot be opened and ValueError when it is
    not a regular file or is larger than max_bytes.
    """
    open_flags = os.O_RDONLY
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    if hasattr(os, "O_NONBLOCK"):
        open_flags |= os.O_NONBLOCK
    if hasattr(os, "O_BINARY"):
        open_flags |= os.O_BINARY
    fd = os.open(path, open_flags)
    fd_owned = True
    try:
        fd_stat = os.fstat(fd)
        # Reject FIFO/device/socket: could block or produce infinite data
        if not stat.S_ISREG(fd_stat.st_mode):
            raise ValueError(
                f"{what} {path!r} is not a regular file (mode={oct(fd_stat.st_mode)})"
            )
        if fd_stat.st_size > max_bytes:
            raise ValueError(
                f"{what} {path!r} too large ({fd_stat.st_size:,} bytes, limit {max_bytes:,})"
            )
        with os.fdopen(fd, "rb") as f:
            fd_owned = False
            data = f.read(max_bytes + 1)
    finally:
        if fd_owned:
            os.close(fd)
    if len(data) > max_bytes:
        raise ValueError(f"{what} {path!r} grew during read (possible TOCTOU)")
    return data


def read_module_file(path: str, max_bytes: int = DEFAULT_MAX_MODULE_BYTES) -> bytes:
    return read_regular_file(path, max_bytes, what="Module")


def discover_module_files(dirs: Iterable[str]) -> List[str]:
    """Sorted *.wasm regular files from each directory. Symlinks are skipped."""
    found: List[str] = []
    for dir_path in dirs:
        if not os.path.isdir(dir_path):
            logger.warning("Plugins dir not found: %r", dir_path)
            continue
        entries = []
        with os.scandir(dir_path) as it:
            for entry in it:
                if not entry.name.endswith(MODULE_SUFFIX):
                    continue
                if entry.is_symlink():
                    logger.warning("Skipping symlink in plugins dir: %r", entry.name)
                    continue
                if entry.is_file(follow_symlinks=False):
                    entries.append(entry.path)
        found.extend(sorted(entries))
    return found
