"""Atomic file replacement with enforced modes and inherited ownership."""

import logging
import os
import posixpath
from typing import Optional, Tuple

from .deps import OSFS


logger = logging.getLogger(__name__)


def _desired_owner(fs: OSFS, path: str) -> Optional[Tuple[int, int]]:
    """Pick uid:gid for a file about to be written as root."""
    parent = posixpath.dirname(path) or "/"
    try:
        parent_st = fs.stat(parent)
    except OSError:
        parent_st = None

    try:
        st = fs.stat(path)
        uid, gid = st.st_uid, st.st_gid
    except FileNotFoundError:
        if parent_st is None:
            return None
        return 0, parent_st.st_gid

    if gid == 0 and parent_st is not None and parent_st.st_gid != 0:
        gid = parent_st.st_gid
    return uid, gid


def write_file_atomic(fs: OSFS, path: str, data: bytes, mode: int = 0o640, as_root: bool = False):
    """Replace ``path`` with ``data`` via a sibling temp file and rename.

    The final mode equals ``mode`` regardless of umask. When running as root
    the existing owner is kept; new files inherit the parent's group.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    parent = posixpath.dirname(path) or "/"
    ensure_dir_exists_with_inherited_meta(fs, parent, as_root=as_root)

    owner = _desired_owner(fs, path) if as_root else None
    tmp = fs.mkstemp(parent, "." + posixpath.basename(path) + ".tmp-")
    try:
        with fs.create(tmp, mode) as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        fs.chmod(tmp, mode)
        if owner is not None:
            try:
                fs.chown(tmp, owner[0], owner[1])
            except PermissionError as e:
                logger.warning(f"Unable to set owner on {path}: {e}")
        fs.rename(tmp, path)
    except BaseException:
        if fs.exists(tmp):
            fs.remove(tmp)
        raise


def ensure_dir_exists_with_inherited_meta(fs: OSFS, path: str, mode: Optional[int] = None,
                                          as_root: bool = False):
    """Create ``path`` segment by segment, copying mode and group from each parent."""
    path = posixpath.normpath(path)
    if fs.isdir(path):
        return

    missing = []
    current = path
    while current not in ("/", "") and not fs.exists(current):
        missing.append(current)
        current = posixpath.dirname(current)
    if current not in ("/", "") and not fs.isdir(current):
        raise NotADirectoryError(f"{current} exists and is not a directory")

    for segment in reversed(missing):
        parent = posixpath.dirname(segment) or "/"
        parent_st = fs.stat(parent)
        seg_mode = mode if mode is not None else (parent_st.st_mode & 0o7777)
        fs.makedirs(segment, seg_mode)
        fs.chmod(segment, seg_mode)
        if as_root:
            try:
                fs.chown(segment, parent_st.st_uid, parent_st.st_gid)
            except PermissionError as e:
                logger.warning(f"Unable to set owner on {segment}: {e}")
