"""File-level helpers shared by the staged category appliers."""

import logging
import posixpath
import re
from typing import Optional

from ..utils.fs_atomic import ensure_dir_exists_with_inherited_meta, write_file_atomic
from ..utils.logger import debug_step


logger = logging.getLogger(__name__)

CONFIG_MODE = 0o640
PRIVATE_MODE = 0o600

_HEADER_KEY = re.compile(r"^[A-Za-z0-9_-]+$")


def read_stage_file(fs, stage_root: str, rel: str) -> Optional[str]:
    """Content of a staged file, or None when it was not part of the backup."""
    try:
        return fs.read_text(posixpath.join(stage_root, rel))
    except FileNotFoundError:
        return None


def dest_path(dest_root: str, rel: str) -> str:
    return posixpath.join(dest_root, rel.lstrip("/"))


def remove_if_exists(fs, path: str):
    try:
        fs.remove(path)
    except FileNotFoundError:
        pass


def has_section_header(content: str) -> bool:
    """True when the text has at least one ``type: id`` section header."""
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        fields = stripped.split()
        head = fields[0]
        if head.endswith(":"):
            if len(fields) < 2:
                continue
            key = head[:-1]
        elif head.count(":") == 1:
            key, _, rest = head.partition(":")
            if not rest.strip():
                continue
        else:
            continue
        if key and _HEADER_KEY.match(key):
            return True
    return False


def apply_config_file(deps, stage_root: str, rel: str, dest_root: str = "/",
                      require_header: bool = True, mode: int = CONFIG_MODE) -> bool:
    """Copy one staged config file into place. Returns False when it was not applied.

    An empty staged file removes the live one so the daemon does not choke on it.
    """
    content = read_stage_file(deps.fs, stage_root, rel)
    if content is None:
        debug_step(logger, "staged apply file", "skip %s: not present in staging directory", rel)
        return False
    target = dest_path(dest_root, rel)
    trimmed = content.strip()
    if not trimmed:
        logger.warning(f"Staged {rel} is empty; removing {target} to avoid parse errors")
        remove_if_exists(deps.fs, target)
        return True
    if require_header and not has_section_header(trimmed):
        logger.warning(f"Staged {rel} does not look like a valid config file (missing section header); skipping apply")
        return False
    write_file_atomic(deps.fs, target, trimmed + "\n", mode, as_root=deps.is_root)
    debug_step(logger, "staged apply file", "applied %s -> %s", rel, target)
    return True


def apply_sensitive_file(deps, stage_root: str, rel: str, dest_root: str = "/") -> bool:
    """Copy a secret-bearing staged file verbatim with owner-only permissions."""
    try:
        data = deps.fs.read_file(posixpath.join(stage_root, rel))
    except FileNotFoundError:
        return False
    write_file_atomic(deps.fs, dest_path(dest_root, rel), data, PRIVATE_MODE, as_root=deps.is_root)
    return True


def copy_file(deps, src: str, dst: str, mode: int = CONFIG_MODE):
    write_file_atomic(deps.fs, dst, deps.fs.read_file(src), mode, as_root=deps.is_root)


def sync_tree(deps, src_dir: str, dst_dir: str, prune: bool = True) -> int:
    """Make ``dst_dir`` mirror ``src_dir``: copy every file, drop files that are not staged.

    Returns the number of files written.
    """
    fs = deps.fs
    written = 0
    wanted = set()
    ensure_dir_exists_with_inherited_meta(fs, dst_dir, as_root=deps.is_root)
    for root, dirs, files in fs.walk(src_dir):
        rel_root = posixpath.relpath(root, src_dir)
        target_root = dst_dir if rel_root == "." else posixpath.join(dst_dir, rel_root)
        wanted.add(target_root)
        for name in files:
            src = posixpath.join(root, name)
            dst = posixpath.join(target_root, name)
            wanted.add(dst)
            if fs.islink(src):
                continue
            mode = PRIVATE_MODE if "/priv" in dst else CONFIG_MODE
            copy_file(deps, src, dst, mode)
            written += 1

    if prune and fs.isdir(dst_dir):
        for root, dirs, files in list(fs.walk(dst_dir)):
            for name in files:
                path = posixpath.join(root, name)
                if path not in wanted:
                    logger.debug(f"Removing extraneous {path}")
                    fs.remove(path)
    return written


def copy_staged_file(deps, src: str, dst: str, mode: int = CONFIG_MODE) -> bool:
    """Copy ``src`` over ``dst`` when it exists. Returns False when there was nothing to copy."""
    if not deps.fs.isfile(src):
        return False
    copy_file(deps, src, dst, mode)
    return True
