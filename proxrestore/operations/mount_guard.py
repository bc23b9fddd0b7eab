"""Guards that keep restored storage definitions from filling the root filesystem.

When a datastore or directory storage lives under a mountpoint whose disk is
not mounted yet, its path resolves to the root filesystem. Writing there
would silently consume ``/``. The guard bind-mounts an empty read-only
directory over the mountpoint, or marks it immutable when that fails.
"""

import hashlib
import logging
import posixpath
from typing import Iterable, List, Optional, Set

from ..models.sections import parse_sections
from ..utils.errors import CommandError, CommandNotFound


logger = logging.getLogger(__name__)

GUARD_BASE_DIR = "/var/lib/proxsave/guards"
MOUNT_ATTEMPT_TIMEOUT = 10
MOUNT_ROOT_PREFIXES = ("/mnt/", "/media/", "/run/media/")


def guard_dir_for_target(target: str) -> str:
    digest = hashlib.sha256(target.encode("utf-8")).hexdigest()[:8]
    base = posixpath.basename(target.rstrip("/")) or "guard"
    return posixpath.join(GUARD_BASE_DIR, f"{base}-{digest}")


def is_mount_root_location(path: str) -> bool:
    return posixpath.normpath(path).startswith(MOUNT_ROOT_PREFIXES)


def mount_root_for_path(path: str) -> str:
    """First mountable directory under /mnt, /media or /run/media/<user> holding ``path``."""
    p = posixpath.normpath(path.strip())
    if p in ("", ".", "/"):
        return ""
    if p.startswith("/mnt/pve/"):
        parts = [x for x in p[len("/mnt/pve/"):].split("/") if x]
        return posixpath.join("/mnt/pve", parts[0]) if parts else ""
    for prefix in ("/mnt/", "/media/"):
        if p.startswith(prefix):
            parts = [x for x in p[len(prefix):].split("/") if x]
            return posixpath.join(prefix, parts[0]) if parts else ""
    if p.startswith("/run/media/"):
        parts = [x for x in p[len("/run/media/"):].split("/") if x]
        if not parts:
            return ""
        return posixpath.join("/run/media", *parts[:2])
    return ""


def parse_mountinfo_mountpoints(text: str) -> Set[str]:
    mounts = set()
    for line in text.splitlines():
        fields = line.split()
        if len(fields) >= 5:
            mounts.add(posixpath.normpath(fields[4].replace("\\040", " ")))
    return mounts


def fstab_mountpoints(text: str) -> Set[str]:
    mounts = set()
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        fields = stripped.split()
        if len(fields) >= 2 and fields[1].startswith("/"):
            mounts.add(posixpath.normpath(fields[1]))
    return mounts


def _nearest_existing(fs, path: str) -> str:
    current = posixpath.normpath(path)
    while not fs.exists(current):
        parent = posixpath.dirname(current)
        if parent == current:
            break
        current = parent
    return current


def is_on_root_filesystem(fs, path: str) -> bool:
    """True when the nearest existing ancestor of ``path`` shares ``/``'s device."""
    return fs.stat(_nearest_existing(fs, path)).st_dev == fs.stat("/").st_dev


class MountGuard:
    """Applies guards on offline mountpoints through the command runner."""

    def __init__(self, deps):
        self.deps = deps
        self.fs = deps.fs
        self.runner = deps.runner

    def mounted_paths(self) -> Set[str]:
        try:
            return parse_mountinfo_mountpoints(self.fs.read_text("/proc/self/mountinfo"))
        except OSError as e:
            logger.debug(f"Unable to read mountinfo: {e}")
        try:
            return {posixpath.normpath(line.split()[1]) for line in self.fs.read_text("/proc/mounts").splitlines()
                    if len(line.split()) >= 2}
        except OSError as e:
            logger.debug(f"Unable to read /proc/mounts: {e}")
        return set()

    def is_mounted(self, path: str) -> bool:
        return posixpath.normpath(path) in self.mounted_paths()

    def _try_mount(self, target: str) -> bool:
        try:
            self.runner.run("mount", target, timeout=MOUNT_ATTEMPT_TIMEOUT)
        except (CommandError, CommandNotFound) as e:
            logger.debug(f"Mount attempt failed for {target}: {e}")
            return False
        return self.is_mounted(target) or not is_on_root_filesystem(self.fs, target)

    def _bind_guard(self, target: str):
        guard_dir = guard_dir_for_target(target)
        self.fs.makedirs(guard_dir)
        self.fs.makedirs(target)
        self.runner.run("mount", "--bind", guard_dir, target, timeout=MOUNT_ATTEMPT_TIMEOUT)
        try:
            self.runner.run("mount", "-o", "remount,bind,ro,nodev,nosuid,noexec", target,
                            timeout=MOUNT_ATTEMPT_TIMEOUT)
        except (CommandError, CommandNotFound):
            self.runner.run("umount", target, timeout=MOUNT_ATTEMPT_TIMEOUT)
            raise

    def guard(self, target: str, label: str = "mount guard") -> bool:
        """Protect ``target`` if it is an offline mountpoint. Returns True when a guard was applied."""
        target = posixpath.normpath(target.strip())
        if target in ("", ".", "/"):
            return False
        try:
            self.fs.makedirs(target)
            if not is_on_root_filesystem(self.fs, target):
                return False
        except OSError as e:
            logger.warning(f"{label}: unable to inspect {target}: {e}")
            return False
        if self.is_mounted(target):
            logger.debug(f"{label}: mountpoint {target} already mounted, skipping guard")
            return False
        if self._try_mount(target):
            logger.info(f"{label}: mountpoint {target} is now mounted (mount attempt succeeded)")
            return False

        logger.info(f"{label}: mountpoint {target} offline, applying guard bind mount")
        try:
            self._bind_guard(target)
        except (OSError, CommandError, CommandNotFound) as e:
            logger.warning(f"{label}: failed to bind-mount guard on {target}: {e}; falling back to chattr +i")
            try:
                self.runner.run("chattr", "+i", target)
            except (CommandError, CommandNotFound) as fallback:
                logger.warning(f"{label}: failed to set immutable attribute on {target}: {fallback}")
                return False
            logger.warning(f"{label}: {target} resolves to root filesystem (mount missing?) - "
                           f"marked immutable (chattr +i) until storage is available")
            return True
        logger.warning(f"{label}: {target} resolves to root filesystem (mount missing?) - "
                       f"bind-mounted a read-only guard until storage is available")
        return True

    def guard_paths(self, paths: Iterable[str], fstab_path: Optional[str] = "/etc/fstab",
                    label: str = "mount guard") -> List[str]:
        """Guard the mount roots of ``paths``; with an fstab, only roots it declares are guarded."""
        declared = None
        if fstab_path:
            try:
                declared = fstab_mountpoints(self.fs.read_text(fstab_path))
            except OSError as e:
                logger.warning(f"{label}: unable to parse {fstab_path}: {e} (continuing without fstab cross-check)")
        candidates = sorted((m for m in (declared or ()) if is_mount_root_location(m)),
                            key=len, reverse=True)

        protected: List[str] = []
        for path in paths:
            p = posixpath.normpath(path.strip())
            if p in ("", ".", "/"):
                continue
            target = next((m for m in candidates if p == m or p.startswith(m + "/")), "")
            target = target or mount_root_for_path(p)
            if not target or target in protected:
                continue
            if declared is not None and target not in declared:
                continue
            if self.guard(target, label):
                protected.append(target)
        return protected


def datastore_paths(datastore_cfg: str) -> List[str]:
    return [s.get("path", "") for s in parse_sections(datastore_cfg) if s.type == "datastore" and s.get("path")]


def dir_storage_paths(storage_cfg: str) -> List[str]:
    return [s.get("path", "") for s in parse_sections(storage_cfg) if s.type == "dir" and s.get("path")]
