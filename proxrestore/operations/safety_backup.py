"""Safety snapshots of live files taken before a restore overwrites them."""

import logging
import posixpath
import tarfile
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List

from ..models.category import Category
from ..utils.deps import OSFS
from ..utils.progress import ProgressReporter


logger = logging.getLogger(__name__)

GLOB_CHARS = "*?["


@dataclass
class SafetyBackupResult:
    """Where a snapshot was written and what it holds."""
    backup_path: str
    files_backed_up: int = 0
    total_size: int = 0
    timestamp: datetime = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "BackupPath": self.backup_path,
            "FilesBackedUp": self.files_backed_up,
            "TotalSize": self.total_size,
        }


def selected_paths(categories: List[Category]) -> List[str]:
    """Unique category paths, in first-seen order."""
    seen = set()
    paths = []
    for cat in categories:
        for p in cat.paths:
            if p and p not in seen:
                seen.add(p)
                paths.append(p)
    return paths


def _expand(fs: OSFS, dest_root: str, cat_path: str) -> List[str]:
    rel = cat_path[2:] if cat_path.startswith("./") else cat_path.lstrip("/")
    rel = rel.rstrip("/")
    if not rel:
        return []
    if any(ch in rel for ch in GLOB_CHARS):
        matches = fs.glob(posixpath.join(dest_root, rel))
        return [posixpath.relpath(m, dest_root) for m in matches]
    return [rel]


class _SnapshotWriter:

    def __init__(self, fs: OSFS, tf: tarfile.TarFile, result: SafetyBackupResult):
        self.fs = fs
        self.tf = tf
        self.result = result
        self.written = set()

    def add(self, full: str, arcname: str):
        if arcname in self.written:
            return
        self.written.add(arcname)
        info = self.tf.gettarinfo(name=self.fs.path(full), arcname=arcname)
        if info.isreg():
            with self.fs.open(full, "rb") as f:
                self.tf.addfile(info, f)
            self.result.files_backed_up += 1
            self.result.total_size += info.size
            logger.debug(f"Backed up: {arcname} ({info.size} bytes)")
        else:
            self.tf.addfile(info)
            if info.issym():
                logger.debug(f"Backed up symlink: {arcname} -> {info.linkname}")

    def add_tree(self, full: str, arcname: str):
        self.add(full, arcname)
        for root, dirs, files in self.fs.walk(full):
            rel_root = posixpath.relpath(root, full)
            base = arcname if rel_root == "." else posixpath.join(arcname, rel_root)
            for name in dirs + files:
                child = posixpath.join(root, name)
                try:
                    self.add(child, posixpath.join(base, name))
                except OSError as e:
                    logger.warning(f"Failed to backup {child}: {e}")


def create_safety_backup(deps, categories: List[Category], dest_root: str = "/",
                         prefix: str = "restore_backup", show_progress: bool = False) -> SafetyBackupResult:
    """Snapshot every existing path the categories govern into a ``.tar.gz`` under the temp root."""
    fs = deps.fs
    base_dir = deps.config.temp_root
    fs.makedirs(base_dir)
    timestamp = deps.clock.now()
    archive = posixpath.join(base_dir, f"{prefix}_{timestamp.strftime('%Y%m%d_%H%M%S')}.tar.gz")

    logger.info("Creating safety backup of current configuration...")
    logger.debug(f"Safety backup will be saved to: {archive}")

    result = SafetyBackupResult(backup_path=archive, timestamp=timestamp)
    targets = []
    for cat_path in selected_paths(categories):
        targets.extend(_expand(fs, dest_root, cat_path))

    with fs.create(archive, 0o600) as out, tarfile.open(fileobj=out, mode="w:gz") as tf, \
            ProgressReporter(len(targets), "Safety backup", unit="paths", disable=not show_progress) as progress:
        writer = _SnapshotWriter(fs, tf, result)
        for rel in targets:
            full = posixpath.join(dest_root, rel)
            progress.update()
            if not fs.exists(full):
                continue
            try:
                if fs.isdir(full) and not fs.islink(full):
                    writer.add_tree(full, rel)
                else:
                    writer.add(full, rel)
            except OSError as e:
                logger.warning(f"Failed to backup {full}: {e}")

    logger.info(f"Safety backup created: {archive} ({result.files_backed_up} files, "
                f"{result.total_size / (1024 * 1024):.2f} MB)")

    location = posixpath.join(base_dir, f"{prefix}_location.txt")
    try:
        fs.write_file(location, archive.encode("utf-8"), 0o644)
        logger.info(f"Backup location saved to: {location}")
    except OSError as e:
        logger.warning(f"Could not write backup location file: {e}")
    return result


def restore_safety_backup(deps, backup_path: str, dest_root: str = "/") -> int:
    """Unpack a safety snapshot over ``dest_root``. Returns the number of files written."""
    fs = deps.fs
    logger.info(f"Restoring from safety backup: {backup_path}")
    restored = 0
    with fs.open(backup_path, "rb") as raw, tarfile.open(fileobj=raw, mode="r|gz") as tf:
        for member in tf:
            name = posixpath.normpath(member.name.lstrip("/"))
            if name == ".." or name.startswith("../"):
                logger.warning(f"Skipping unsafe entry {member.name}")
                continue
            target = posixpath.join(dest_root, name)
            try:
                fs.makedirs(posixpath.dirname(target))
                if member.isdir():
                    fs.makedirs(target, member.mode & 0o7777 or 0o755)
                    continue
                if member.issym():
                    if fs.exists(target):
                        fs.remove(target)
                    fs.symlink(member.linkname, target)
                    continue
                if not member.isfile():
                    continue
                source = tf.extractfile(member)
                with fs.create(target, member.mode & 0o7777 or 0o644) as out:
                    for chunk in iter(lambda: source.read(1024 * 1024), b""):
                        out.write(chunk)
            except OSError as e:
                logger.warning(f"Cannot restore {target}: {e}")
                continue
            restored += 1
            logger.debug(f"Restored: {name}")

    logger.info(f"Safety backup restored: {restored} files")
    return restored
