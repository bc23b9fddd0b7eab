"""Registry of scratch directories so crashed runs can be cleaned up later."""

import json
import logging
import os
import posixpath
from datetime import datetime, timezone
from typing import Callable, Dict, List, Any, Optional

from ..models.manifest import parse_timestamp
from .deps import OSFS, SystemClock


logger = logging.getLogger(__name__)


def _default_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TempDirRegistry:
    """JSON file mapping scratch directory paths to their owning pid and creation time."""

    def __init__(self, registry_path: str, fs: Optional[OSFS] = None, clock: Optional[SystemClock] = None,
                 process_alive: Optional[Callable[[int], bool]] = None, pid: Optional[int] = None):
        if not registry_path:
            raise ValueError("registry path cannot be empty")
        self.registry_path = registry_path
        self.fs = fs or OSFS()
        self.clock = clock or SystemClock()
        self.process_alive = process_alive or _default_alive
        self.pid = pid if pid is not None else os.getpid()
        self.fs.makedirs(posixpath.dirname(registry_path) or "/")

    @classmethod
    def from_config(cls, config, fs: Optional[OSFS] = None, **kwargs) -> "TempDirRegistry":
        """Open the configured registry, falling back under TEMP_ROOT when its directory is unusable."""
        fs = fs or OSFS()
        try:
            return cls(config.temp_registry_path, fs=fs, **kwargs)
        except OSError as e:
            fallback = posixpath.join(config.temp_root, "temp-dirs.json")
            logger.warning(f"Temp registry {config.temp_registry_path} unavailable ({e}); using {fallback}")
            return cls(fallback, fs=fs, **kwargs)

    @classmethod
    def open_for_run(cls, config, fs: Optional[OSFS] = None, **kwargs) -> "TempDirRegistry":
        """Open the configured registry and reap what earlier runs left behind."""
        registry = cls.from_config(config, fs, **kwargs)
        try:
            removed = registry.cleanup_orphaned(config.temp_dir_ttl_seconds)
        except (OSError, ValueError) as e:
            logger.warning(f"Orphaned temp dir cleanup failed: {e}")
            return registry
        if removed:
            logger.info(f"Removed {removed} orphaned temp dir(s) from previous runs")
        return registry

    def _now(self) -> datetime:
        now = self.clock.now()
        if now.tzinfo is None:
            now = now.astimezone(timezone.utc)
        return now.astimezone(timezone.utc)

    def load(self) -> List[Dict[str, Any]]:
        """Read registry entries; a missing or empty file means no entries."""
        try:
            data = self.fs.read_file(self.registry_path)
        except FileNotFoundError:
            return []
        if not data.strip():
            return []
        try:
            entries = json.loads(data.decode("utf-8"))
        except ValueError as e:
            raise ValueError(f"parse registry {self.registry_path}: {e}")
        if not isinstance(entries, list):
            raise ValueError(f"parse registry {self.registry_path}: expected a list")
        return entries

    def save(self, entries: List[Dict[str, Any]]):
        content = json.dumps(entries, indent=2).encode("utf-8")
        tmp = self.registry_path + ".tmp"
        self.fs.write_file(tmp, content, 0o640)
        self.fs.rename(tmp, self.registry_path)

    def register(self, path: str):
        """Record a scratch directory; an existing entry for the same path is replaced."""
        entries = [e for e in self.load() if e.get("path") != path]
        entries.append({
            "path": path,
            "pid": self.pid,
            "created_at": self._now().strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        })
        self.save(entries)
        logger.debug(f"Registered temp dir {path}")

    def deregister(self, path: str, remove_tree: bool = True):
        """Drop an entry and, by default, delete the directory itself."""
        if remove_tree and self.fs.exists(path):
            self.fs.rmtree(path)
        entries = self.load()
        filtered = [e for e in entries if e.get("path") != path]
        if len(filtered) != len(entries):
            self.save(filtered)
            logger.debug(f"Deregistered temp dir {path}")

    def cleanup_orphaned(self, ttl_seconds: float) -> int:
        """Remove directories whose owner is gone and that outlived ``ttl_seconds``.

        A live owner keeps its directory however old it is, and a fresh entry
        survives a dead owner until the TTL passes. Returns the number of
        directories removed. Entries whose tree cannot be deleted stay in the
        registry for the next attempt.
        """
        now = self._now()
        kept = []
        cleaned = 0
        for entry in self.load():
            path = entry.get("path", "")
            pid = int(entry.get("pid") or 0)
            created = parse_timestamp(entry.get("created_at", ""))
            stale = created is None or (now - created).total_seconds() > ttl_seconds
            alive = self.process_alive(pid)

            if alive or not stale:
                kept.append(entry)
                continue

            logger.debug(f"Cleaning orphaned temp dir {path} (pid={pid})")
            try:
                if path and self.fs.exists(path):
                    self.fs.rmtree(path)
            except OSError as e:
                logger.warning(f"Failed to cleanup temp dir {path}: {e}")
                kept.append(entry)
                continue
            cleaned += 1

        self.save(kept)
        return cleaned
