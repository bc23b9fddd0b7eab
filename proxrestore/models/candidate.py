"""Backup candidates, source options and staged bundles."""

import logging
import posixpath
from dataclasses import dataclass, field
from typing import Callable, Dict, Any, Optional

from .manifest import Manifest
from ..utils.paths import base_name_from_remote_ref


logger = logging.getLogger(__name__)

SOURCE_BUNDLE = "bundle"
SOURCE_RAW = "raw"


@dataclass
class SourceOption:
    """A backup location offered to the operator."""
    label: str
    path: str
    is_remote: bool = False

    def display(self) -> str:
        return f"{self.label} ({self.path})"


@dataclass
class Candidate:
    """A discovered backup with its manifest loaded."""
    manifest: Manifest
    source: str
    bundle_path: str = ""
    raw_archive_path: str = ""
    raw_metadata_path: str = ""
    raw_checksum_path: str = ""
    display_base: str = ""
    is_remote: bool = False

    def label(self) -> str:
        created = self.manifest.created_at.strftime("%Y-%m-%d %H:%M:%S") if self.manifest.created_at else "unknown date"
        version = self.manifest.script_version or "unknown"
        return (f"{created} • {self.manifest.status.upper()} • Tool v{version} • "
                f"{self.manifest.target_summary()}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {
            "Source": self.source,
            "Remote": self.is_remote,
            "Display": self.display_base,
            "CreatedAt": self.manifest.to_dict().get("created_at"),
            "Encryption": self.manifest.status,
            "Targets": self.manifest.targets(),
            "Hostname": self.manifest.hostname,
        }
        if self.source == SOURCE_BUNDLE:
            data["Bundle"] = self.bundle_path
        else:
            data["Archive"] = self.raw_archive_path
            data["Metadata"] = self.raw_metadata_path
            data["Checksum"] = self.raw_checksum_path
        return data


def display_base_for(manifest: Manifest, fallback: str) -> str:
    base = posixpath.basename(manifest.archive_path.strip())
    if base:
        return base
    if ":" in fallback:
        return base_name_from_remote_ref(fallback)
    return posixpath.basename(fallback)


@dataclass
class StagedFiles:
    """Paths of the three bundle members after extraction into the workdir."""
    archive_path: str = ""
    metadata_path: str = ""
    checksum_path: str = ""


@dataclass
class StagedBundle:
    """A plaintext archive prepared inside a scratch directory."""
    workdir: str
    archive_path: str
    manifest: Manifest
    checksum: str
    cleanup_func: Optional[Callable[[], None]] = field(default=None, repr=False)

    def cleanup(self):
        """Remove the scratch tree and any downloaded temp files."""
        func, self.cleanup_func = self.cleanup_func, None
        if func is not None:
            func()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()
