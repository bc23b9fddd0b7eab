"""Backup manifest data model."""

import json
import re
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field


ENCRYPTION_AGE = "age"
ENCRYPTION_NONE = "none"

# snake_case key -> attribute; PascalCase keys are accepted on read as well.
_FIELDS = {
    "archive_path": ("ArchivePath", "archive_path"),
    "archive_size": ("ArchiveSize", "archive_size"),
    "sha256": ("SHA256", "sha256"),
    "created_at": ("CreatedAt", "created_at"),
    "compression_type": ("CompressionType", "compression_type"),
    "compression_level": ("CompressionLevel", "compression_level"),
    "compression_mode": ("CompressionMode", "compression_mode"),
    "proxmox_type": ("ProxmoxType", "proxmox_type"),
    "proxmox_targets": ("ProxmoxTargets", "proxmox_targets"),
    "proxmox_version": ("ProxmoxVersion", "proxmox_version"),
    "hostname": ("Hostname", "hostname"),
    "script_version": ("ScriptVersion", "script_version"),
    "encryption_mode": ("EncryptionMode", "encryption_mode"),
    "cluster_mode": ("ClusterMode", "cluster_mode"),
}

_OMIT_EMPTY = ("compression_mode", "proxmox_targets", "proxmox_version",
               "script_version", "encryption_mode", "cluster_mode")

_FRACTION_RE = re.compile(r"\.(\d+)")

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC3339 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        value = ZERO_TIME
    value = value.astimezone(timezone.utc)
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Manifest:
    """Descriptor of one backup archive."""
    archive_path: str = ""
    archive_size: int = 0
    sha256: str = ""
    created_at: Optional[datetime] = None
    compression_type: str = ""
    compression_level: int = 0
    compression_mode: str = ""
    proxmox_type: str = ""
    proxmox_targets: List[str] = field(default_factory=list)
    proxmox_version: str = ""
    hostname: str = ""
    script_version: str = ""
    encryption_mode: str = ""
    cluster_mode: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_encrypted(self) -> bool:
        return self.encryption_mode.strip().lower() == ENCRYPTION_AGE

    @property
    def status(self) -> str:
        return "encrypted" if self.is_encrypted else "plain"

    @property
    def sort_time(self) -> datetime:
        return self.created_at or ZERO_TIME

    def targets(self) -> List[str]:
        """Target products; falls back to the single proxmox_type."""
        if self.proxmox_targets:
            return list(self.proxmox_targets)
        if self.proxmox_type:
            return [self.proxmox_type]
        return []

    def target_summary(self) -> str:
        """Short label like ``pve v8.1 (cluster)``."""
        targets = "+".join(self.targets()) or "unknown target"
        version = self.proxmox_version.strip() or "unknown"
        if not version.lower().startswith("v"):
            version = "v" + version
        summary = f"{targets} {version}"
        cluster = self.cluster_mode.strip().lower()
        if cluster in ("cluster", "standalone"):
            summary = f"{summary} ({cluster})"
        return summary

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: Dict[str, Any] = {}
        for key in _FIELDS:
            value = getattr(self, key)
            if key == "created_at":
                value = format_timestamp(value)
            if key in _OMIT_EMPTY and not value:
                continue
            data[key] = value
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        """Create from dictionary loaded from JSON."""
        if not isinstance(data, dict):
            raise ValueError("manifest must be a JSON object")
        known = set()
        values: Dict[str, Any] = {}
        for attr, names in _FIELDS.items():
            for name in names:
                if name in data:
                    values[attr] = data[name]
                    known.add(name)
                    break
        manifest = cls(
            archive_path=str(values.get("archive_path") or ""),
            archive_size=int(values.get("archive_size") or 0),
            sha256=str(values.get("sha256") or "").strip().lower(),
            created_at=parse_timestamp(values.get("created_at")),
            compression_type=str(values.get("compression_type") or ""),
            compression_level=int(values.get("compression_level") or 0),
            compression_mode=str(values.get("compression_mode") or ""),
            proxmox_type=str(values.get("proxmox_type") or ""),
            proxmox_targets=[str(t) for t in (values.get("proxmox_targets") or [])],
            proxmox_version=str(values.get("proxmox_version") or ""),
            hostname=str(values.get("hostname") or ""),
            script_version=str(values.get("script_version") or ""),
            encryption_mode=str(values.get("encryption_mode") or ""),
            cluster_mode=str(values.get("cluster_mode") or ""),
        )
        manifest.extra = {k: v for k, v in data.items() if k not in known}
        return manifest

    @classmethod
    def from_json(cls, raw: bytes) -> 'Manifest':
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return cls.from_dict(json.loads(raw))

    def copy(self) -> 'Manifest':
        return Manifest.from_dict(self.to_dict())


def infer_encryption_mode(archive_path: str) -> str:
    return ENCRYPTION_AGE if archive_path.endswith(".age") else "plain"


def parse_legacy_metadata(text: str, archive_path: str) -> Manifest:
    """Parse legacy ``KEY=VALUE`` metadata. Malformed lines are ignored."""
    manifest = Manifest(archive_path=archive_path)
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "COMPRESSION_TYPE":
            manifest.compression_type = value
        elif key == "COMPRESSION_LEVEL":
            try:
                manifest.compression_level = int(value)
            except ValueError:
                pass
        elif key == "PROXMOX_TYPE":
            manifest.proxmox_type = value
        elif key == "HOSTNAME":
            manifest.hostname = value
        elif key == "SCRIPT_VERSION":
            manifest.script_version = value
        elif key == "ENCRYPTION_MODE":
            manifest.encryption_mode = value

    if not manifest.encryption_mode:
        manifest.encryption_mode = infer_encryption_mode(archive_path)
    return manifest


def parse_metadata(data: bytes, archive_path: str) -> Manifest:
    """Parse sidecar metadata as JSON, falling back to the legacy format."""
    text = data.decode("utf-8", errors="replace").strip()
    if not text:
        raise ValueError("metadata file is empty")
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        manifest = Manifest.from_dict(parsed)
        if not manifest.archive_path.strip():
            manifest.archive_path = archive_path
        return manifest
    return parse_legacy_metadata(text, archive_path)


def parse_checksum_line(data: bytes) -> str:
    """First field of a ``<hex>  <filename>`` checksum file."""
    fields = data.decode("utf-8", errors="replace").split()
    return fields[0].lower() if fields else ""


def format_checksum_line(digest: str, filename: str) -> str:
    return f"{digest}  {filename}\n"
