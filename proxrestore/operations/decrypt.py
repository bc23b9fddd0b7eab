"""Decrypt workflow: turn an encrypted backup into a plain bundle."""

import logging
import posixpath
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..models.candidate import Candidate
from ..models.manifest import format_checksum_line
from ..storage.bundle import create_bundle, move_file_safe, prepare_plain_bundle
from ..storage.discovery import select_backup_candidate
from ..ui.cli import ensure_writable_path
from ..utils.errors import DecryptAborted, InputAborted
from ..utils.fs_atomic import write_file_atomic
from ..utils.logger import debug_step
from ..utils.progress import log_report
from ..utils.temp_registry import TempDirRegistry


logger = logging.getLogger(__name__)

DECRYPTED_BUNDLE_SUFFIX = ".decrypted.bundle.tar"
SIDECAR_MODE = 0o640


@dataclass
class DecryptResult:
    bundle_path: str
    archive_name: str
    sha256: str
    source: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Bundle": self.bundle_path,
            "Archive": self.archive_name,
            "SHA256": self.sha256,
            "Source": self.source,
        }


def default_destination(config) -> str:
    base = (config.base_dir or "").strip()
    return posixpath.join(base, "decrypt") if base else "./decrypt"


class DecryptOperation:
    """Select an encrypted backup, decrypt it in a scratch dir and move the new bundle out."""

    def __init__(self, deps, version: str = "", registry: Optional[TempDirRegistry] = None):
        self.deps = deps
        self.version = version
        self.registry = registry or TempDirRegistry.open_for_run(deps.config, deps.fs, clock=deps.clock)

    def run(self) -> DecryptResult:
        try:
            candidate = select_backup_candidate(self.deps, require_encrypted=True,
                                                report=log_report(logger))
            return self.decrypt_candidate(candidate)
        except InputAborted:
            raise DecryptAborted()

    def decrypt_candidate(self, candidate: Candidate) -> DecryptResult:
        deps = self.deps
        fs = deps.fs
        debug_step(logger, "decrypt workflow", "candidate=%s version=%s", candidate.display_base, self.version)

        with prepare_plain_bundle(deps, candidate, self.version, self.registry) as prepared:
            dest_dir = deps.ui.prompt_destination_dir(default_destination(deps.config))
            fs.makedirs(dest_dir, 0o755)
            logger.info(f"Destination directory: {dest_dir}")

            archive_name = posixpath.basename(prepared.archive_path)
            target = posixpath.join(dest_dir, archive_name + DECRYPTED_BUNDLE_SUFFIX)
            target = ensure_writable_path(fs, deps.ui, target, "decrypted bundle")

            # Sidecars are written next to the plaintext inside the scratch dir.
            manifest = prepared.manifest.copy()
            manifest.archive_path = posixpath.join(dest_dir, archive_name)
            write_file_atomic(fs, prepared.archive_path + ".metadata", manifest.to_json().encode("utf-8"),
                              SIDECAR_MODE)
            write_file_atomic(fs, prepared.archive_path + ".sha256",
                              format_checksum_line(prepared.checksum, archive_name).encode("utf-8"),
                              SIDECAR_MODE)

            logger.info("Creating decrypted bundle...")
            bundle_path = create_bundle(fs, prepared.archive_path)
            move_file_safe(fs, bundle_path, target)

        logger.info(f"Decrypted bundle created: {target}")
        return DecryptResult(bundle_path=target, archive_name=archive_name,
                             sha256=prepared.checksum, source=candidate.label())
