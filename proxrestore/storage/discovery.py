"""Discovery of backup candidates in local directories and remote namespaces."""

import logging
import posixpath
import tarfile
from datetime import datetime, timezone
from typing import IO, List, Optional

from ..config.settings import Config
from ..models.candidate import (Candidate, SourceOption, SOURCE_BUNDLE, SOURCE_RAW,
                                display_base_for)
from ..models.manifest import Manifest, parse_checksum_line, parse_metadata
from ..utils.deps import OSFS
from ..utils.errors import BundleError, CommandError, NoBackupSourcesError
from ..utils.logger import debug_step
from ..utils.paths import build_cloud_remote_path, is_local_path, is_remote_ref, join_remote
from ..utils.progress import ProgressReporter, ReportFunc


logger = logging.getLogger(__name__)

BUNDLE_SUFFIX = ".bundle.tar"
METADATA_SUFFIX = ".metadata"
CHECKSUM_SUFFIX = ".sha256"
MANIFEST_ENTRY_SUFFIXES = (".metadata", ".manifest.json")


def build_source_options(config: Config) -> List[SourceOption]:
    """Backup locations offered to the operator, in menu order."""
    options = []
    if config.backup_path.strip():
        options.append(SourceOption("Local backups", config.backup_path.strip()))

    if config.secondary_enabled and config.secondary_path.strip():
        options.append(SourceOption("Secondary backups", config.secondary_path.strip()))

    if config.cloud_enabled and (config.cloud_remote.strip() or config.cloud_remote_path.strip()):
        root = build_cloud_remote_path(config.cloud_remote, config.cloud_remote_path)
        if is_remote_ref(root):
            options.append(SourceOption("Cloud backups (rclone)", root, is_remote=True))
        elif is_local_path(root):
            options.append(SourceOption("Cloud backups", root))
        else:
            debug_step(logger, "build source options", "skip cloud (unrecognized root %r)", root)

    debug_step(logger, "build source options", "final options=%d", len(options))
    return options


def remove_option(options: List[SourceOption], target: SourceOption) -> List[SourceOption]:
    return [o for o in options if not (o.path == target.path and o.label == target.label)]


def _manifest_from_tar(tf: tarfile.TarFile, name: str) -> Optional[Manifest]:
    for member in tf:
        if member.isdir():
            continue
        if member.name.endswith(MANIFEST_ENTRY_SUFFIXES):
            handle = tf.extractfile(member)
            if handle is None:
                raise BundleError(f"read manifest entry {member.name}: not a regular file")
            data = handle.read()
            try:
                return Manifest.from_json(data)
            except ValueError as e:
                raise BundleError(f"parse manifest: {e}")
    return None


def read_manifest_from_stream(stream: IO, name: str) -> Manifest:
    """Read the first manifest entry of a bundle from a sequential byte stream."""
    try:
        with tarfile.open(fileobj=stream, mode="r|") as tf:
            manifest = _manifest_from_tar(tf, name)
    except tarfile.TarError as e:
        raise BundleError(f"read bundle {name}: {e}")
    if manifest is None:
        raise BundleError(f"manifest not found inside {name}")
    return manifest


def inspect_bundle_manifest(fs: OSFS, bundle_path: str) -> Manifest:
    """Manifest of a local ``.bundle.tar``."""
    with fs.open(bundle_path, "rb") as f:
        return read_manifest_from_stream(f, posixpath.basename(bundle_path))


def inspect_remote_bundle_manifest(remote, ref: str) -> Manifest:
    """Stream a remote bundle until its manifest entry is read, then stop the transfer."""
    stream = remote.open_stream(ref)
    manifest = None
    try:
        manifest = read_manifest_from_stream(stream.stdout, posixpath.basename(ref))
    finally:
        stream.kill()
        try:
            stream.wait()
        except CommandError as e:
            if manifest is None:
                raise BundleError(f"manifest not found inside remote bundle {posixpath.basename(ref)}: {e}")
            # Killing the stream early makes the remote client exit non-zero.
            logger.debug(f"Stream for {ref} stopped after manifest read: {e}")
    return manifest


def _fill_from_archive(fs: OSFS, manifest: Manifest, archive_path: str, checksum_path: str):
    st = fs.stat(archive_path)
    if not manifest.archive_size:
        manifest.archive_size = st.st_size
    if manifest.created_at is None:
        manifest.created_at = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
    if not manifest.sha256 and checksum_path:
        manifest.sha256 = parse_checksum_line(fs.read_file(checksum_path))


def sort_candidates(candidates: List[Candidate]) -> List[Candidate]:
    """Newest first; ties keep a stable order by display name."""
    return sorted(candidates, key=lambda c: (-c.manifest.sort_time.timestamp(), c.display_base))


def discover_local(fs: OSFS, root: str) -> List[Candidate]:
    """Bundles and raw sidecar triples directly inside ``root``."""
    try:
        entries = fs.listdir(root)
    except OSError as e:
        raise OSError(f"read directory {root}: {e}") from e

    candidates: List[Candidate] = []
    raw_bases = set()
    for name in entries:
        full = posixpath.join(root, name)
        if fs.isdir(full):
            continue

        if name.endswith(BUNDLE_SUFFIX):
            try:
                manifest = inspect_bundle_manifest(fs, full)
            except (OSError, BundleError) as e:
                logger.warning(f"Skipping bundle {name}: {e}")
                continue
            candidates.append(Candidate(manifest=manifest, source=SOURCE_BUNDLE, bundle_path=full,
                                        display_base=display_base_for(manifest, full)))
        elif name.endswith(METADATA_SUFFIX):
            base = name[:-len(METADATA_SUFFIX)]
            if base in raw_bases:
                continue
            archive = posixpath.join(root, base)
            if not fs.exists(archive):
                debug_step(logger, "discover local", "skip metadata %s (missing archive %s)", name, base)
                continue
            checksum = archive + CHECKSUM_SUFFIX
            if not fs.exists(checksum):
                logger.warning(f"Backup {base} is missing .sha256 checksum file")
                checksum = ""
            try:
                manifest = parse_metadata(fs.read_file(full), archive)
                _fill_from_archive(fs, manifest, archive, checksum)
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping metadata {name}: {e}")
                continue
            if not checksum and not manifest.sha256:
                logger.warning(f"Backup {base} has no checksum verification available")
            raw_bases.add(base)
            candidates.append(Candidate(manifest=manifest, source=SOURCE_RAW, raw_archive_path=archive,
                                        raw_metadata_path=full, raw_checksum_path=checksum,
                                        display_base=display_base_for(manifest, archive)))

    debug_step(logger, "discover local", "root=%s entries=%d candidates=%d", root, len(entries), len(candidates))
    return sort_candidates(candidates)


def discover_remote(remote, ref: str, report: Optional[ReportFunc] = None,
                    show_progress: bool = False) -> List[Candidate]:
    """Bundles and raw sidecar triples directly under a remote reference."""
    names = remote.list(ref)
    listed = set(names)
    items = [n for n in names if n.endswith(BUNDLE_SUFFIX) or
             (n.endswith(METADATA_SUFFIX) and ".tar" in n[:-len(METADATA_SUFFIX)]
              and n[:-len(METADATA_SUFFIX)] in listed)]
    if report:
        report(f"Found {len(items)} candidate file(s) in {ref}")

    candidates: List[Candidate] = []
    errors = 0
    with ProgressReporter(len(items), "Inspecting cloud backups", disable=not show_progress) as progress:
        for name in items:
            full = join_remote(ref, name)
            try:
                if name.endswith(BUNDLE_SUFFIX):
                    manifest = inspect_remote_bundle_manifest(remote, full)
                    candidates.append(Candidate(manifest=manifest, source=SOURCE_BUNDLE, bundle_path=full,
                                                display_base=display_base_for(manifest, full),
                                                is_remote=True))
                else:
                    base = name[:-len(METADATA_SUFFIX)]
                    archive = join_remote(ref, base)
                    manifest = parse_metadata(remote.read(full), archive)
                    checksum = ""
                    if base + CHECKSUM_SUFFIX in listed:
                        checksum = join_remote(ref, base + CHECKSUM_SUFFIX)
                    else:
                        logger.warning(f"Backup {base} is missing .sha256 checksum file")
                    candidates.append(Candidate(manifest=manifest, source=SOURCE_RAW, raw_archive_path=archive,
                                                raw_metadata_path=full, raw_checksum_path=checksum,
                                                display_base=display_base_for(manifest, archive),
                                                is_remote=True))
            except CommandError as e:
                if e.timed_out:
                    raise CommandError(e.name, e.args_list, None,
                                       f"timed out while inspecting {name}; increase RCLONE_TIMEOUT_CONNECTION if needed",
                                       timed_out=True)
                errors += 1
                logger.warning(f"Skipping remote item {name}: {e}")
                progress.update(success=False)
                continue
            except (OSError, ValueError, BundleError) as e:
                errors += 1
                logger.warning(f"Skipping remote item {name}: {e}")
                progress.update(success=False)
                continue
            progress.update()
            if report:
                report(f"Inspected {name}")

    if errors:
        logger.warning(f"Cloud scan summary: {len(candidates)} usable backup(s), {errors} skipped "
                       f"due to manifest/metadata errors")
        if not candidates:
            raise BundleError(f"no usable cloud backups found under {ref}: {errors} candidate(s) skipped "
                              f"due to manifest/metadata read errors")
    return sort_candidates(candidates)


def discover_option(deps, option: SourceOption, report: Optional[ReportFunc] = None) -> List[Candidate]:
    """Scan one source option with the capability it needs."""
    if option.is_remote:
        return discover_remote(deps.remote, option.path, report)
    if not deps.fs.isdir(option.path):
        raise OSError(f"path {option.path} is not accessible")
    return discover_local(deps.fs, option.path)


def filter_encrypted(candidates: List[Candidate]) -> List[Candidate]:
    return [c for c in candidates if c.manifest.is_encrypted]


def select_backup_candidate(deps, require_encrypted: bool = False,
                            report: Optional[ReportFunc] = None) -> Candidate:
    """Ask the operator for a source, scan it and let them pick a candidate.

    Sources that fail or yield nothing usable are dropped from the menu.
    """
    options = build_source_options(deps.config)
    if not options:
        raise BundleError("no backup paths configured")

    while True:
        option = deps.ui.select_source(options)
        logger.info(f"Scanning {option.path} for backups...")
        try:
            candidates = discover_option(deps, option, report)
        except (OSError, BundleError, CommandError) as e:
            logger.warning(f"Failed to inspect {option.path}: {e}")
            options = remove_option(options, option)
            if not options:
                raise NoBackupSourcesError()
            continue

        if not candidates:
            logger.warning(f"No backups found in {option.path} - removing from source list")
            options = remove_option(options, option)
            if not options:
                raise NoBackupSourcesError()
            continue

        if require_encrypted:
            encrypted = filter_encrypted(candidates)
            if not encrypted:
                logger.warning(f"No encrypted backups found in {option.path} - removing from source list")
                options = remove_option(options, option)
                if not options:
                    raise NoBackupSourcesError()
                continue
            candidates = encrypted

        kind = "encrypted backup(s)" if require_encrypted else "backup(s)"
        logger.info(f"Found {len(candidates)} {kind} in {option.path}")
        return deps.ui.select_candidate(candidates)
