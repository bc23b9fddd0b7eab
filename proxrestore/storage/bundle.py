"""Bundle preparation: extraction, remote staging, decryption and repackaging."""

import hashlib
import logging
import posixpath
import tarfile
from typing import Callable, List, Optional

from ..models.candidate import Candidate, StagedBundle, StagedFiles, SOURCE_BUNDLE, SOURCE_RAW
from ..models.manifest import ENCRYPTION_NONE, parse_checksum_line
from ..utils.deps import OSFS
from ..utils.errors import BundleError, DecryptAborted
from ..utils.logger import debug_step
from ..utils.paths import base_name_from_remote_ref
from ..utils.temp_registry import TempDirRegistry
from .crypto import decrypt_file, is_wrong_key_error, parse_identity_input


logger = logging.getLogger(__name__)

WORKDIR_PREFIX = "proxmox-decrypt-"
DOWNLOAD_PREFIX = "proxsave-rclone-"
EXTRACTED_FILE_MODE = 0o640
SECRET_PROMPT = "Enter decryption key or passphrase (0 = exit): "

CHUNK_SIZE = 1024 * 1024


def sanitize_bundle_entry_name(name: str) -> str:
    """Reduce a tar entry name to a safe basename or raise BundleError."""
    trimmed = (name or "").strip()
    if not trimmed:
        raise BundleError(f"invalid archive entry name {name!r}")
    cleaned = posixpath.normpath(trimmed.replace("\\", "/"))
    if cleaned in ("", "."):
        raise BundleError(f"invalid archive entry name {name!r}")
    if (cleaned.startswith("/") or cleaned == ".." or cleaned.startswith("../")
            or "/../" in cleaned):
        raise BundleError(f"archive entry escapes workdir: {name!r}")
    base = posixpath.basename(cleaned)
    if base in ("", ".", "..", "/"):
        raise BundleError(f"invalid base name in archive entry {name!r}")
    return base


def _within(root: str, target: str) -> bool:
    root = posixpath.normpath(root)
    target = posixpath.normpath(target)
    return target == root or target.startswith(root.rstrip("/") + "/")


def _classify(staged: StagedFiles, paths: List[str]):
    checksums = set()
    for path in paths:
        if path.endswith(".metadata"):
            staged.metadata_path = path
        elif path.endswith(".sha256"):
            checksums.add(path)
        else:
            staged.archive_path = path
    # only the archive's own sidecar counts; .metadata.sha256 covers the metadata
    if staged.archive_path and staged.archive_path + ".sha256" in checksums:
        staged.checksum_path = staged.archive_path + ".sha256"


def extract_bundle_to_workdir(fs: OSFS, bundle_path: str, workdir: str) -> StagedFiles:
    """Extract the bundle's members flat into ``workdir``."""
    staged = StagedFiles()
    extracted: List[str] = []
    try:
        with fs.open(bundle_path, "rb") as f, tarfile.open(fileobj=f, mode="r:") as tf:
            for member in tf:
                if member.isdir():
                    continue
                base = sanitize_bundle_entry_name(member.name)
                target = posixpath.join(workdir, base)
                if not _within(workdir, target):
                    raise BundleError(f"archive entry escapes workdir: {member.name!r}")
                if not member.isfile():
                    debug_step(logger, "extract bundle", "skip non-regular entry %s", member.name)
                    continue
                source = tf.extractfile(member)
                with fs.create(target, EXTRACTED_FILE_MODE) as out:
                    while True:
                        chunk = source.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        out.write(chunk)
                extracted.append(target)
    except tarfile.TarError as e:
        raise BundleError(f"read bundle: {e}")

    _classify(staged, extracted)
    if not (staged.archive_path and staged.metadata_path and staged.checksum_path):
        raise BundleError("bundle missing required files")
    return staged


def copy_raw_artifacts(deps, candidate: Candidate, workdir: str) -> StagedFiles:
    """Copy or download a raw archive, its metadata and its optional checksum."""
    fs = deps.fs
    refs = [candidate.raw_archive_path, candidate.raw_metadata_path]
    if not all(r.strip() for r in refs):
        raise BundleError("invalid raw candidate paths")

    if candidate.is_remote:
        names = [base_name_from_remote_ref(r) for r in refs]
    else:
        names = [posixpath.basename(r) for r in refs]
    if not all(names):
        raise BundleError("invalid raw candidate paths")

    staged = StagedFiles(archive_path=posixpath.join(workdir, names[0]),
                         metadata_path=posixpath.join(workdir, names[1]))

    def fetch(src: str, dst: str):
        if candidate.is_remote:
            deps.remote.download(src, fs.path(dst), progress=True)
        else:
            fs.copyfile(src, dst)

    try:
        fetch(candidate.raw_archive_path, staged.archive_path)
    except OSError as e:
        raise BundleError(f"copy archive: {e}")
    try:
        fetch(candidate.raw_metadata_path, staged.metadata_path)
    except OSError as e:
        raise BundleError(f"copy metadata: {e}")

    if candidate.raw_checksum_path:
        if candidate.is_remote:
            name = base_name_from_remote_ref(candidate.raw_checksum_path)
        else:
            name = posixpath.basename(candidate.raw_checksum_path)
        target = posixpath.join(workdir, name)
        try:
            fetch(candidate.raw_checksum_path, target)
            staged.checksum_path = target
        except OSError as e:
            logger.warning(f"Failed to copy checksum {candidate.raw_checksum_path}: {e}")
    return staged


def download_remote_bundle(deps, ref: str):
    """Download a remote bundle under the temp root. Returns (path, cleanup)."""
    fs = deps.fs
    tmp = fs.mkstemp(deps.config.temp_root, DOWNLOAD_PREFIX, ".bundle.tar")

    def cleanup():
        logger.debug(f"Removing temporary download: {tmp}")
        if fs.exists(tmp):
            fs.remove(tmp)

    logger.info(f"Downloading backup from cloud storage: {ref}")
    try:
        deps.remote.download(ref, fs.path(tmp), progress=True)
    except Exception:
        cleanup()
        raise
    logger.info(f"Download complete: {base_name_from_remote_ref(ref)}")
    return tmp, cleanup


def sha256_file(fs: OSFS, path: str) -> str:
    digest = hashlib.sha256()
    with fs.open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_staged_checksum(fs: OSFS, staged: StagedFiles, manifest) -> str:
    """Check the staged archive against its .sha256 sidecar, else the manifest digest.

    Returns the verified digest, or an empty string when neither is available.
    """
    name = posixpath.basename(staged.archive_path)
    expected, source = "", ""
    if staged.checksum_path:
        expected = parse_checksum_line(fs.read_file(staged.checksum_path))
        source = posixpath.basename(staged.checksum_path)
    if not expected and manifest.sha256:
        expected, source = manifest.sha256.strip().lower(), "metadata"
    if not expected:
        logger.warning(f"No checksum available for {name}; skipping verification")
        return ""

    actual = sha256_file(fs, staged.archive_path)
    if actual != expected:
        raise BundleError(f"checksum mismatch for {name}: expected {expected} ({source}), got {actual}")
    logger.info(f"Checksum verified for {name}")
    return actual


def decrypt_archive_with_prompts(deps, encrypted_path: str, output_path: str):
    """Prompt for a key or passphrase until the archive decrypts or the operator exits."""
    while True:
        secret = deps.secrets.read_secret(SECRET_PROMPT)
        try:
            text = bytes(secret).strip()
            if not text:
                logger.warning("Input cannot be empty")
                continue
            if text == b"0":
                raise DecryptAborted()
            try:
                identities = parse_identity_input(text)
            except ValueError as e:
                logger.warning(f"Invalid key/passphrase: {e}")
                continue
        finally:
            secret[:] = b"\x00" * len(secret)

        try:
            decrypt_file(deps.fs, encrypted_path, output_path, identities)
            return
        except Exception as e:
            if is_wrong_key_error(e):
                logger.warning("Provided key or passphrase does not match this archive. "
                               "Try again or press 0 to exit.")
                continue
            raise


def prepare_plain_bundle(deps, candidate: Candidate, version: str = "",
                         registry: Optional[TempDirRegistry] = None) -> StagedBundle:
    """Stage a candidate into a registered scratch directory and return the plaintext archive."""
    fs = deps.fs
    cleanups: List[Callable[[], None]] = []

    def run_cleanups():
        for func in reversed(cleanups):
            try:
                func()
            except OSError as e:
                logger.warning(f"Cleanup failed: {e}")

    bundle_path = candidate.bundle_path
    if candidate.is_remote and candidate.source == SOURCE_BUNDLE:
        bundle_path, download_cleanup = download_remote_bundle(deps, candidate.bundle_path)
        cleanups.append(download_cleanup)

    try:
        fs.makedirs(deps.config.temp_root)
        workdir = fs.mkdtemp(deps.config.temp_root, WORKDIR_PREFIX)
    except OSError:
        run_cleanups()
        raise
    if registry is not None:
        registry.register(workdir)
        cleanups.append(lambda: registry.deregister(workdir))
    else:
        cleanups.append(lambda: fs.rmtree(workdir) if fs.exists(workdir) else None)
    debug_step(logger, "prepare plain bundle", "workdir=%s", workdir)

    try:
        if candidate.source == SOURCE_BUNDLE:
            logger.info(f"Extracting bundle {posixpath.basename(bundle_path)}")
            staged = extract_bundle_to_workdir(fs, bundle_path, workdir)
        elif candidate.source == SOURCE_RAW:
            logger.info(f"Staging raw artifacts for {posixpath.basename(candidate.raw_archive_path)}")
            staged = copy_raw_artifacts(deps, candidate, workdir)
        else:
            raise BundleError("unsupported candidate source")

        manifest = candidate.manifest.copy()
        verified = verify_staged_checksum(fs, staged, manifest)
        logger.info(f"Preparing archive {manifest.archive_path} for decryption (mode: {manifest.status})")

        plain_name = posixpath.basename(staged.archive_path)
        if plain_name.endswith(".age"):
            plain_name = plain_name[:-len(".age")]
        plain_path = posixpath.join(workdir, plain_name)

        if manifest.is_encrypted:
            decrypt_archive_with_prompts(deps, staged.archive_path, plain_path)
        elif staged.archive_path != plain_path:
            fs.copyfile(staged.archive_path, plain_path)

        size = fs.stat(plain_path).st_size
        checksum = verified if verified and not manifest.is_encrypted else sha256_file(fs, plain_path)
    except BaseException:
        run_cleanups()
        raise

    manifest.archive_path = plain_path
    manifest.archive_size = size
    manifest.sha256 = checksum
    manifest.encryption_mode = ENCRYPTION_NONE
    if version:
        manifest.script_version = version

    return StagedBundle(workdir=workdir, archive_path=plain_path, manifest=manifest,
                        checksum=checksum, cleanup_func=run_cleanups)


def create_bundle(fs: OSFS, archive_path: str) -> str:
    """Pack an archive with its sidecars into ``<archive>.bundle.tar`` (metadata first)."""
    bundle_path = archive_path + ".bundle.tar"
    members = [archive_path + ".metadata", archive_path, archive_path + ".sha256"]
    extra = archive_path + ".metadata.sha256"
    if fs.exists(extra):
        members.append(extra)
    for member in members[:3]:
        if not fs.exists(member):
            raise BundleError(f"bundle member missing: {member}")

    with fs.create(bundle_path, EXTRACTED_FILE_MODE) as out, tarfile.open(fileobj=out, mode="w") as tf:
        for member in members:
            tf.add(fs.path(member), arcname=posixpath.basename(member), recursive=False)
    return bundle_path


def move_file_safe(fs: OSFS, src: str, dst: str):
    """Rename, falling back to copy and remove across devices."""
    try:
        fs.rename(src, dst)
        return
    except OSError as e:
        debug_step(logger, "move file", "rename %s -> %s failed (%s); copying", src, dst, e)
    fs.copyfile(src, dst)
    fs.remove(src)
