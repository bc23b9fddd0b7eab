"""Reading the inner backup archive: listing and category-selective extraction."""

import contextlib
import logging
import posixpath
import tarfile
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

import zstandard

from ..models.category import Category, path_matches_any
from ..utils.deps import OSFS
from ..utils.errors import BundleError


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

_STREAM_MODES = (
    ((".tar.gz", ".tgz"), "r|gz"),
    ((".tar.bz2", ".tbz2"), "r|bz2"),
    ((".tar.xz", ".txz"), "r|xz"),
    ((".tar",), "r|"),
)

_MAGIC = (
    (b"\x28\xb5\x2f\xfd", "zst"),
    (b"\x1f\x8b", "r|gz"),
    (b"BZh", "r|bz2"),
    (b"\xfd7zXZ\x00", "r|xz"),
)


def _compression_for(fs: OSFS, path: str) -> str:
    if path.endswith((".tar.zst", ".tzst", ".zst")):
        return "zst"
    for suffixes, mode in _STREAM_MODES:
        if path.endswith(suffixes):
            return mode
    with fs.open(path, "rb") as f:
        head = f.read(8)
    for magic, mode in _MAGIC:
        if head.startswith(magic):
            return mode
    return "r|"


@contextlib.contextmanager
def open_archive(fs: OSFS, path: str) -> Iterator[tarfile.TarFile]:
    """Open the inner archive as a sequential tar stream, decompressing as needed."""
    mode = _compression_for(fs, path)
    with fs.open(path, "rb") as raw:
        try:
            if mode == "zst":
                reader = zstandard.ZstdDecompressor().stream_reader(raw)
                with reader, tarfile.open(fileobj=reader, mode="r|") as tf:
                    yield tf
            else:
                with tarfile.open(fileobj=raw, mode=mode) as tf:
                    yield tf
        except (tarfile.TarError, zstandard.ZstdError, EOFError) as e:
            raise BundleError(f"read archive {posixpath.basename(path)}: {e}")


def normalize_member_name(name: str) -> str:
    """Archive member name as ``./relative/path``; raises when it escapes the root."""
    cleaned = posixpath.normpath(name.replace("\\", "/").lstrip("/"))
    if cleaned in ("", "."):
        return "."
    if cleaned == ".." or cleaned.startswith("../"):
        raise BundleError(f"archive entry escapes workdir: {name!r}")
    return "./" + cleaned


def list_archive_entries(fs: OSFS, path: str) -> List[str]:
    """Member names of the inner archive, normalized."""
    names = []
    with open_archive(fs, path) as tf:
        for member in tf:
            normalized = normalize_member_name(member.name)
            if normalized != ".":
                names.append(normalized)
    return names


@dataclass
class ExtractResult:
    """Counts and paths from one selective extraction."""
    dest_root: str
    files: List[str] = field(default_factory=list)
    directories: int = 0
    links: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self):
        return {"Destination": self.dest_root, "Files": len(self.files),
                "Directories": self.directories, "Links": self.links,
                "Skipped": self.skipped, "Failed": self.failed}


def _target_path(dest_root: str, normalized: str, original: str) -> str:
    target = posixpath.normpath(posixpath.join(dest_root, normalized[2:]))
    root = posixpath.normpath(dest_root)
    if target != root and not target.startswith(root.rstrip("/") + "/"):
        raise BundleError(f"archive entry escapes workdir: {original!r}")
    return target


def _clear(fs: OSFS, target: str):
    if fs.islink(target) or fs.isfile(target):
        fs.remove(target)


def _check_symlink(dest_root: str, target: str, linkname: str):
    if posixpath.isabs(linkname):
        raise BundleError(f"absolute symlink target not allowed: {linkname}")
    resolved = posixpath.normpath(posixpath.join(posixpath.dirname(target), linkname))
    root = posixpath.normpath(dest_root)
    if resolved != root and not resolved.startswith(root.rstrip("/") + "/"):
        raise BundleError(f"symlink target escapes root: {linkname}")


def _extract_member(fs: OSFS, tf: tarfile.TarFile, member: tarfile.TarInfo, normalized: str,
                    dest_root: str, result: ExtractResult, preserve_owner: bool):
    target = _target_path(dest_root, normalized, member.name)
    parent = posixpath.dirname(target)
    if not fs.isdir(parent):
        fs.makedirs(parent)

    if member.isdir():
        mode = member.mode & 0o7777 or 0o755
        if not fs.isdir(target):
            _clear(fs, target)
            fs.makedirs(target, mode)
        fs.chmod(target, mode)
        result.directories += 1
    elif member.issym():
        _check_symlink(dest_root, target, member.linkname)
        _clear(fs, target)
        fs.symlink(member.linkname, target)
        result.links += 1
        return
    elif member.islnk():
        if posixpath.isabs(member.linkname):
            raise BundleError(f"absolute hardlink target not allowed: {member.linkname}")
        source = _target_path(dest_root, normalize_member_name(member.linkname), member.linkname)
        _clear(fs, target)
        fs.link(source, target)
        result.links += 1
        return
    elif member.isfile():
        if fs.isdir(target) and not fs.islink(target):
            raise BundleError(f"cannot replace directory {target} with a file")
        _clear(fs, target)
        source = tf.extractfile(member)
        with fs.create(target, member.mode & 0o7777 or 0o644) as out:
            for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
                out.write(chunk)
        result.files.append(target)
    else:
        logger.debug(f"Skipping special archive member {member.name}")
        result.skipped += 1
        return

    if preserve_owner:
        try:
            fs.chown(target, member.uid, member.gid)
        except PermissionError as e:
            logger.debug(f"Unable to set owner on {target}: {e}")


def extract_selective(fs: OSFS, archive_path: str, dest_root: str,
                      categories: Optional[List[Category]] = None,
                      preserve_owner: bool = False,
                      exclude: Optional[Callable[[str], bool]] = None) -> ExtractResult:
    """Extract members that belong to ``categories`` (all members when None) under ``dest_root``.

    ``exclude`` receives the normalized member name and can veto single members.

    Unsafe or unwritable members are logged and counted as failed; the rest
    of the archive is still extracted.
    """
    result = ExtractResult(dest_root=dest_root)
    fs.makedirs(dest_root)
    with open_archive(fs, archive_path) as tf:
        for member in tf:
            try:
                normalized = normalize_member_name(member.name)
            except BundleError as e:
                logger.warning(f"Failed to extract {member.name}: {e}")
                result.failed += 1
                continue
            if normalized == ".":
                continue
            if categories is not None and not path_matches_any(normalized, categories):
                result.skipped += 1
                continue
            if exclude is not None and exclude(normalized):
                result.skipped += 1
                continue
            try:
                _extract_member(fs, tf, member, normalized, dest_root, result, preserve_owner)
            except (OSError, BundleError) as e:
                logger.warning(f"Failed to extract {member.name}: {e}")
                result.failed += 1

    if result.failed:
        logger.warning(f"Restored {len(result.files)} file(s) into {dest_root}; {result.failed} item(s) failed")
    else:
        logger.info(f"Extracted {len(result.files)} file(s) into {dest_root}")
    return result


def read_archive_entry(fs: OSFS, archive_path: str, candidates: List[str], max_bytes: int) -> Tuple[bytes, str]:
    """Content of the first member named in ``candidates``; FileNotFoundError when none is present."""
    wanted = {normalize_member_name(c) for c in candidates}
    with open_archive(fs, archive_path) as tf:
        for member in tf:
            try:
                normalized = normalize_member_name(member.name)
            except BundleError:
                continue
            if normalized not in wanted:
                continue
            if not member.isfile():
                raise BundleError(f"archive entry {member.name} is not a regular file")
            if member.size > max_bytes:
                raise BundleError(f"archive entry {member.name} too large ({member.size} bytes)")
            f = tf.extractfile(member)
            return f.read(), normalized
    raise FileNotFoundError(f"none of {', '.join(candidates)} found in {posixpath.basename(archive_path)}")
