"""Helpers for telling local paths and remote object references apart."""

import os
import posixpath


def is_remote_ref(value: str) -> bool:
    """A token is a remote reference when it has a colon and is not absolute."""
    value = (value or "").strip()
    if not value:
        return False
    return ":" in value and not os.path.isabs(value)


def is_local_path(value: str) -> bool:
    """Absolute filesystem paths are local."""
    value = (value or "").strip()
    return bool(value) and os.path.isabs(value)


def build_cloud_remote_path(remote: str, path: str) -> str:
    """Join a cloud remote with an optional path.

    ``gdrive:pbs-backups`` + ``server1`` gives ``gdrive:pbs-backups/server1``;
    ``gdrive`` + ``x/y`` gives ``gdrive:x/y``. Absolute local remotes are
    joined like ordinary paths.
    """
    remote = (remote or "").strip()
    path = (path or "").strip().strip("/")
    if not remote:
        return ""

    if os.path.isabs(remote):
        if not path:
            return remote
        return os.path.join(remote, path)

    if ":" not in remote:
        remote = remote + ":"

    name, _, base = remote.partition(":")
    base = base.strip("/")
    full = "/".join(part for part in (base, path) if part)
    return f"{name}:{full}"


def split_remote_ref(ref: str):
    """Split ``remote:path`` into its two halves."""
    name, _, path = ref.partition(":")
    return name, path


def join_remote(ref: str, name: str) -> str:
    """Append a child name to a remote directory reference."""
    remote, path = split_remote_ref(ref)
    path = path.strip("/")
    if not path:
        return f"{remote}:{name}"
    return f"{remote}:{posixpath.join(path, name)}"


def base_name_from_remote_ref(ref: str) -> str:
    """Base name of the object a remote reference points to."""
    _, path = split_remote_ref(ref)
    path = path.rstrip("/")
    return posixpath.basename(path)
