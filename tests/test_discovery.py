"""Tests for backup discovery across local and remote sources."""

import io
import os
import tarfile
from datetime import datetime, timezone

import pytest

from proxrestore.config.settings import Config
from proxrestore.models.candidate import SOURCE_BUNDLE, SOURCE_RAW, SourceOption
from proxrestore.models.manifest import Manifest
from proxrestore.storage.discovery import (build_source_options, discover_local, discover_option, discover_remote,
                                           inspect_remote_bundle_manifest, select_backup_candidate)
from proxrestore.utils.errors import BundleError, CommandError, NoBackupSourcesError

from .conftest import write


def manifest_for(name, day, encryption="age"):
    return Manifest(archive_path=f"/var/backups/{name}", created_at=datetime(2024, 5, day, tzinfo=timezone.utc),
                    proxmox_type="pve", hostname="node1", encryption_mode=encryption)


def bundle_bytes(name, manifest, entry_suffix=".metadata"):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tf:
        for member, data in ((name + entry_suffix, manifest.to_json().encode()), (name, b"archive")):
            info = tarfile.TarInfo(member)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeStream:

    def __init__(self, data, exit_error=None):
        self.stdout = io.BytesIO(data)
        self.exit_error = exit_error
        self.killed = False

    def kill(self):
        self.killed = True

    def wait(self, timeout=None):
        if self.exit_error is not None:
            raise self.exit_error


class FakeRemote:
    """In-memory ``remote:path`` store."""

    def __init__(self, objects, stream_error=None):
        self.objects = objects
        self.stream_error = stream_error
        self.streams = []

    def list(self, ref):
        prefix = ref.rstrip("/") + "/"
        return sorted(k[len(prefix):] for k in self.objects if k.startswith(prefix))

    def read(self, ref):
        if ref not in self.objects:
            raise CommandError("rclone", ["cat", ref], 3, "object not found")
        return self.objects[ref]

    def open_stream(self, ref):
        stream = FakeStream(self.objects.get(ref, b""), self.stream_error)
        self.streams.append(stream)
        return stream


class TestSourceOptions:

    def test_menu_order(self):
        config = Config(environ={
            "BACKUP_PATH": "/backups", "SECONDARY_ENABLED": "true", "SECONDARY_PATH": "/mnt/secondary",
            "CLOUD_ENABLED": "true", "CLOUD_REMOTE": "gdrive:pbs-backups", "CLOUD_REMOTE_PATH": "server1",
        })
        options = build_source_options(config)
        assert [(o.label, o.path, o.is_remote) for o in options] == [
            ("Local backups", "/backups", False),
            ("Secondary backups", "/mnt/secondary", False),
            ("Cloud backups (rclone)", "gdrive:pbs-backups/server1", True),
        ]

    def test_disabled_and_local_cloud(self):
        config = Config(environ={"BACKUP_PATH": "/backups", "SECONDARY_PATH": "/mnt/secondary",
                                 "CLOUD_ENABLED": "yes", "CLOUD_REMOTE": "/mnt/cloud"})
        options = build_source_options(config)
        assert [o.path for o in options] == ["/backups", "/mnt/cloud"]
        assert not options[1].is_remote


class TestLocal:
    """Bundles and raw sidecar triples in one directory."""

    def test_bundles_and_raw_archives(self, sandbox):
        old = manifest_for("old.tar.zst.age", 1)
        new = manifest_for("new.tar.zst.age", 3)
        write(sandbox, "/backups/old.tar.zst.age.bundle.tar", bundle_bytes("old.tar.zst.age", old))
        write(sandbox, "/backups/new.tar.zst.age.bundle.tar",
              bundle_bytes("new.tar.zst.age", new, ".manifest.json"))
        write(sandbox, "/backups/raw.tar.xz", b"raw archive")
        write(sandbox, "/backups/raw.tar.xz.metadata", "PROXMOX_TYPE=pbs\nHOSTNAME=pbs1\n")
        write(sandbox, "/backups/raw.tar.xz.sha256", "ABCDEF  raw.tar.xz\n")
        mtime = datetime(2024, 5, 2, tzinfo=timezone.utc).timestamp()
        os.utime(sandbox.path("/backups/raw.tar.xz"), (mtime, mtime))
        sandbox.makedirs("/backups/nested.bundle.tar")

        candidates = discover_local(sandbox, "/backups")

        assert [c.display_base for c in candidates] == ["new.tar.zst.age", "raw.tar.xz", "old.tar.zst.age"]
        assert candidates[0].source == SOURCE_BUNDLE
        assert candidates[0].bundle_path == "/backups/new.tar.zst.age.bundle.tar"
        raw = candidates[1]
        assert raw.source == SOURCE_RAW
        assert raw.raw_checksum_path == "/backups/raw.tar.xz.sha256"
        assert raw.manifest.sha256 == "abcdef"
        assert raw.manifest.archive_size == len(b"raw archive")
        assert raw.manifest.encryption_mode == "plain"
        assert raw.manifest.created_at == datetime(2024, 5, 2, tzinfo=timezone.utc)

    def test_broken_entries_are_skipped(self, sandbox):
        write(sandbox, "/backups/broken.bundle.tar", b"not a tar file")
        write(sandbox, "/backups/orphan.tar.xz.metadata", "PROXMOX_TYPE=pve\n")
        write(sandbox, "/backups/empty.tar.xz", b"x")
        write(sandbox, "/backups/empty.tar.xz.metadata", "")
        assert discover_local(sandbox, "/backups") == []

    def test_missing_checksum_still_listed(self, sandbox):
        write(sandbox, "/backups/a.tar", b"x")
        write(sandbox, "/backups/a.tar.metadata", '{"proxmox_type": "pve"}')
        [candidate] = discover_local(sandbox, "/backups")
        assert candidate.raw_checksum_path == ""
        assert candidate.manifest.archive_path == "/backups/a.tar"

    def test_unreadable_directory(self, sandbox):
        with pytest.raises(OSError, match="read directory /missing"):
            discover_local(sandbox, "/missing")


class TestRemote:

    def test_bundles_and_raw_triples(self):
        bundle = bundle_bytes("a.tar.zst.age", manifest_for("a.tar.zst.age", 2))
        remote = FakeRemote({
            "gdrive:pbs/a.tar.zst.age.bundle.tar": bundle,
            "gdrive:pbs/b.tar.xz": b"x",
            "gdrive:pbs/b.tar.xz.metadata": b'{"created_at": "2024-05-03T00:00:00Z", "proxmox_type": "pbs"}',
            "gdrive:pbs/notes.metadata": b"ignored",
            "gdrive:pbs/c.tar.metadata": b"archive missing",
        })
        reports = []

        candidates = discover_remote(remote, "gdrive:pbs", report=reports.append)

        assert [c.display_base for c in candidates] == ["b.tar.xz", "a.tar.zst.age"]
        assert all(c.is_remote for c in candidates)
        assert candidates[0].raw_archive_path == "gdrive:pbs/b.tar.xz"
        assert candidates[0].raw_checksum_path == ""
        assert candidates[1].bundle_path == "gdrive:pbs/a.tar.zst.age.bundle.tar"
        assert reports[0] == "Found 2 candidate file(s) in gdrive:pbs"
        assert all(s.killed for s in remote.streams)

    def test_stream_stopped_after_manifest(self):
        bundle = bundle_bytes("a.tar", manifest_for("a.tar", 2, "none"))
        error = CommandError("rclone", ["cat", "r:a.tar.bundle.tar"], 141, "broken pipe")
        remote = FakeRemote({"r:a.tar.bundle.tar": bundle}, stream_error=error)
        manifest = inspect_remote_bundle_manifest(remote, "r:a.tar.bundle.tar")
        assert manifest.hostname == "node1"

    def test_all_items_failing(self):
        remote = FakeRemote({"r:x/bad.bundle.tar": b"garbage"})
        with pytest.raises(BundleError, match="no usable cloud backups"):
            discover_remote(remote, "r:x")

    def test_timeout_aborts_scan(self):
        remote = FakeRemote({"r:x/a.tar": b"x", "r:x/a.tar.metadata": b""})

        def timed_out(ref):
            raise CommandError("rclone", ["cat", ref], None, timed_out=True)

        remote.read = timed_out
        with pytest.raises(CommandError, match="RCLONE_TIMEOUT_CONNECTION"):
            discover_remote(remote, "r:x")


class TestSelect:
    """Sources that yield nothing usable drop out of the menu."""

    def test_empty_source_removed(self, make_deps):
        deps = make_deps("1", "1", "1")
        deps.config = Config(environ={"BACKUP_PATH": "/backups", "SECONDARY_ENABLED": "1",
                                      "SECONDARY_PATH": "/mnt/secondary"})
        deps.fs.makedirs("/backups")
        write(deps.fs, "/mnt/secondary/a.tar.bundle.tar", bundle_bytes("a.tar", manifest_for("a.tar", 2)))

        candidate = select_backup_candidate(deps)

        assert candidate.bundle_path == "/mnt/secondary/a.tar.bundle.tar"
        assert "[1] Secondary backups (/mnt/secondary)" in deps.ui.stdout.getvalue().split("Select the backup source:")[2]

    def test_only_plain_backups_when_encrypted_required(self, make_deps):
        deps = make_deps("1")
        write(deps.fs, "/backups/a.tar.bundle.tar", bundle_bytes("a.tar", manifest_for("a.tar", 2, "none")))
        with pytest.raises(NoBackupSourcesError):
            select_backup_candidate(deps, require_encrypted=True)

    def test_no_configured_paths(self, make_deps):
        deps = make_deps()
        deps.config = Config(environ={}, overrides={"BACKUP_PATH": ""})
        with pytest.raises(BundleError, match="no backup paths configured"):
            select_backup_candidate(deps)

    def test_remote_option_uses_remote_client(self, make_deps):
        deps = make_deps()
        deps.remote = FakeRemote({"r:x/a.tar.bundle.tar": bundle_bytes("a.tar", manifest_for("a.tar", 2))})
        [candidate] = discover_option(deps, SourceOption("Cloud backups (rclone)", "r:x", is_remote=True))
        assert candidate.is_remote
