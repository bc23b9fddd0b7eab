"""Tests for the restore workflow on a sandboxed destination."""

import io
import tarfile

import pytest

from proxrestore.config.settings import Config
from proxrestore.models.candidate import Candidate, StagedBundle, SOURCE_BUNDLE
from proxrestore.models.manifest import Manifest
from proxrestore.operations.restore import (STATUS_SUCCESS, RestoreOperation, compatibility_warning,
                                            count_files_per_category)
from proxrestore.operations.services import ServiceError
from proxrestore.models.category import category_by_id
from proxrestore.utils.errors import RestoreAborted
from proxrestore.utils.temp_registry import TempDirRegistry

from .conftest import write


FSTAB = "UUID=root / ext4 defaults 0 1\n"


class FakeServices:
    """Records service transitions; PBS stop can be made to fail."""

    def __init__(self, pbs_stop_fails=False):
        self.calls = []
        self.pbs_stop_fails = pbs_stop_fails

    def stop_pve_cluster(self):
        self.calls.append("stop_pve_cluster")

    def unmount_etc_pve(self):
        self.calls.append("unmount_etc_pve")

    def start_pve_cluster(self):
        self.calls.append("start_pve_cluster")

    def stop_pbs(self):
        self.calls.append("stop_pbs")
        if self.pbs_stop_fails:
            raise ServiceError("proxmox-backup-proxy: still active after 30s")

    def start_pbs(self):
        self.calls.append("start_pbs")


def build_archive(fs, path, files):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tf:
        for name, data in files.items():
            data = data.encode() if isinstance(data, str) else data
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o640
            tf.addfile(info, io.BytesIO(data))
    write(fs, path, buf.getvalue())


def prepared_bundle(fs, files, **manifest_fields):
    build_archive(fs, "/work/backup.tar", files)
    manifest = Manifest(archive_path="/work/backup.tar", **manifest_fields)
    candidate = Candidate(manifest=manifest, source=SOURCE_BUNDLE, bundle_path="/backups/backup.tar.bundle.tar")
    prepared = StagedBundle(workdir="/work", archive_path="/work/backup.tar", manifest=manifest, checksum="")
    return candidate, prepared


def operation(deps, services=None):
    return RestoreOperation(deps, version="1.0.0", dest_root="/dest", services=services or FakeServices())


def by_id(summary):
    return {r.category_id: r for r in summary.results}


class TestCompatibility:

    def test_matching_and_mismatched_types(self):
        assert compatibility_warning("pve", Manifest(proxmox_type="pve")) == ""
        assert "PBS backup" in compatibility_warning("pve", Manifest(proxmox_type="pbs"))
        assert "PVE backup" in compatibility_warning("pbs", Manifest(proxmox_targets=["pve"]))
        assert "cannot detect" in compatibility_warning("unknown", Manifest(proxmox_type="pve"))
        assert compatibility_warning("pve", Manifest()) == ""

    def test_declined_mismatch_aborts(self, make_deps):
        deps = make_deps("no")
        deps.fs.makedirs("/etc/pve")
        candidate, prepared = prepared_bundle(deps.fs, {"./etc/hosts": "x"}, proxmox_type="pbs")
        with pytest.raises(RestoreAborted):
            operation(deps).restore_prepared(candidate, prepared)
        assert not deps.fs.exists("/dest")


class TestStorageMode:
    """Storage mode on PVE restores storage files and merges fstab."""

    def test_restore(self, make_deps, runner):
        deps = make_deps("2", "RESTORE", "yes")
        deps.fs.makedirs("/etc/pve")
        write(deps.fs, "/dest/etc/fstab", FSTAB)
        write(deps.fs, "/dest/etc/vzdump.conf", "tmpdir: /old\n")
        candidate, prepared = prepared_bundle(deps.fs, {
            "./etc/pve/storage.cfg": "dir: local\n\tpath /var/lib/vz\n",
            "./etc/vzdump.conf": "tmpdir: /var/tmp\n",
            "./etc/fstab": FSTAB,
            "./etc/hosts": "10.0.0.2 node1\n",
        }, proxmox_type="pve")

        summary = operation(deps).restore_prepared(candidate, prepared)

        assert summary.status == STATUS_SUCCESS
        results = by_id(summary)
        assert results["storage_pve"].status == "applied"
        assert results["storage_pve"].reason == "2 file(s) restored"
        assert results["filesystem"].status == "skipped"
        assert deps.fs.read_text("/dest/etc/pve/storage.cfg").startswith("dir: local")
        assert deps.fs.read_text("/dest/etc/vzdump.conf") == "tmpdir: /var/tmp\n"
        assert deps.fs.read_text("/dest/etc/fstab") == FSTAB
        assert not deps.fs.exists("/dest/etc/hosts")
        assert summary.safety_backup == "/tmp/proxsave/restore_backup_20240504_103000.tar.gz"
        with tarfile.open(deps.fs.path(summary.safety_backup)) as tf:
            assert sorted(tf.getnames()) == ["etc/fstab", "etc/vzdump.conf"]
        assert summary.reboot_recommended
        assert runner.calls == []

    def test_cancel_at_confirmation(self, make_deps):
        deps = make_deps("2", "cancel")
        deps.fs.makedirs("/etc/pve")
        candidate, prepared = prepared_bundle(deps.fs, {"./etc/pve/storage.cfg": "dir: local\n"},
                                              proxmox_type="pve")
        with pytest.raises(RestoreAborted):
            operation(deps).restore_prepared(candidate, prepared)
        assert not deps.fs.exists("/dest/etc/pve/storage.cfg")
        assert not deps.fs.exists("/tmp/proxsave")

    def test_dry_run_writes_nothing(self, make_deps):
        deps = make_deps("2", "RESTORE", "yes")
        deps.config = Config(environ={"BASE_DIR": "/opt/proxsave", "TEMP_ROOT": "/tmp/proxsave",
                                      "TEMP_REGISTRY_PATH": "/run/proxsave/temp-dirs.json",
                                      "DRY_RUN": "true"})
        deps.fs.makedirs("/etc/pve")
        candidate, prepared = prepared_bundle(deps.fs, {"./etc/pve/storage.cfg": "dir: local\n"},
                                              proxmox_type="pve")

        summary = operation(deps).restore_prepared(candidate, prepared)

        assert by_id(summary)["storage_pve"].reason == "dry run enabled"
        assert not deps.fs.exists("/dest/etc/pve/storage.cfg")


class TestClusterBackups:
    """The cluster database is only written in RECOVERY mode."""

    FILES = {
        "./var/lib/pve-cluster/config.db": b"SQLite format 3\x00",
        "./etc/pve/storage.cfg": "dir: local\n",
    }

    def test_safe_mode_exports_database(self, make_deps, runner):
        deps = make_deps("1", "1", "RESTORE", "yes")
        deps.fs.makedirs("/etc/pve")
        services = FakeServices()
        candidate, prepared = prepared_bundle(deps.fs, self.FILES, proxmox_type="pve", cluster_mode="cluster")

        summary = operation(deps, services).restore_prepared(candidate, prepared)

        export_root = "/opt/proxsave/pve-config-export-20240504-103000"
        assert summary.export_root == export_root
        assert not deps.fs.exists("/dest/var/lib/pve-cluster/config.db")
        assert deps.fs.exists(f"{export_root}/var/lib/pve-cluster/config.db")
        assert deps.fs.exists(f"{export_root}/etc/pve/storage.cfg")
        assert deps.fs.read_text("/dest/etc/pve/storage.cfg") == "dir: local\n"
        assert services.calls == []
        assert summary.plan["ClusterSafeMode"] is True
        assert by_id(summary)["pve_cluster"].status == "applied"

    def test_recovery_mode_stops_services_and_skips_etc_pve(self, make_deps):
        deps = make_deps("1", "2", "RESTORE", "yes")
        deps.fs.makedirs("/etc/pve")
        services = FakeServices()
        candidate, prepared = prepared_bundle(deps.fs, self.FILES, proxmox_type="pve", cluster_mode="cluster")

        summary = operation(deps, services).restore_prepared(candidate, prepared)

        assert services.calls == ["stop_pve_cluster", "unmount_etc_pve", "start_pve_cluster"]
        assert deps.fs.read_file("/dest/var/lib/pve-cluster/config.db") == b"SQLite format 3\x00"
        assert not deps.fs.exists("/dest/etc/pve/storage.cfg")
        assert by_id(summary)["pve_cluster"].status == "applied"

    def test_abort_at_cluster_prompt(self, make_deps):
        deps = make_deps("1", "0")
        deps.fs.makedirs("/etc/pve")
        candidate, prepared = prepared_bundle(deps.fs, self.FILES, proxmox_type="pve", cluster_mode="cluster")
        with pytest.raises(RestoreAborted):
            operation(deps).restore_prepared(candidate, prepared)


class TestPBS:

    def test_custom_selection_continues_when_services_keep_running(self, make_deps):
        deps = make_deps("4", "2", "c", "RESTORE", "yes", "y")
        deps.fs.makedirs("/etc/proxmox-backup")
        services = FakeServices(pbs_stop_fails=True)
        candidate, prepared = prepared_bundle(deps.fs, {
            "./etc/proxmox-backup/remote.cfg": "remote: r1\n\thost 10.0.0.2\n",
        }, proxmox_type="pbs")

        summary = operation(deps, services).restore_prepared(candidate, prepared)

        assert services.calls == ["stop_pbs"]
        assert deps.fs.read_text("/dest/etc/proxmox-backup/remote.cfg").startswith("remote: r1")
        assert by_id(summary)["pbs_remotes"].status == "applied"

    def test_refusing_to_continue_aborts(self, make_deps):
        deps = make_deps("4", "2", "c", "RESTORE", "yes", "n")
        deps.fs.makedirs("/etc/proxmox-backup")
        candidate, prepared = prepared_bundle(deps.fs, {
            "./etc/proxmox-backup/remote.cfg": "remote: r1\n\thost 10.0.0.2\n",
        }, proxmox_type="pbs")
        with pytest.raises(RestoreAborted):
            operation(deps, FakeServices(pbs_stop_fails=True)).restore_prepared(candidate, prepared)
        assert not deps.fs.exists("/dest/etc/proxmox-backup/remote.cfg")


class TestFullFallback:

    def test_unknown_contents_run_full_restore(self, make_deps):
        deps = make_deps("RESTORE", "yes")
        deps.fs.makedirs("/etc/pve")
        candidate, prepared = prepared_bundle(deps.fs, {"./opt/custom/tool.conf": "x=1\n"},
                                              proxmox_type="pve")

        summary = operation(deps).restore_prepared(candidate, prepared)

        assert deps.fs.read_text("/dest/opt/custom/tool.conf") == "x=1\n"
        assert by_id(summary)["full"].status == "applied"
        assert summary.plan == {"Mode": "full", "SystemType": "pve"}
        assert summary.reboot_recommended


def test_count_files_per_category():
    cats = [category_by_id("storage_pve"), category_by_id("network")]
    files = ["/dest/etc/pve/storage.cfg", "/dest/etc/hosts", "/dest/etc/network/interfaces", "/dest/etc/motd"]
    assert count_files_per_category(files, "/dest", cats) == {"storage_pve": 1, "network": 2}


class RecordingRegistry(TempDirRegistry):

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.registered = []

    def register(self, path):
        self.registered.append(path)
        super().register(path)


class TestStagingDirectory:
    """Staged categories pass through a registered scratch dir that does not outlive the run."""

    def restore_storage(self, deps, monkeypatch):
        monkeypatch.setattr(RestoreOperation, "staging_enabled", property(lambda self: True))
        deps.fs.makedirs("/etc/pve")
        write(deps.fs, "/dest/etc/fstab", FSTAB)
        candidate, prepared = prepared_bundle(deps.fs, {
            "./etc/pve/storage.cfg": "dir: local\n\tpath /var/lib/vz\n",
            "./etc/fstab": FSTAB,
        }, proxmox_type="pve")
        registry = RecordingRegistry(deps.config.temp_registry_path, fs=deps.fs, clock=deps.clock)
        op = RestoreOperation(deps, version="1.0.0", registry=registry, dest_root="/dest",
                              services=FakeServices())
        return op.restore_prepared(candidate, prepared), registry

    def test_stage_root_removed_after_apply(self, make_deps, monkeypatch):
        deps = make_deps("2", "RESTORE", "yes")

        summary, registry = self.restore_storage(deps, monkeypatch)

        assert by_id(summary)["storage_pve"].reason == "non-system filesystem in use"
        [stage_root] = registry.registered
        assert stage_root.startswith("/tmp/proxsave/restore-stage-")
        assert not deps.fs.exists(stage_root)
        assert registry.load() == []
        assert summary.stage_root is None
        assert "StagingDirectory" not in summary.to_dict()

    def test_preserved_on_request(self, make_deps, monkeypatch):
        deps = make_deps("2", "RESTORE", "yes")
        deps.config = Config(environ={"BASE_DIR": "/opt/proxsave", "TEMP_ROOT": "/tmp/proxsave",
                                      "TEMP_REGISTRY_PATH": "/run/proxsave/temp-dirs.json",
                                      "PROXSAVE_PRESERVE_RESTORE_STAGING": "yes"})

        summary, registry = self.restore_storage(deps, monkeypatch)

        [stage_root] = registry.registered
        assert summary.stage_root == stage_root
        assert deps.fs.read_text(stage_root + "/etc/pve/storage.cfg").startswith("dir: local")
        assert registry.load() == []


def test_opening_a_restore_reaps_orphaned_scratch_dirs(make_deps):
    deps = make_deps()
    write(deps.fs, "/tmp/proxsave/proxmox-decrypt-old/backup.tar", "plain")
    write(deps.fs, deps.config.temp_registry_path,
          '[{"path": "/tmp/proxsave/proxmox-decrypt-old", "pid": 0, "created_at": "2024-05-01T08:00:00Z"}]')

    op = operation(deps)

    assert not deps.fs.exists("/tmp/proxsave/proxmox-decrypt-old")
    assert op.registry.load() == []
