"""Tests for staged Proxmox VE apply."""

import pytest

from proxrestore.models.category import MODE_FULL, category_by_id
from proxrestore.models.plan import plan_restore
from proxrestore.operations.pve_apply import (apply_backup_jobs, apply_pve_firewall, apply_pve_ha,
                                              apply_pve_jobs, apply_pve_notifications, apply_storage_cfg,
                                              apply_storage_pve, parse_datacenter_cfg, pvesh_flags,
                                              select_staged_node_file)
from proxrestore.models.sections import Section

from .conftest import write


STAGE = "/stage"
DEST = "/dest"

STORAGE_CFG = ("dir: local\n\tpath /var/lib/vz\n\tcontent iso,backup\n\n"
               "nfs: nas\n\tserver 10.0.0.5\n\texport /srv/pve\n\tcontent backup\n")


class FakeSystem:

    def __init__(self, name="node1"):
        self.name = name

    def short_hostname(self):
        return self.name


def pve_plan(*ids):
    return plan_restore(None, [category_by_id(i) for i in ids], "pve", MODE_FULL)


class TestPvesh:
    """Storage and jobs go through pvesh: create first, set when the id exists."""

    def test_flags_skip_empty_values(self):
        section = Section("dir", "local", [("path", "/var/lib/vz"), ("shared", ""), ("content", "iso")])
        assert pvesh_flags(section) == ["--path", "/var/lib/vz", "--content", "iso"]
        assert pvesh_flags(section, skip=("path",)) == ["--content", "iso"]

    def test_storage_create_then_set(self, sandbox, runner):
        write(sandbox, f"{STAGE}/etc/pve/storage.cfg", STORAGE_CFG)
        runner.script("pvesh")
        runner.fail("pvesh", "create", "/storage", "--storage", "nas", output="storage ID 'nas' already defined")

        assert apply_storage_cfg(runner, sandbox, STAGE) == (2, 0)
        assert runner.calls == [
            ["pvesh", "create", "/storage", "--storage", "local", "--type", "dir",
             "--path", "/var/lib/vz", "--content", "iso,backup"],
            ["pvesh", "create", "/storage", "--storage", "nas", "--type", "nfs",
             "--server", "10.0.0.5", "--export", "/srv/pve", "--content", "backup"],
            ["pvesh", "set", "/storage/nas", "--content", "backup"],
        ]

    def test_storage_failure_counted(self, sandbox, runner):
        write(sandbox, f"{STAGE}/etc/pve/storage.cfg", "dir: local\n\tpath /var/lib/vz\n")
        runner.fail("pvesh", output="permission denied")
        assert apply_storage_cfg(runner, sandbox, STAGE) == (0, 1)

    def test_backup_jobs(self, sandbox, runner):
        write(sandbox, f"{STAGE}/etc/pve/jobs.cfg",
              "vzdump: backup-daily\n\tschedule 02:00\n\tstorage nas\n\n"
              "realm-sync: corp\n\tschedule daily\n")
        runner.script("pvesh")
        assert apply_backup_jobs(runner, sandbox, STAGE) == (1, 0)
        assert runner.calls == [["pvesh", "create", "/cluster/backup", "--id", "backup-daily",
                                 "--schedule", "02:00", "--storage", "nas"]]

    def test_datacenter_options(self):
        text = "# comment\nkeyboard: en-us\nmigration: secure,network=10.0.0.0/24\nbroken line\n"
        assert parse_datacenter_cfg(text) == [("keyboard", "en-us"),
                                              ("migration", "secure,network=10.0.0.0/24")]


class TestStoragePve:

    def test_full_apply(self, deps, runner):
        write(deps.fs, f"{STAGE}/etc/pve/storage.cfg", "dir: local\n\tpath /var/lib/vz\n")
        write(deps.fs, f"{STAGE}/etc/pve/datacenter.cfg", "keyboard: de\n")
        write(deps.fs, f"{STAGE}/etc/vzdump.conf", "tmpdir: /var/tmp\n")
        runner.script("pvesh")

        result = apply_storage_pve(deps, pve_plan("storage_pve"), STAGE, DEST)

        assert result.status == "applied"
        assert ["pvesh", "set", "/cluster/options", "--keyboard", "de"] in runner.calls
        assert deps.fs.read_text(f"{DEST}/etc/vzdump.conf") == "tmpdir: /var/tmp\n"
        assert deps.fs.stat(f"{DEST}/etc/vzdump.conf").st_mode & 0o777 == 0o644

    def test_datacenter_failure_fails_category(self, deps, runner):
        write(deps.fs, f"{STAGE}/etc/pve/datacenter.cfg", "keyboard: de\n")
        runner.script("pvesh")
        runner.fail("pvesh", "set", "/cluster/options", output="invalid option")
        result = apply_storage_pve(deps, pve_plan("storage_pve"), STAGE, DEST)
        assert result.status == "failed"
        assert result.reason.startswith("datacenter.cfg:")

    def test_cluster_recovery_skips_pvesh(self, deps, runner):
        write(deps.fs, f"{STAGE}/etc/pve/storage.cfg", "dir: local\n\tpath /var/lib/vz\n")
        runner.script("pvesh")
        result = apply_storage_pve(deps, pve_plan("pve_cluster", "storage_pve"), STAGE, DEST)
        assert result.status == "applied"
        assert "config.db" in result.reason
        assert runner.commands("pvesh") == []

    def test_without_pvesh(self, deps):
        result = apply_storage_pve(deps, pve_plan("storage_pve"), STAGE, DEST)
        assert (result.status, result.reason) == ("skipped", "pvesh not available")

    def test_jobs_without_vzdump_entries(self, deps, runner):
        write(deps.fs, f"{STAGE}/etc/pve/jobs.cfg", "realm-sync: corp\n\tschedule daily\n")
        runner.script("pvesh")
        assert apply_pve_jobs(deps, pve_plan("pve_jobs"), STAGE).status == "skipped"


class TestNodeFiles:
    """Per-node files follow the current hostname."""

    @pytest.mark.parametrize("nodes,expected", [
        (["node1", "node2"], "node1"),
        (["oldhost"], "oldhost"),
        (["a", "b"], ""),
        ([], ""),
    ])
    def test_select_node(self, deps, nodes, expected):
        deps.system = FakeSystem("node1")
        for node in nodes:
            write(deps.fs, f"{STAGE}/etc/pve/nodes/{node}/host.fw", "[OPTIONS]\n")
        deps.fs.makedirs(f"{STAGE}/etc/pve/nodes")
        path, node = select_staged_node_file(deps, STAGE, "host.fw")
        assert node == expected
        assert path == (f"{STAGE}/etc/pve/nodes/{expected}/host.fw" if expected else None)

    def test_firewall_is_mirrored(self, deps):
        deps.system = FakeSystem("node1")
        write(deps.fs, f"{STAGE}/etc/pve/firewall/cluster.fw", "[OPTIONS]\nenable: 1\n")
        write(deps.fs, f"{STAGE}/etc/pve/nodes/oldhost/host.fw", "[RULES]\n")
        write(deps.fs, f"{DEST}/etc/pve/firewall/100.fw", "[OPTIONS]\n")

        result = apply_pve_firewall(deps, STAGE, DEST)

        assert result.status == "applied"
        assert deps.fs.read_text(f"{DEST}/etc/pve/firewall/cluster.fw") == "[OPTIONS]\nenable: 1\n"
        assert not deps.fs.exists(f"{DEST}/etc/pve/firewall/100.fw")
        assert deps.fs.read_text(f"{DEST}/etc/pve/nodes/node1/host.fw") == "[RULES]\n"

    def test_firewall_nothing_staged(self, deps):
        deps.system = FakeSystem()
        assert apply_pve_firewall(deps, STAGE, DEST).status == "skipped"


class TestClusterFiles:

    def test_ha_removes_files_missing_from_backup(self, deps):
        write(deps.fs, f"{STAGE}/etc/pve/ha/resources.cfg", "vm: 100\n\tstate started\n")
        write(deps.fs, f"{DEST}/etc/pve/ha/groups.cfg", "group: g1\n\tnodes node1\n")

        assert apply_pve_ha(deps, STAGE, DEST).status == "applied"
        assert deps.fs.exists(f"{DEST}/etc/pve/ha/resources.cfg")
        assert not deps.fs.exists(f"{DEST}/etc/pve/ha/groups.cfg")

    def test_notifications_private_mode(self, deps):
        write(deps.fs, f"{STAGE}/etc/pve/notifications.cfg", "sendmail: mail-to-root\n\tmailto-user root@pam\n")
        write(deps.fs, f"{STAGE}/etc/pve/priv/notifications.cfg", "smtp: relay\n\tpassword secret\n")

        assert apply_pve_notifications(deps, STAGE, DEST).status == "applied"
        assert deps.fs.stat(f"{DEST}/etc/pve/notifications.cfg").st_mode & 0o777 == 0o640
        assert deps.fs.stat(f"{DEST}/etc/pve/priv/notifications.cfg").st_mode & 0o777 == 0o600
