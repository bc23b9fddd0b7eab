"""Tests for live network apply and the rollback timer."""

import pytest

from proxrestore.models.category import MODE_CUSTOM, category_by_id
from proxrestore.models.plan import plan_restore
from proxrestore.operations.network import (apply_network_with_rollback, arm_network_rollback,
                                            build_rollback_script, detect_management_interface,
                                            disarm_network_rollback, extract_ip_from_snapshot,
                                            parse_route_device, pick_address, shell_quote)
from proxrestore.utils.errors import NetworkApplyNotCommitted, RestoreError

from .conftest import write


WORK = "/tmp/proxsave/network_rollback_20240504_103000"
UNIT = "proxrestore-network-rollback-20240504_103000"
MARKER = f"{WORK}/network_rollback_pending_20240504_103000"


def network_plan():
    return plan_restore(None, [category_by_id("network")], "pve", MODE_CUSTOM)


class TestShellQuote:

    @pytest.mark.parametrize("value,expected", [
        ("", "''"),
        ("/tmp/plain.sh", "/tmp/plain.sh"),
        ("/tmp/with space", "'/tmp/with space'"),
        ("it's", "'it'\\''s'"),
    ])
    def test_quote(self, value, expected):
        assert shell_quote(value) == expected

    def test_script_checks_marker_before_touching_anything(self):
        script = build_rollback_script("/w/marker", "/w/backup.tar.gz", "/w/log")
        assert script.startswith("#!/bin/sh\n")
        assert script.index('if [ ! -f "$MARKER" ]') < script.index('tar -xzf "$BACKUP"')
        assert "ifreload -a" in script
        assert script.rstrip().splitlines()[-2] == 'rm -f "$MARKER"'

    def test_script_without_restart(self):
        script = build_rollback_script("/w/m", "/w/b", "/w/l", restart_networking=False)
        assert "ifreload" not in script
        assert "networking restart skipped" in script


class TestRollbackTimer:
    """Arming and disarming the deadman switch."""

    def test_arm_with_systemd_run_then_disarm(self, deps, runner):
        runner.available_names.update({"systemd-run", "systemctl"})
        deps.fs.makedirs(WORK)

        handle = arm_network_rollback(deps, "/tmp/proxsave/pre_network.tar.gz", 30, WORK)

        assert handle.unit_name == UNIT
        assert deps.fs.exists(MARKER)
        assert deps.fs.exists(handle.script_path)
        assert runner.calls == [["systemd-run", f"--unit={UNIT}", "--on-active=30s",
                                 "/bin/sh", handle.script_path]]

        disarm_network_rollback(deps, handle)

        assert not deps.fs.exists(MARKER)
        assert runner.calls[1:] == [
            ["systemctl", "stop", f"{UNIT}.timer"],
            ["systemctl", "reset-failed", f"{UNIT}.service", f"{UNIT}.timer"],
        ]

    def test_nohup_fallback(self, deps, runner):
        runner.available_names.add("sh")
        deps.fs.makedirs(WORK)

        handle = arm_network_rollback(deps, "/b.tar.gz", 12.7, WORK)

        assert handle.unit_name == ""
        assert handle.timeout == 12
        [call] = runner.calls
        assert call[:2] == ["sh", "-c"]
        assert call[2].startswith("nohup sh -c ")
        assert f"sleep 12; /bin/sh {handle.script_path}" in call[2]

    def test_systemd_run_failure_falls_back(self, deps, runner):
        runner.fail("systemd-run", output="Failed to start transient timer unit")
        runner.available_names.add("sh")
        deps.fs.makedirs(WORK)

        handle = arm_network_rollback(deps, "/b.tar.gz", 30, WORK)

        assert handle.unit_name == ""
        assert [c[0] for c in runner.calls] == ["systemd-run", "sh"]

    def test_no_timer_mechanism_is_an_error(self, deps):
        deps.fs.makedirs(WORK)
        with pytest.raises(RestoreError, match="failed to arm rollback timer"):
            arm_network_rollback(deps, "/b.tar.gz", 30, WORK)

    def test_empty_backup_path(self, deps):
        with pytest.raises(RestoreError):
            arm_network_rollback(deps, " ", 30, WORK)

    def test_disarm_without_marker_is_quiet(self, deps, runner):
        runner.available_names.update({"systemd-run", "systemctl"})
        deps.fs.makedirs(WORK)
        handle = arm_network_rollback(deps, "/b.tar.gz", 30, WORK)
        deps.fs.remove(handle.marker_path)
        disarm_network_rollback(deps, handle)
        assert ["systemctl", "stop", f"{UNIT}.timer"] in runner.calls


class TestApplyWithRollback:
    """Live apply: commit disarms, anything else leaves the rollback armed."""

    def stage(self, fs):
        write(fs, "/stage/etc/network/interfaces", "auto vmbr0\niface vmbr0 inet static\n")
        write(fs, "/stage/etc/hosts", "127.0.0.1 localhost\n")
        write(fs, "/etc/network/interfaces", "auto eth0\n")

    def prepare_runner(self, runner):
        runner.available_names.update({"systemd-run", "systemctl", "ifreload"})

    def test_commit_disarms(self, make_deps, runner):
        deps = make_deps("y", "commit")
        self.stage(deps.fs)
        self.prepare_runner(runner)

        result = apply_network_with_rollback(deps, network_plan(), "/stage", "", "/tmp/pre.tar.gz")

        assert result.status == "applied"
        assert sorted(result.applied_files) == ["/etc/hosts", "/etc/network/interfaces"]
        assert deps.fs.read_text("/etc/network/interfaces").startswith("auto vmbr0")
        assert not deps.fs.exists(MARKER)
        assert ["ifreload", "-a"] in runner.calls
        assert ["systemctl", "stop", f"{UNIT}.timer"] in runner.calls
        assert deps.fs.exists(f"{WORK}/before.txt")
        assert deps.fs.exists(f"{WORK}/after.txt")

    def test_no_commit_leaves_rollback_armed(self, make_deps, runner):
        deps = make_deps("y", "keep")
        self.stage(deps.fs)
        self.prepare_runner(runner)

        with pytest.raises(NetworkApplyNotCommitted) as info:
            apply_network_with_rollback(deps, network_plan(), "/stage", "", "/tmp/pre.tar.gz")

        err = info.value
        assert err.rollback_armed
        assert err.rollback_marker == MARKER
        assert err.rollback_log.endswith(".log")
        assert deps.fs.exists(MARKER)
        assert not any(c[:2] == ["systemctl", "stop"] for c in runner.calls)

    def test_reload_failure_keeps_rollback(self, make_deps, runner):
        deps = make_deps("y")
        self.stage(deps.fs)
        self.prepare_runner(runner)
        runner.fail("ifreload", output="error: vmbr0: bridge port missing")

        with pytest.raises(NetworkApplyNotCommitted):
            apply_network_with_rollback(deps, network_plan(), "/stage", "", "/tmp/pre.tar.gz")
        assert deps.fs.exists(MARKER)

    def test_declined_apply_touches_nothing(self, make_deps, runner):
        deps = make_deps("n")
        self.stage(deps.fs)

        result = apply_network_with_rollback(deps, network_plan(), "/stage", "", "/tmp/pre.tar.gz")

        assert result.status == "skipped"
        assert deps.fs.read_text("/etc/network/interfaces") == "auto eth0\n"
        assert runner.calls == []

    def test_skipped_without_rollback_backup(self, deps):
        result = apply_network_with_rollback(deps, network_plan(), "/stage", "", "")
        assert result.status == "skipped"
        assert "rollback backup not available" in result.reason

    def test_skipped_without_network_category(self, deps):
        plan = plan_restore(None, [category_by_id("ssh")], "pve", MODE_CUSTOM)
        assert apply_network_with_rollback(deps, plan, "/stage", "", "/b").status == "skipped"


class TestInterfaceDetection:

    def test_route_device(self):
        assert parse_route_device("10.0.0.5 via 10.0.0.1 dev vmbr0 src 10.0.0.2 uid 0") == "vmbr0"
        assert parse_route_device("unreachable") == ""

    def test_ssh_client_route(self, make_deps, runner):
        deps = make_deps(environ={"SSH_CONNECTION": "10.0.0.5 51234 10.0.0.2 22"})
        runner.script("ip", "route", "get", "10.0.0.5", output="10.0.0.5 dev vmbr0 src 10.0.0.2\n")
        assert detect_management_interface(deps) == ("vmbr0", "ssh")

    def test_default_route_fallback(self, deps, runner):
        runner.script("ip", "route", "show", "default", output="default via 10.0.0.1 dev eno1 proto static\n")
        assert detect_management_interface(deps) == ("eno1", "default-route")

    def test_pick_address_prefers_ipv4(self):
        assert pick_address(["fe80::1/64", "192.168.1.10/24"]) == "192.168.1.10"
        assert pick_address(["fe80::1/64"]) == "fe80::1"
        assert pick_address(["garbage"]) == ""

    def test_extract_ip_from_snapshot(self, sandbox):
        write(sandbox, "/w/before.txt",
              "$ ip -br addr\nlo UNKNOWN 127.0.0.1/8\nvmbr0 UP 10.0.0.2/24 fe80::1/64\n\n"
              "$ ip route show\ndefault via 10.0.0.1 dev vmbr0\n")
        assert extract_ip_from_snapshot(sandbox, "/w/before.txt", "vmbr0") == "10.0.0.2"
        assert extract_ip_from_snapshot(sandbox, "/w/before.txt", "eno9") == "unknown"
        assert extract_ip_from_snapshot(sandbox, "/w/missing.txt", "vmbr0") == "unknown"
