"""Tests for NIC name mapping and interfaces(5) rewriting."""

import io
import json
import tarfile

from proxrestore.operations.nic_mapping import (METHOD_MAC, METHOD_PERMANENT_MAC, METHOD_UDEV_ID_PATH,
                                                NetworkInterface, apply_rename_map, compute_nic_mapping,
                                                parse_link_overrides, parse_udev_override_line,
                                                plan_nic_repair, repair_nic_names)

from .conftest import write


INVENTORY_MEMBER = "./var/lib/proxsave-info/commands/system/network_inventory.json"


def nic(name, mac="", permanent_mac="", **udev):
    return NetworkInterface(name=name, mac=mac, permanent_mac=permanent_mac, udev_props=udev)


def write_inventory_archive(fs, path, interfaces):
    data = json.dumps({"interfaces": interfaces}).encode()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tf:
        info = tarfile.TarInfo(INVENTORY_MEMBER)
        info.size = len(data)
        tf.addfile(info, io.BytesIO(data))
    write(fs, path, buf.getvalue())
    return path


def add_current_nic(fs, name, mac):
    write(fs, f"/sys/class/net/{name}/address", mac + "\n")


class TestRenameTokens:
    """Only whole interface names are rewritten."""

    def test_prefix_names_are_left_alone(self):
        text = "auto eno1\nauto eno10\niface eno1.100 inet manual\n\tbridge-ports eno1 eno10 veno1\n"
        assert apply_rename_map(text, {"eno1": "enp3s0"}) == (
            "auto enp3s0\nauto eno10\niface enp3s0.100 inet manual\n\tbridge-ports enp3s0 eno10 veno1\n")

    def test_swaps_are_applied_once(self):
        text = "auto eno1\nauto eno2\n"
        assert apply_rename_map(text, {"eno1": "eno2", "eno2": "eno1"}) == "auto eno2\nauto eno1\n"

    def test_longer_name_wins(self):
        text = "iface eth0 inet manual\niface eth0-mgmt inet manual\n"
        result = apply_rename_map(text, {"eth0": "ens1", "eth0-mgmt": "ens9"})
        assert result == "iface ens1 inet manual\niface ens9 inet manual\n"


class TestComputeMapping:
    """Conflicting matches are excluded, never resolved by guessing."""

    def test_permanent_mac_preferred(self):
        backup = [nic("eno1", mac="aa:aa:aa:aa:aa:aa", permanent_mac="11:11:11:11:11:11")]
        current = [nic("enp1s0", mac="aa:aa:aa:aa:aa:aa"),
                   nic("enp2s0", mac="bb:bb:bb:bb:bb:bb", permanent_mac="11:11:11:11:11:11")]
        safe, conflicts = compute_nic_mapping(backup, current)
        assert [(m.old_name, m.new_name, m.method) for m in safe] == [("eno1", "enp2s0", METHOD_PERMANENT_MAC)]
        assert conflicts == []

    def test_udev_id_path_fallback(self):
        backup = [nic("eno1", ID_PATH="pci-0000:03:00.0")]
        current = [nic("enp3s0", mac="cc:cc:cc:cc:cc:cc", ID_PATH="pci-0000:03:00.0")]
        safe, _ = compute_nic_mapping(backup, current)
        assert [(m.new_name, m.method) for m in safe] == [("enp3s0", METHOD_UDEV_ID_PATH)]

    def test_conflicts_are_the_excluded_subset(self):
        backup = [
            nic("eno1", mac="aa:aa:aa:aa:aa:aa"),
            nic("eno2", mac="bb:bb:bb:bb:bb:bb"),
            nic("eno3", mac="cc:cc:cc:cc:cc:cc"),
            nic("eno4", mac="cc:cc:cc:cc:cc:cc"),
        ]
        current = [
            nic("enp1", mac="aa:aa:aa:aa:aa:aa"),
            nic("enp2", mac="bb:bb:bb:bb:bb:bb"),
            nic("enp2b", mac="bb:bb:bb:bb:bb:bb"),
            nic("enp3", mac="cc:cc:cc:cc:cc:cc"),
        ]
        safe, conflicts = compute_nic_mapping(backup, current)
        candidates = {"eno1", "eno2", "eno3", "eno4"}
        assert {m.old_name for m in safe} == {"eno1"}
        assert {m.old_name for m in conflicts} == candidates - {m.old_name for m in safe}
        assert all(m.reason for m in conflicts)

    def test_existing_current_name_is_a_conflict(self):
        backup = [nic("eno1", mac="aa:aa:aa:aa:aa:aa")]
        current = [nic("eno1", mac="bb:bb:bb:bb:bb:bb"), nic("enp1", mac="aa:aa:aa:aa:aa:aa")]
        safe, conflicts = compute_nic_mapping(backup, current)
        assert safe == []
        assert conflicts[0].reason == "current eno1 exists"

    def test_same_name_needs_no_mapping(self):
        backup = [nic("eno1", mac="aa:aa:aa:aa:aa:aa")]
        current = [nic("eno1", mac="aa:aa:aa:aa:aa:aa")]
        assert compute_nic_mapping(backup, current) == ([], [])

    def test_virtual_and_loopback_ignored(self):
        backup = [nic("lo", mac="00:00:00:00:00:00"),
                  NetworkInterface(name="vmbr0", mac="aa:aa:aa:aa:aa:aa", is_virtual=True)]
        current = [nic("enp1", mac="aa:aa:aa:aa:aa:aa")]
        assert compute_nic_mapping(backup, current) == ([], [])


class TestRepair:
    """End-to-end repair against a sandboxed /sys and /etc."""

    def test_permanent_mac_rename(self, make_deps, runner):
        deps = make_deps()
        fs = deps.fs
        archive = write_inventory_archive(fs, "/work/backup.tar", [
            {"name": "eno1", "mac": "aa:bb:cc:dd:ee:ff", "permanent_mac": "aa:bb:cc:dd:ee:ff"},
        ])
        add_current_nic(fs, "enp3s0", "aa:bb:cc:dd:ee:ff")
        runner.script("ethtool", "-P", "enp3s0", output="Permanent address: AA:BB:CC:DD:EE:FF\n")
        write(fs, "/etc/network/interfaces", "auto eno1\niface eno1 inet manual\n")

        plan = plan_nic_repair(deps, archive)
        assert [(m.old_name, m.new_name, m.method) for m in plan.safe] == [
            ("eno1", "enp3s0", METHOD_PERMANENT_MAC)]

        result = repair_nic_names(deps, archive, "/rollback", "/", plan=plan)

        assert fs.read_text("/etc/network/interfaces") == "auto enp3s0\niface enp3s0 inet manual\n"
        assert result.changed_files == ["/etc/network/interfaces"]
        assert result.backup_dir == "/rollback/nic_repair_20240504_103000"
        saved = fs.read_text("/rollback/nic_repair_20240504_103000/etc/network/interfaces")
        assert saved == "auto eno1\niface eno1 inet manual\n"

    def test_conflicts_need_confirmation_and_apply_safe_subset(self, make_deps):
        deps = make_deps("y")
        fs = deps.fs
        archive = write_inventory_archive(fs, "/work/backup.tar", [
            {"name": "eno1", "mac": "aa:aa:aa:aa:aa:aa"},
            {"name": "eno2", "mac": "bb:bb:bb:bb:bb:bb"},
        ])
        add_current_nic(fs, "enp1", "aa:aa:aa:aa:aa:aa")
        add_current_nic(fs, "enp2", "bb:bb:bb:bb:bb:bb")
        add_current_nic(fs, "enp2b", "bb:bb:bb:bb:bb:bb")
        write(fs, "/etc/network/interfaces", "auto eno1\nauto eno2\n")

        result = repair_nic_names(deps, archive, "/rollback", "/")

        assert fs.read_text("/etc/network/interfaces") == "auto enp1\nauto eno2\n"
        assert [m.old_name for m in result.applied] == ["eno1"]

    def test_declined_conflicts_change_nothing(self, make_deps):
        deps = make_deps("n")
        fs = deps.fs
        archive = write_inventory_archive(fs, "/work/backup.tar", [
            {"name": "eno1", "mac": "aa:aa:aa:aa:aa:aa"},
            {"name": "eno2", "mac": "bb:bb:bb:bb:bb:bb"},
        ])
        add_current_nic(fs, "enp1", "aa:aa:aa:aa:aa:aa")
        add_current_nic(fs, "enp2", "bb:bb:bb:bb:bb:bb")
        add_current_nic(fs, "enp2b", "bb:bb:bb:bb:bb:bb")
        write(fs, "/etc/network/interfaces", "auto eno1\nauto eno2\n")

        result = repair_nic_names(deps, archive, "/rollback", "/")

        assert fs.read_text("/etc/network/interfaces") == "auto eno1\nauto eno2\n"
        assert "skipped by user" in result.skipped_reason

    def test_missing_inventory_skips(self, make_deps):
        deps = make_deps()
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w"):
            pass
        write(deps.fs, "/work/empty.tar", buf.getvalue())
        plan = plan_nic_repair(deps, "/work/empty.tar")
        assert "network inventory" in plan.skipped_reason


class TestNamingOverrides:

    def test_udev_rule(self):
        line = 'SUBSYSTEM=="net", ACTION=="add", ATTR{address}=="AA:BB:CC:DD:EE:FF", NAME="lan0"'
        assert parse_udev_override_line(line) == ("lan0", "aa:bb:cc:dd:ee:ff")
        assert parse_udev_override_line('SUBSYSTEM=="block", NAME="x"') == ("", "")

    def test_systemd_link(self):
        content = "[Match]\nMACAddress=aa:bb:cc:dd:ee:ff\n\n[Link]\nName=lan0\n"
        [override] = parse_link_overrides("/etc/systemd/network/10-lan.link", content)
        assert (override.name, override.mac) == ("lan0", "aa:bb:cc:dd:ee:ff")
        assert parse_link_overrides("x.link", "[Match]\nMACAddress=aa:bb:cc:dd:ee:ff\n") == []
