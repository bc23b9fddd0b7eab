"""Tests for the command-line handlers."""

import io
import json
import sys
import tarfile

import pytest

from proxrestore import main as cli
from proxrestore.config.settings import DEFAULTS
from proxrestore.models.manifest import Manifest


def run_cli(monkeypatch, capsys, *argv):
    """Run the CLI and return (exit code, parsed JSON output)."""
    monkeypatch.setattr(sys, "argv", ["proxrestore", *argv])
    code = 0
    try:
        cli.main()
    except SystemExit as e:
        code = e.code
    out = capsys.readouterr().out
    start = out.find("{\n")
    return code, (json.loads(out[start:]) if start >= 0 else None)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in list(DEFAULTS) + ["PROXRESTORE_CONFIG", "PROXMOX_TEMP_REGISTRY_PATH",
                                 "PROXSAVE_PRESERVE_RESTORE_STAGING"]:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TEMP_ROOT", str(tmp_path / "scratch"))
    monkeypatch.setenv("TEMP_REGISTRY_PATH", str(tmp_path / "run" / "temp-dirs.json"))


def write_bundle(directory, name, encryption):
    manifest = Manifest(archive_path=f"/var/backups/{name}", proxmox_type="pve", hostname="node1",
                        encryption_mode=encryption)
    data = manifest.to_json().encode()
    with tarfile.open(str(directory / f"{name}.bundle.tar"), "w") as tf:
        info = tarfile.TarInfo(name + ".metadata")
        info.size = len(data)
        tf.addfile(info, io.BytesIO(data))


class TestList:

    def test_lists_local_backups(self, monkeypatch, capsys, tmp_path):
        backups = tmp_path / "backups"
        backups.mkdir()
        write_bundle(backups, "a.tar.zst.age", "age")
        write_bundle(backups, "b.tar.zst", "none")
        monkeypatch.setenv("BACKUP_PATH", str(backups))

        code, output = run_cli(monkeypatch, capsys, "list")

        assert code == 0
        [source] = output["Sources"]
        assert source["Source"] == "Local backups"
        assert sorted(b["Display"] for b in source["Backups"]) == ["a.tar.zst.age", "b.tar.zst"]

    def test_encrypted_only_from_yaml_config(self, monkeypatch, capsys, tmp_path):
        backups = tmp_path / "backups"
        backups.mkdir()
        write_bundle(backups, "a.tar.zst.age", "age")
        write_bundle(backups, "b.tar.zst", "none")
        config = tmp_path / "proxrestore.yaml"
        config.write_text(f"BACKUP_PATH: {backups}\n")

        code, output = run_cli(monkeypatch, capsys, "--config", str(config), "list", "--encrypted-only")

        assert code == 0
        backups_found = output["Sources"][0]["Backups"]
        assert [b["Display"] for b in backups_found] == ["a.tar.zst.age"]
        assert backups_found[0]["Encryption"] == "encrypted"

    def test_unreadable_source_reported(self, monkeypatch, capsys, tmp_path):
        monkeypatch.setenv("BACKUP_PATH", str(tmp_path / "missing"))
        code, output = run_cli(monkeypatch, capsys, "list")
        assert code == 0
        assert "is not accessible" in output["Sources"][0]["Error"]

    def test_invalid_configuration(self, monkeypatch, capsys):
        monkeypatch.setenv("CLOUD_BACKEND", "ftp")
        code, output = run_cli(monkeypatch, capsys, "list")
        assert code == 1
        assert output["Status"] == "Failed"
        assert "Unsupported CLOUD_BACKEND" in output["Error"]


class TestMaintenance:

    def test_cleanup_temp_removes_orphans(self, monkeypatch, capsys, tmp_path):
        orphan = tmp_path / "scratch" / "proxmox-decrypt-1"
        orphan.mkdir(parents=True)
        registry = tmp_path / "run" / "temp-dirs.json"
        registry.parent.mkdir()
        registry.write_text(json.dumps([{"path": str(orphan), "pid": 0, "created_at": "2024-05-04T10:30:00Z"}]))

        code, output = run_cli(monkeypatch, capsys, "cleanup-temp")

        assert code == 0
        assert output["Removed"] == 1
        assert not orphan.exists()
        assert json.loads(registry.read_text()) == []

    def test_rollback_dry_run(self, monkeypatch, capsys, tmp_path):
        code, output = run_cli(monkeypatch, capsys, "--dry-run", "rollback", "/tmp/restore_backup.tar.gz",
                               "--dest", str(tmp_path))
        assert code == 0
        assert output["Operation"] == "Rollback (Dry Run)"
        assert output["Destination"] == str(tmp_path)

    def test_rollback_missing_archive(self, monkeypatch, capsys, tmp_path):
        code, output = run_cli(monkeypatch, capsys, "rollback", str(tmp_path / "missing.tar.gz"),
                               "--dest", str(tmp_path / "dest"))
        assert code == 1
        assert output["Operation"] == "Rollback"

    def test_no_command(self, monkeypatch, capsys):
        code, output = run_cli(monkeypatch, capsys)
        assert code == 1
        assert output is None
