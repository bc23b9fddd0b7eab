"""Tests for access-control merges: root@pam always comes from the live install."""

import json

from proxrestore.operations.access_control import (apply_pbs_access_control, apply_pve_access_control,
                                                   merge_domains_cfg, merge_keyed_json, merge_pbs_acl_cfg,
                                                   merge_pbs_user_cfg, merge_pve_shadow_cfg,
                                                   merge_pve_tfa_cfg, merge_pve_token_cfg,
                                                   merge_pve_user_cfg, merge_tfa_json)

from .conftest import write


class TestPVEUserCfg:

    def test_live_root_kept_and_admin_acl_added(self):
        current = "user:root@pam:1:0:::fresh@example.com::\n"
        staged = ("user:root@pam:1:0:::old@example.com::\n"
                  "user:alice@pve:1:0:Alice::::\n"
                  "token:root@pam!backup:0:1::\n"
                  "group:admins:alice@pve::\n"
                  "acl:1:/vms:alice@pve:PVEVMAdmin:\n")
        assert merge_pve_user_cfg(current, staged) == (
            "user:root@pam:1:0:::fresh@example.com::\n"
            "user:alice@pve:1:0:Alice::::\n"
            "group:admins:alice@pve::\n"
            "acl:1:/vms:alice@pve:PVEVMAdmin:\n"
            "acl:1:/:root@pam:Administrator:\n"
        )

    def test_missing_root_user_is_created(self):
        merged = merge_pve_user_cfg("", "user:alice@pve:1:0::::::\n")
        assert merged.splitlines()[0] == "user:root@pam:1:0:::::::"

    def test_existing_admin_acl_not_duplicated(self):
        staged = "acl:1:/:root@pam,alice@pve:Administrator,PVEAuditor:\n"
        merged = merge_pve_user_cfg("user:root@pam:1:0::::::\n", staged)
        assert merged.count("acl:") == 1


class TestPrivateFiles:

    def test_shadow_keeps_live_root_hash(self):
        merged = merge_pve_shadow_cfg("root@pam:$live:\n", "root@pam:$old:\nalice@pve:$a:\n")
        assert merged == "root@pam:$live:\nalice@pve:$a:\n"

    def test_tokens(self):
        merged = merge_pve_token_cfg("root@pam!fresh aaa\n", "root@pam!old bbb\nalice@pve!ci ccc\n")
        assert merged == "root@pam!fresh aaa\nalice@pve!ci ccc\n"

    def test_keyed_json(self):
        current = json.dumps({"root@pam": "L", "bob@pbs": "bob-live"})
        staged = json.dumps({"root@pam": "S", "root@pam!tok": "T", "alice@pbs": "A", "bob@pbs": "bob-old"})
        assert json.loads(merge_keyed_json(current, staged, "shadow.json")) == {
            "alice@pbs": "A", "bob@pbs": "bob-old", "root@pam": "L"}

    def test_tfa_json(self):
        current = json.dumps({"users": {"root@pam": {"totp": ["live"]}}, "webauthn": {"rp": "live"}})
        staged = json.dumps({"users": {"root@pam": {"totp": ["old"]}, "alice@pve": {"totp": ["a"]}},
                             "webauthn": {"rp": "old"}, "u2f": {"appid": "x"}})
        merged = json.loads(merge_tfa_json(current, staged, "tfa.json"))
        assert merged["users"] == {"root@pam": {"totp": ["live"]}, "alice@pve": {"totp": ["a"]}}
        assert merged["webauthn"] == {"rp": "live"}
        assert merged["u2f"] == {"appid": "x"}

    def test_legacy_pve_tfa_lines(self):
        merged = merge_pve_tfa_cfg("root@pam:oath:LIVE\n", "root@pam:oath:OLD\nalice@pve:oath:AK\n")
        assert merged == "root@pam:oath:LIVE\nalice@pve:oath:AK\n"


class TestSectionFiles:

    def test_domains(self):
        current = "pam: pam\n\tcomment Linux PAM\n\npve: pve\n\tcomment PVE\n"
        staged = "pam: pam\n\tcomment changed\n\nldap: corp\n\tserver1 ldap.example.com\n"
        assert merge_domains_cfg(current, staged) == (
            "pam: pam\n\tcomment Linux PAM\n\n"
            "ldap: corp\n\tserver1 ldap.example.com\n\n"
            "pve: pve\n\tcomment PVE\n"
        )

    def test_domains_pam_fallback(self):
        merged = merge_domains_cfg("", "pam: pam\n\tcomment changed\n")
        assert merged == "pam: pam\n\tcomment Linux PAM standard authentication\n"

    def test_pbs_user_cfg_fallback_root(self):
        staged = "user: root@pam\n\tcomment old\n\nuser: alice@pbs\n\tenable true\n"
        assert merge_pbs_user_cfg("", staged) == (
            "user: root@pam\n\tcomment Superuser\n\tenable true\n\n"
            "user: alice@pbs\n\tenable true\n"
        )

    def test_pbs_acl_root_admin(self):
        merged = merge_pbs_acl_cfg("", "acl:1:/datastore/main:alice@pbs:DatastoreBackup\n")
        assert merged == "acl:1:/:root@pam:Admin\nacl:1:/datastore/main:alice@pbs:DatastoreBackup\n"
        present = "acl:1:/:root@pam:Admin\n"
        assert merge_pbs_acl_cfg(present, "") == present


class TestApply:
    """Merged files land with the right permissions."""

    def test_pve(self, deps):
        fs = deps.fs
        write(fs, "/stage/etc/pve/user.cfg", "user:alice@pve:1:0::::::\n")
        write(fs, "/stage/etc/pve/priv/shadow.cfg", "root@pam:$old:\nalice@pve:$a:\n")
        write(fs, "/dest/etc/pve/user.cfg", "user:root@pam:1:0::::::\n")
        write(fs, "/dest/etc/pve/priv/shadow.cfg", "root@pam:$live:\n")

        result = apply_pve_access_control(deps, "/stage", "/dest")

        assert result.status == "applied"
        user_cfg = fs.read_text("/dest/etc/pve/user.cfg")
        assert "user:root@pam:1:0::::::" in user_cfg
        assert "user:alice@pve" in user_cfg
        assert fs.read_text("/dest/etc/pve/priv/shadow.cfg") == "root@pam:$live:\nalice@pve:$a:\n"
        assert fs.stat("/dest/etc/pve/priv/shadow.cfg").st_mode & 0o777 == 0o600
        assert fs.stat("/dest/etc/pve/user.cfg").st_mode & 0o777 == 0o640

    def test_pbs_token_cfg_taken_from_backup(self, deps):
        fs = deps.fs
        write(fs, "/stage/etc/proxmox-backup/token.cfg", "token: alice@pbs!ci\n\tenable true\n")
        result = apply_pbs_access_control(deps, "/stage", "/dest")
        assert result.status == "applied"
        assert fs.read_text("/dest/etc/proxmox-backup/token.cfg") == "token: alice@pbs!ci\n\tenable true\n"

    def test_nothing_staged(self, deps):
        assert apply_pve_access_control(deps, "/stage", "/dest").status == "skipped"
        assert apply_pbs_access_control(deps, "/stage", "/dest").status == "skipped"
