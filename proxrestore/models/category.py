"""Restore category catalog and path matching."""

import fnmatch
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple


TYPE_PVE = "pve"
TYPE_PBS = "pbs"
TYPE_COMMON = "common"

MODE_FULL = "full"
MODE_STORAGE = "storage"
MODE_BASE = "base"
MODE_CUSTOM = "custom"


@dataclass
class Category:
    """A group of filesystem paths restored together."""
    id: str
    name: str
    type: str
    paths: List[str] = field(default_factory=list)
    description: str = ""
    export_only: bool = False

    def to_dict(self):
        return {"Id": self.id, "Name": self.name, "Type": self.type, "ExportOnly": self.export_only}


def _cat(cid, name, ctype, paths, description="", export_only=False) -> Category:
    return Category(id=cid, name=name, type=ctype, paths=list(paths),
                    description=description, export_only=export_only)


def all_categories() -> List[Category]:
    """Full catalog, in display order."""
    return [
        _cat("pve_config_export", "PVE Config Export", TYPE_PVE,
             ["./etc/pve/", "./etc/pve/jobs.cfg", "./etc/pve/vzdump.cron"],
             "Export-only copy of /etc/pve", export_only=True),
        _cat("pve_cluster", "PVE Cluster Configuration", TYPE_PVE,
             ["./var/lib/pve-cluster/"], "Cluster configuration database"),
        _cat("pve_host", "PVE Host Settings", TYPE_PVE,
             ["./etc/pve/priv/acme/", "./etc/pve/nodes/*/config"],
             "ACME accounts and per-node settings"),
        _cat("storage_pve", "PVE Storage Configuration", TYPE_PVE,
             ["./etc/pve/storage.cfg", "./etc/pve/datacenter.cfg", "./etc/vzdump.conf"],
             "Storage definitions and vzdump defaults"),
        _cat("pve_jobs", "PVE Backup Jobs", TYPE_PVE,
             ["./etc/pve/jobs.cfg", "./etc/pve/vzdump.cron"], "Scheduled backup jobs"),
        _cat("pve_notifications", "PVE Notifications", TYPE_PVE,
             ["./etc/pve/notifications.cfg", "./etc/pve/priv/notifications.cfg"],
             "Notification targets and matchers"),
        _cat("pve_access_control", "PVE Access Control", TYPE_PVE,
             ["./etc/pve/user.cfg", "./etc/pve/domains.cfg", "./etc/pve/priv/shadow.cfg",
              "./etc/pve/priv/token.cfg", "./etc/pve/priv/tfa.cfg"],
             "Users, groups, ACLs and realms"),
        _cat("pve_firewall", "PVE Firewall", TYPE_PVE,
             ["./etc/pve/firewall/", "./etc/pve/nodes/*/host.fw"], "Firewall rules and options"),
        _cat("pve_ha", "PVE High Availability (HA)", TYPE_PVE,
             ["./etc/pve/ha/resources.cfg", "./etc/pve/ha/groups.cfg", "./etc/pve/ha/rules.cfg"],
             "HA resources, groups and rules"),
        _cat("pve_sdn", "PVE SDN", TYPE_PVE,
             ["./etc/pve/sdn/", "./etc/pve/sdn.cfg"], "Software-defined networking"),
        _cat("corosync", "Corosync Configuration", TYPE_PVE,
             ["./etc/corosync/"], "Cluster communication and quorum"),
        _cat("ceph", "Ceph Configuration", TYPE_PVE, ["./etc/ceph/"], "Ceph cluster configuration"),

        _cat("pbs_config", "PBS Config Export", TYPE_PBS,
             ["./etc/proxmox-backup/"], "Export-only copy of /etc/proxmox-backup", export_only=True),
        _cat("pbs_host", "PBS Host & Integrations", TYPE_PBS,
             ["./etc/proxmox-backup/node.cfg", "./etc/proxmox-backup/proxy.cfg",
              "./etc/proxmox-backup/acme/accounts.cfg", "./etc/proxmox-backup/acme/plugins.cfg",
              "./etc/proxmox-backup/metricserver.cfg", "./etc/proxmox-backup/traffic-control.cfg"],
             "Node settings, ACME, proxy, metric servers and traffic control"),
        _cat("datastore_pbs", "PBS Datastore Configuration", TYPE_PBS,
             ["./etc/proxmox-backup/datastore.cfg", "./etc/proxmox-backup/s3.cfg"],
             "Datastores and S3 endpoints"),
        _cat("maintenance_pbs", "PBS Maintenance", TYPE_PBS,
             ["./etc/proxmox-backup/maintenance.cfg"], "Maintenance settings"),
        _cat("pbs_jobs", "PBS Jobs", TYPE_PBS,
             ["./etc/proxmox-backup/sync.cfg", "./etc/proxmox-backup/verification.cfg",
              "./etc/proxmox-backup/prune.cfg"], "Sync, verify and prune jobs"),
        _cat("pbs_remotes", "PBS Remotes", TYPE_PBS,
             ["./etc/proxmox-backup/remote.cfg"], "Remote definitions"),
        _cat("pbs_notifications", "PBS Notifications", TYPE_PBS,
             ["./etc/proxmox-backup/notifications.cfg", "./etc/proxmox-backup/notifications-priv.cfg"],
             "Notification targets and matchers"),
        _cat("pbs_access_control", "PBS Access Control", TYPE_PBS,
             ["./etc/proxmox-backup/user.cfg", "./etc/proxmox-backup/domains.cfg",
              "./etc/proxmox-backup/acl.cfg", "./etc/proxmox-backup/token.cfg",
              "./etc/proxmox-backup/shadow.json", "./etc/proxmox-backup/token.shadow",
              "./etc/proxmox-backup/tfa.json"], "Users, realms and permissions"),
        _cat("pbs_tape", "PBS Tape Backup", TYPE_PBS,
             ["./etc/proxmox-backup/tape.cfg", "./etc/proxmox-backup/tape-job.cfg",
              "./etc/proxmox-backup/media-pool.cfg", "./etc/proxmox-backup/tape-encryption-keys.json"],
             "Tape jobs, pools, changers and keys"),

        _cat("filesystem", "Filesystem Configuration", TYPE_COMMON, ["./etc/fstab"],
             "Mount points (/etc/fstab)"),
        _cat("storage_stack", "Storage Stack (Mounts/Targets)", TYPE_COMMON,
             ["./etc/crypttab", "./etc/iscsi/", "./var/lib/iscsi/", "./etc/multipath/",
              "./etc/multipath.conf", "./etc/mdadm/", "./etc/lvm/backup/", "./etc/lvm/archive/",
              "./etc/autofs.conf", "./etc/auto.master", "./etc/auto.master.d/", "./etc/auto.*"],
             "iSCSI, LVM, mdadm, multipath, autofs and crypttab"),
        _cat("network", "Network Configuration", TYPE_COMMON,
             ["./etc/network/", "./etc/netplan/", "./etc/systemd/network/",
              "./etc/NetworkManager/system-connections/", "./etc/hosts", "./etc/hostname",
              "./etc/resolv.conf"], "Interfaces, routing and name resolution"),
        _cat("ssl", "SSL Certificates", TYPE_COMMON,
             ["./etc/ssl/", "./etc/proxmox-backup/proxy.pem", "./etc/proxmox-backup/proxy.key",
              "./etc/proxmox-backup/ssl/"], "Certificates and private keys"),
        _cat("ssh", "SSH Configuration", TYPE_COMMON, ["./root/.ssh/", "./etc/ssh/"],
             "SSH keys and authorized_keys"),
        _cat("scripts", "Custom Scripts", TYPE_COMMON, ["./usr/local/bin/", "./usr/local/sbin/"],
             "User scripts"),
        _cat("crontabs", "Scheduled Tasks", TYPE_COMMON,
             ["./etc/cron.d/", "./etc/crontab", "./var/spool/cron/"], "Cron jobs"),
        _cat("services", "System Services", TYPE_COMMON,
             ["./etc/systemd/system/", "./etc/default/", "./etc/udev/rules.d/", "./etc/apt/",
              "./etc/logrotate.d/", "./etc/timezone", "./etc/sysctl.conf", "./etc/sysctl.d/",
              "./etc/modprobe.d/", "./etc/modules", "./etc/iptables/", "./etc/nftables.conf",
              "./etc/nftables.d/"], "Systemd units and system settings"),
        _cat("user_data", "User Data (Home Directories)", TYPE_COMMON, ["./root/", "./home/"],
             "/root and /home"),
        _cat("zfs", "ZFS Configuration", TYPE_COMMON, ["./etc/zfs/", "./etc/hostid"],
             "ZFS pool cache and configuration"),
        _cat("proxsave_info", "ProxSave Diagnostics (Export Only)", TYPE_COMMON,
             ["./var/lib/proxsave-info/", "./manifest.json"],
             "Command outputs and inventory reports", export_only=True),
    ]


# Categories applied through a staging directory and a per-category policy
# instead of being extracted straight onto the live tree.
STAGED_CATEGORY_IDS = frozenset([
    "network", "datastore_pbs", "pbs_jobs", "pbs_remotes", "pbs_host", "pbs_tape",
    "storage_pve", "pve_jobs", "pve_notifications", "pbs_notifications",
    "pve_access_control", "pbs_access_control", "pve_firewall", "pve_ha", "pve_sdn",
    "pve_host",
])

STORAGE_MODE_IDS = {
    TYPE_PVE: ("pve_cluster", "storage_pve", "pve_jobs", "zfs", "filesystem", "storage_stack"),
    TYPE_PBS: ("pbs_config", "datastore_pbs", "maintenance_pbs", "pbs_jobs", "pbs_remotes",
               "zfs", "filesystem", "storage_stack"),
}

BASE_MODE_IDS = ("network", "ssl", "ssh", "services", "filesystem")


def is_staged_category(category_id: str) -> bool:
    return category_id.strip() in STAGED_CATEGORY_IDS


def categories_for_system(system_type: str, categories: Optional[Iterable[Category]] = None) -> List[Category]:
    """PVE or PBS categories plus the common ones; nothing for unknown systems."""
    source = all_categories() if categories is None else categories
    if system_type not in (TYPE_PVE, TYPE_PBS):
        return []
    return [c for c in source if c.type in (system_type, TYPE_COMMON)]


def categories_for_mode(mode: str, system_type: str, available: List[Category]) -> List[Category]:
    """Pick categories for a predefined restore mode among those present in the archive."""
    if mode == MODE_FULL:
        if system_type in (TYPE_PVE, TYPE_PBS):
            return categories_for_system(system_type, available)
        return list(available)
    if mode == MODE_STORAGE:
        wanted = STORAGE_MODE_IDS.get(system_type, ())
    elif mode == MODE_BASE:
        wanted = BASE_MODE_IDS
    else:
        return []
    return [c for c in available if c.id in wanted and not c.export_only]


def category_by_id(category_id: str, categories: Optional[Iterable[Category]] = None) -> Optional[Category]:
    for cat in (all_categories() if categories is None else categories):
        if cat.id == category_id:
            return cat
    return None


def has_category(categories: Iterable[Category], category_id: str) -> bool:
    return any(c.id == category_id for c in categories)


def _normalize(path: str) -> str:
    path = path.replace("\\", "/")
    if path.startswith("/"):
        path = "." + path
    elif not path.startswith("./") and not path.startswith("../"):
        path = "./" + path
    return path


def path_matches_category(file_path: str, category: Category) -> bool:
    """True when an archive member path belongs to the category."""
    normalized = _normalize(file_path)
    for cat_path in category.paths:
        if not cat_path:
            continue
        pattern = _normalize(cat_path)
        if any(ch in pattern for ch in "*?[") and not pattern.endswith("/"):
            # fnmatchcase lets * cross "/", so compare segment counts like path.Match.
            if (pattern.count("/") == normalized.count("/")
                    and fnmatch.fnmatchcase(normalized, pattern)):
                return True
        if normalized == pattern:
            return True
        if pattern.endswith("/"):
            if normalized == pattern.rstrip("/") or normalized.startswith(pattern):
                return True
    return False


def path_matches_any(file_path: str, categories: Iterable[Category]) -> bool:
    return any(path_matches_category(file_path, c) for c in categories)


def available_categories(entries: Iterable[str]) -> List[Category]:
    """Catalog categories with at least one path present in an archive listing."""
    names = [e for e in entries if e]
    result = []
    for cat in all_categories():
        if any(path_matches_category(name, cat) for name in names):
            result.append(cat)
    return result


def is_etc_pve_path(path: str) -> bool:
    normalized = _normalize(path.strip())
    return normalized in ("./etc/pve", "./etc/pve/") or normalized.startswith("./etc/pve/")


def sanitize_for_cluster_recovery(categories: List[Category]) -> Tuple[List[Category], Dict[str, List[str]]]:
    """Drop /etc/pve paths that would shadow the cluster filesystem while it is unmounted."""
    sanitized = []
    removed: Dict[str, List[str]] = {}
    for cat in categories:
        if not cat.paths:
            sanitized.append(cat)
            continue
        kept = []
        for path in cat.paths:
            if is_etc_pve_path(path):
                removed.setdefault(cat.id, []).append(path)
            else:
                kept.append(path)
        if not kept and removed.get(cat.id):
            continue
        sanitized.append(replace(cat, paths=kept))
    return sanitized, removed
