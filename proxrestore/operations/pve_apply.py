"""Staged apply of Proxmox VE categories."""

import logging
import posixpath
from typing import List, Optional, Tuple

from ..models.plan import RestorePlan
from ..models.sections import Section, parse_sections
from ..models.summary import CategoryResult, applied, failed, skipped
from ..utils.errors import CommandError, CommandNotFound
from .mount_guard import MountGuard, dir_storage_paths
from .stage_files import (CONFIG_MODE, PRIVATE_MODE, apply_config_file, copy_staged_file,
                          dest_path, read_stage_file, remove_if_exists, sync_tree)


logger = logging.getLogger(__name__)

PVESH_TIMEOUT = 120

VZDUMP_CONF = "etc/vzdump.conf"
STORAGE_CFG = "etc/pve/storage.cfg"
DATACENTER_CFG = "etc/pve/datacenter.cfg"
JOBS_CFG = "etc/pve/jobs.cfg"
HA_CONFIGS = ("resources.cfg", "groups.cfg", "rules.cfg")


class PveshError(Exception):
    """A pvesh call failed."""


def run_pvesh(runner, *args: str) -> str:
    try:
        output = runner.run("pvesh", *args, timeout=PVESH_TIMEOUT)
    except (CommandError, CommandNotFound) as e:
        raise PveshError(str(e))
    if output.strip():
        logger.debug(f"pvesh {' '.join(args[:2])} output: {output.strip()}")
    return output


def pvesh_flags(section: Section, skip: Tuple[str, ...] = ()) -> List[str]:
    args = []
    for key, value in section.props:
        if not key or key in skip or not value.strip():
            continue
        args.extend([f"--{key}", value.strip()])
    return args


def apply_vzdump_conf(deps, stage_root: str, dest_root: str = "/") -> bool:
    """vzdump.conf is a plain key/value file; it has no section headers to check."""
    return apply_config_file(deps, stage_root, VZDUMP_CONF, dest_root, require_header=False, mode=0o644)


def apply_storage_cfg(runner, fs, stage_root: str) -> Tuple[int, int]:
    """Create or update every staged storage definition through pvesh."""
    raw = read_stage_file(fs, stage_root, STORAGE_CFG)
    if raw is None or not raw.strip():
        return 0, 0
    ok = bad = 0
    for section in parse_sections(raw):
        flags = pvesh_flags(section)
        try:
            try:
                run_pvesh(runner, "create", "/storage", "--storage", section.id, "--type", section.type, *flags)
            except PveshError:
                run_pvesh(runner, "set", f"/storage/{section.id}",
                          *pvesh_flags(section, skip=("path", "pool", "export", "server", "share", "portal",
                                                      "target", "vgname", "datastore")))
        except PveshError as e:
            logger.warning(f"Failed to apply storage {section.id}: {e}")
            bad += 1
            continue
        logger.info(f"Applied storage definition {section.id}")
        ok += 1
    return ok, bad


def parse_datacenter_cfg(text: str) -> List[Tuple[str, str]]:
    """``key: value`` lines of datacenter.cfg."""
    options = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition(":")
        if sep and key.strip() and value.strip():
            options.append((key.strip(), value.strip()))
    return options


def apply_datacenter_cfg(runner, fs, stage_root: str) -> bool:
    raw = read_stage_file(fs, stage_root, DATACENTER_CFG)
    if raw is None or not raw.strip():
        return False
    args = []
    for key, value in parse_datacenter_cfg(raw):
        args.extend([f"--{key}", value])
    if not args:
        return False
    run_pvesh(runner, "set", "/cluster/options", *args)
    logger.info("PVE staged apply: datacenter.cfg applied")
    return True


def apply_backup_jobs(runner, fs, stage_root: str) -> Tuple[int, int]:
    """Recreate every vzdump job: ``pvesh create /cluster/backup`` first, ``pvesh set`` when it exists."""
    raw = read_stage_file(fs, stage_root, JOBS_CFG)
    if raw is None or not raw.strip():
        return 0, 0
    jobs = [s for s in parse_sections(raw) if s.type.lower() == "vzdump" and s.id]
    ok = bad = 0
    for job in jobs:
        flags = pvesh_flags(job)
        try:
            run_pvesh(runner, "create", "/cluster/backup", "--id", job.id, *flags)
        except PveshError:
            try:
                run_pvesh(runner, "set", f"/cluster/backup/{job.id}", *flags)
            except PveshError as e:
                logger.warning(f"Failed to apply PVE backup job {job.id}: {e}")
                bad += 1
                continue
        logger.info(f"Applied PVE backup job {job.id}")
        ok += 1
    return ok, bad


def apply_storage_mount_guards(deps, stage_root: str, dest_root: str = "/") -> List[str]:
    raw = read_stage_file(deps.fs, stage_root, STORAGE_CFG)
    if not raw or not raw.strip():
        return []
    paths = dir_storage_paths(raw)
    if not paths:
        return []
    return MountGuard(deps).guard_paths(paths, posixpath.join(dest_root, "etc/fstab"),
                                        label="PVE mount guard")


def apply_storage_pve(deps, plan: RestorePlan, stage_root: str, dest_root: str = "/") -> CategoryResult:
    try:
        apply_vzdump_conf(deps, stage_root, dest_root)
    except OSError as e:
        logger.warning(f"PVE staged apply: vzdump.conf: {e}")

    if plan.needs_cluster_restore:
        logger.info("Skipping storage.cfg/datacenter.cfg apply: cluster RECOVERY restores config.db")
        apply_storage_mount_guards(deps, stage_root, dest_root)
        return applied("storage_pve", "storage.cfg and datacenter.cfg restored with config.db")

    if not deps.runner.available("pvesh"):
        logger.warning("pvesh not found; skipping PVE storage.cfg/datacenter.cfg apply")
        apply_storage_mount_guards(deps, stage_root, dest_root)
        return skipped("storage_pve", "pvesh not available")

    ok, bad = apply_storage_cfg(deps.runner, deps.fs, stage_root)
    logger.info(f"PVE staged apply: storage.cfg applied (ok={ok} failed={bad})")
    apply_storage_mount_guards(deps, stage_root, dest_root)
    errors = []
    if bad:
        errors.append(f"{bad} storage definition(s) failed")
    try:
        apply_datacenter_cfg(deps.runner, deps.fs, stage_root)
    except PveshError as e:
        logger.warning(f"PVE staged apply: datacenter.cfg: {e}")
        errors.append(f"datacenter.cfg: {e}")
    if errors:
        return failed("storage_pve", "; ".join(errors))
    return applied("storage_pve")


def apply_pve_jobs(deps, plan: RestorePlan, stage_root: str) -> CategoryResult:
    if plan.needs_cluster_restore:
        return skipped("pve_jobs", "cluster RECOVERY restores config.db")
    if not deps.runner.available("pvesh"):
        logger.warning("pvesh not found; skipping PVE jobs apply")
        return skipped("pve_jobs", "pvesh not available")
    ok, bad = apply_backup_jobs(deps.runner, deps.fs, stage_root)
    if bad:
        return failed("pve_jobs", f"applied={ok} failed={bad}")
    if not ok:
        return skipped("pve_jobs", "no vzdump jobs in staged jobs.cfg")
    return applied("pve_jobs")


def select_staged_node_file(deps, stage_root: str, name: str) -> Tuple[Optional[str], str]:
    """Pick ``etc/pve/nodes/<node>/<name>`` for this host.

    The current node wins; a single staged node is mapped onto this host;
    several non-matching nodes are ambiguous and nothing is picked.
    """
    current = deps.system.short_hostname()
    nodes_dir = posixpath.join(stage_root, "etc/pve/nodes")
    if not deps.fs.isdir(nodes_dir):
        return None, ""
    candidates = [n for n in deps.fs.listdir(nodes_dir)
                  if deps.fs.isfile(posixpath.join(nodes_dir, n, name))]
    if not candidates:
        return None, ""
    for node in candidates:
        if node.lower() == current.lower():
            return posixpath.join(nodes_dir, node, name), node
    if len(candidates) == 1:
        return posixpath.join(nodes_dir, candidates[0], name), candidates[0]
    logger.warning(f"Multiple staged {name} candidates found ({', '.join(candidates)}) "
                   f"but none matches current node {current}; skipping {name} apply")
    return None, ""


def _apply_node_file(deps, stage_root: str, name: str, dest_root: str, mode: int = CONFIG_MODE) -> bool:
    src, node = select_staged_node_file(deps, stage_root, name)
    if src is None:
        return False
    current = deps.system.short_hostname()
    dst = dest_path(dest_root, posixpath.join("etc/pve/nodes", current, name))
    copy_staged_file(deps, src, dst, mode)
    if node.lower() != current.lower():
        logger.warning(f"Applied {name} from staged node {node} onto current node {current}")
    return True


def apply_pve_host(deps, stage_root: str, dest_root: str = "/") -> CategoryResult:
    count = 0
    acme = posixpath.join(stage_root, "etc/pve/priv/acme")
    if deps.fs.isdir(acme):
        count += sync_tree(deps, acme, dest_path(dest_root, "etc/pve/priv/acme"), prune=False)
    if _apply_node_file(deps, stage_root, "config", dest_root):
        count += 1
    if not count:
        return skipped("pve_host", "no staged host files")
    return applied("pve_host")


def apply_pve_firewall(deps, stage_root: str, dest_root: str = "/") -> CategoryResult:
    """Exact sync of /etc/pve/firewall plus this node's host.fw."""
    count = 0
    staged = posixpath.join(stage_root, "etc/pve/firewall")
    if deps.fs.isdir(staged):
        count += sync_tree(deps, staged, dest_path(dest_root, "etc/pve/firewall"))
    if _apply_node_file(deps, stage_root, "host.fw", dest_root):
        count += 1
    if not count:
        return skipped("pve_firewall", "no staged firewall configuration")
    return applied("pve_firewall")


def apply_pve_sdn(deps, stage_root: str, dest_root: str = "/") -> CategoryResult:
    count = 0
    staged = posixpath.join(stage_root, "etc/pve/sdn")
    if deps.fs.isdir(staged):
        count += sync_tree(deps, staged, dest_path(dest_root, "etc/pve/sdn"))
    if copy_staged_file(deps, posixpath.join(stage_root, "etc/pve/sdn.cfg"),
                        dest_path(dest_root, "etc/pve/sdn.cfg")):
        count += 1
    if not count:
        return skipped("pve_sdn", "no staged SDN configuration")
    return applied("pve_sdn")


def apply_pve_ha(deps, stage_root: str, dest_root: str = "/") -> CategoryResult:
    """HA config files are restored 1:1; a file missing from the backup is removed."""
    staged = posixpath.join(stage_root, "etc/pve/ha")
    if not any(deps.fs.isfile(posixpath.join(staged, n)) for n in HA_CONFIGS):
        return skipped("pve_ha", "no staged HA configuration")
    for name in HA_CONFIGS:
        dst = dest_path(dest_root, posixpath.join("etc/pve/ha", name))
        if not copy_staged_file(deps, posixpath.join(staged, name), dst):
            remove_if_exists(deps.fs, dst)
    return applied("pve_ha")


def apply_pve_notifications(deps, stage_root: str, dest_root: str = "/") -> CategoryResult:
    count = 0
    if apply_config_file(deps, stage_root, "etc/pve/notifications.cfg", dest_root):
        count += 1
    if apply_config_file(deps, stage_root, "etc/pve/priv/notifications.cfg", dest_root, mode=PRIVATE_MODE):
        count += 1
    if not count:
        return skipped("pve_notifications", "no staged notification configuration")
    return applied("pve_notifications")
