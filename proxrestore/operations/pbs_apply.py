"""Staged apply of Proxmox Backup Server categories.

Work is split in two phases. The file phase only writes files and never
runs a command. The API phase drives ``proxmox-backup-manager`` and runs
last, so PBS services can be started for it without disturbing the files
written before. In ``clean`` behavior a failed or unavailable API falls
back to writing the staged files; in ``merge`` behavior API-only
categories are skipped instead.
"""

import json
import logging
import posixpath
from typing import Dict, List, Optional, Tuple

from ..models.plan import PBS_BEHAVIOR_CLEAN, RestorePlan
from ..models.sections import Section, parse_sections
from ..models.summary import CategoryResult, applied, failed, skipped
from ..utils.errors import CommandError, CommandNotFound
from ..utils.logger import debug_step
from .mount_guard import MountGuard, datastore_paths
from .services import ServiceError, ServiceManager
from .stage_files import apply_config_file, apply_sensitive_file, read_stage_file


logger = logging.getLogger(__name__)

PBS_DIR = "etc/proxmox-backup"

# No API coverage for these; always written as files. ACME goes before node.cfg.
HOST_FILE_CONFIGS = ["acme/accounts.cfg", "acme/plugins.cfg", "metricserver.cfg", "proxy.cfg"]
HOST_API_CONFIGS = ["traffic-control.cfg", "node.cfg"]
DATASTORE_CONFIGS = ["s3.cfg", "datastore.cfg"]
REMOTE_CONFIGS = ["remote.cfg"]
JOB_CONFIGS = ["sync.cfg", "verification.cfg", "prune.cfg"]
TAPE_CONFIGS = ["tape.cfg", "tape-job.cfg", "media-pool.cfg"]
TAPE_KEYS = "tape-encryption-keys.json"
NOTIFICATION_CONFIG = "notifications.cfg"
NOTIFICATION_PRIV_CONFIG = "notifications-priv.cfg"

API_CATEGORY_IDS = ("pbs_host", "datastore_pbs", "pbs_remotes", "pbs_jobs")
PBS_CATEGORY_IDS = API_CATEGORY_IDS + ("pbs_tape", "pbs_notifications")

MANAGER_TIMEOUT = 120


def pbs_rel(name: str) -> str:
    return posixpath.join(PBS_DIR, name)


def normalize_cfg_key(key: str) -> str:
    return key.strip().lower().replace("_", "-")


def manager_flags(section: Section, skip: Tuple[str, ...] = ()) -> List[str]:
    """Section properties as ``--key value`` flags for proxmox-backup-manager."""
    skipped_keys = {normalize_cfg_key(k) for k in skip} | {"digest", "name"}
    args = []
    for key, value in section.props:
        key = normalize_cfg_key(key)
        if not key or key in skipped_keys:
            continue
        args.extend([f"--{key}", value.strip()])
    return args


def unwrap_json_data(raw: str):
    """Decode list output, accepting both a bare list and ``{"data": [...]}``."""
    text = raw.strip()
    if not text:
        return []
    data = json.loads(text)
    if isinstance(data, dict) and data.get("data") is not None:
        return data["data"]
    return data


def parse_list_ids(raw: str, *keys: str) -> List[str]:
    rows = unwrap_json_data(raw)
    if not isinstance(rows, list):
        raise ValueError("unexpected list output")
    ids = set()
    for row in rows:
        if not isinstance(row, dict):
            continue
        ident = ""
        for key in keys:
            if isinstance(row.get(key), str):
                ident = row[key].strip()
                break
        if not ident:
            ident = next((v.strip() for v in row.values() if isinstance(v, str)), "")
        if ident:
            ids.add(ident)
    return sorted(ids)


class PBSApiError(Exception):
    """An API apply step failed; the caller decides whether to fall back to files."""


class PBSManager:
    """Thin wrapper over ``proxmox-backup-manager`` through the command runner."""

    def __init__(self, runner):
        self.runner = runner

    def run(self, *args: str) -> str:
        try:
            return self.runner.run("proxmox-backup-manager", *args, timeout=MANAGER_TIMEOUT)
        except (CommandError, CommandNotFound) as e:
            # CommandError already carries redacted arguments
            raise PBSApiError(str(e))

    def list_ids(self, obj: List[str], *keys: str) -> List[str]:
        out = self.run(*obj, "list", "--output-format=json")
        try:
            return parse_list_ids(out, *keys)
        except ValueError as e:
            raise PBSApiError(f"parse {' '.join(obj)} list: {e}")

    def create_or_update(self, obj: List[str], ident: str, flags: List[str],
                         positional: Optional[List[str]] = None):
        try:
            self.run(*obj, "create", ident, *(positional or []), *flags)
        except PBSApiError as create_err:
            try:
                self.run(*obj, "update", ident, *flags)
            except PBSApiError as update_err:
                raise PBSApiError(f"{' '.join(obj)} {ident}: {create_err} (create) / {update_err} (update)")

    def remove_extraneous(self, obj: List[str], desired: Dict[str, Section], *keys: str):
        for ident in self.list_ids(obj, *keys):
            if ident in desired:
                continue
            try:
                self.run(*obj, "remove", ident)
            except PBSApiError as e:
                logger.warning(f"PBS API apply: {' '.join(obj)} remove {ident} failed (continuing): {e}")


def _desired_sections(text: str) -> Dict[str, Section]:
    return {s.id: s for s in parse_sections(text) if s.id}


def apply_sections_via_api(manager: PBSManager, fs, stage_root: str, rel: str, obj: List[str],
                           strict: bool, list_keys: Tuple[str, ...] = ("id", "name")):
    """Create or update every staged section; in strict mode drop the ones not staged."""
    raw = read_stage_file(fs, stage_root, rel)
    if raw is None:
        return
    desired = _desired_sections(raw)
    if strict:
        manager.remove_extraneous(obj, desired, *list_keys)
    for ident in sorted(desired):
        manager.create_or_update(obj, ident, manager_flags(desired[ident]))


def apply_datastores_via_api(manager: PBSManager, fs, stage_root: str, strict: bool):
    raw = read_stage_file(fs, stage_root, pbs_rel("datastore.cfg"))
    if raw is None:
        return
    desired = _desired_sections(raw)

    current_paths: Dict[str, str] = {}
    try:
        rows = unwrap_json_data(manager.run("datastore", "list", "--output-format=json"))
    except (PBSApiError, ValueError) as e:
        logger.debug(f"datastore list unavailable: {e}")
        rows = []
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, dict):
            continue
        name = (row.get("name") or row.get("store") or row.get("id") or "").strip()
        if name:
            current_paths[name] = (row.get("path") or "").strip()

    if strict:
        for name in sorted(current_paths):
            if name not in desired:
                try:
                    manager.run("datastore", "remove", name)
                except PBSApiError as e:
                    logger.warning(f"PBS API apply: datastore remove {name} failed (continuing): {e}")

    for name in sorted(desired):
        section = desired[name]
        path = (section.get("path") or "").strip()
        if not path:
            logger.warning(f"PBS API apply: datastore {name} missing path; skipping")
            continue
        flags = manager_flags(section, skip=("path",))
        if name in current_paths:
            current = current_paths[name]
            if current and current != path:
                if strict:
                    manager.run("datastore", "remove", name)
                    manager.run("datastore", "create", name, path, *flags)
                    continue
                logger.warning(f"PBS API apply: datastore {name} path mismatch ({current} != {path}); "
                               f"leaving path unchanged (use a clean restore to enforce it)")
            manager.run("datastore", "update", name, *flags)
            continue
        manager.create_or_update(["datastore"], name, flags, positional=[path])


def apply_node_via_api(manager: PBSManager, fs, stage_root: str):
    raw = read_stage_file(fs, stage_root, pbs_rel("node.cfg"))
    if raw is None:
        return
    sections = parse_sections(raw)
    if sections:
        manager.run("node", "update", *manager_flags(sections[0]))


def _apply_files(deps, stage_root: str, names: List[str], dest_root: str) -> int:
    count = 0
    for name in names:
        try:
            if apply_config_file(deps, stage_root, pbs_rel(name), dest_root):
                count += 1
        except OSError as e:
            logger.warning(f"PBS staged apply: {pbs_rel(name)}: {e}")
    return count


# File phase: only filesystem writes happen below, never a command.

def apply_host_files(deps, stage_root: str, dest_root: str = "/") -> int:
    return _apply_files(deps, stage_root, HOST_FILE_CONFIGS, dest_root)


def apply_tape_files(deps, stage_root: str, dest_root: str = "/") -> int:
    count = _apply_files(deps, stage_root, TAPE_CONFIGS, dest_root)
    try:
        if apply_sensitive_file(deps, stage_root, pbs_rel(TAPE_KEYS), dest_root):
            count += 1
    except OSError as e:
        logger.warning(f"PBS staged apply: {TAPE_KEYS}: {e}")
    return count


def apply_notification_files(deps, stage_root: str, dest_root: str = "/") -> int:
    count = _apply_files(deps, stage_root, [NOTIFICATION_CONFIG], dest_root)
    try:
        if apply_config_file(deps, stage_root, pbs_rel(NOTIFICATION_PRIV_CONFIG), dest_root,
                             mode=0o600):
            count += 1
    except OSError as e:
        logger.warning(f"PBS staged apply: {NOTIFICATION_PRIV_CONFIG}: {e}")
    return count


FILE_FALLBACKS = {
    "pbs_host": HOST_API_CONFIGS,
    "datastore_pbs": DATASTORE_CONFIGS,
    "pbs_remotes": REMOTE_CONFIGS,
    "pbs_jobs": JOB_CONFIGS,
}


def apply_file_fallback(deps, category_id: str, stage_root: str, dest_root: str = "/") -> int:
    """Write the staged files of an API-managed category directly."""
    return _apply_files(deps, stage_root, FILE_FALLBACKS[category_id], dest_root)


def apply_file_phase(deps, plan: RestorePlan, stage_root: str, dest_root: str = "/") -> Dict[str, int]:
    """Apply the file-only parts of the selected PBS categories."""
    written: Dict[str, int] = {}
    if plan.has_category("pbs_host"):
        written["pbs_host"] = apply_host_files(deps, stage_root, dest_root)
    if plan.has_category("pbs_tape"):
        written["pbs_tape"] = apply_tape_files(deps, stage_root, dest_root)
    if plan.has_category("pbs_notifications"):
        written["pbs_notifications"] = apply_notification_files(deps, stage_root, dest_root)
    return written


# API phase

def _api_steps(manager: PBSManager, fs, stage_root: str, strict: bool):
    """Per-category API steps, in apply order."""
    return {
        "pbs_host": [
            ("traffic-control", lambda: apply_sections_via_api(
                manager, fs, stage_root, pbs_rel("traffic-control.cfg"), ["traffic-control"], strict,
                list_keys=("name", "id"))),
            ("node config", lambda: apply_node_via_api(manager, fs, stage_root)),
        ],
        "datastore_pbs": [
            ("s3.cfg", lambda: apply_sections_via_api(
                manager, fs, stage_root, pbs_rel("s3.cfg"), ["s3", "endpoint"], strict)),
            ("datastore.cfg", lambda: apply_datastores_via_api(manager, fs, stage_root, strict)),
        ],
        "pbs_remotes": [
            ("remote.cfg", lambda: apply_sections_via_api(
                manager, fs, stage_root, pbs_rel("remote.cfg"), ["remote"], strict)),
        ],
        "pbs_jobs": [
            ("sync jobs", lambda: apply_sections_via_api(
                manager, fs, stage_root, pbs_rel("sync.cfg"), ["sync-job"], strict)),
            ("verification jobs", lambda: apply_sections_via_api(
                manager, fs, stage_root, pbs_rel("verification.cfg"), ["verify-job"], strict)),
            ("prune jobs", lambda: apply_sections_via_api(
                manager, fs, stage_root, pbs_rel("prune.cfg"), ["prune-job"], strict)),
        ],
    }


def _fallback_file(step: str) -> Optional[str]:
    names = {
        "traffic-control": "traffic-control.cfg",
        "node config": "node.cfg",
        "s3.cfg": "s3.cfg",
        "datastore.cfg": "datastore.cfg",
        "remote.cfg": "remote.cfg",
    }
    return names.get(step)


def apply_api_category(deps, manager: PBSManager, category_id: str, stage_root: str, strict: bool,
                       allow_fallback: bool, dest_root: str = "/") -> CategoryResult:
    errors = []
    jobs_fallback_done = False
    for step, run in _api_steps(manager, deps.fs, stage_root, strict)[category_id]:
        try:
            run()
            continue
        except PBSApiError as e:
            logger.warning(f"PBS API apply: {step} failed: {e}")
            errors.append(f"{step}: {e}")
        if not allow_fallback:
            continue
        name = _fallback_file(step)
        if name is not None:
            logger.warning(f"PBS staged apply: falling back to file-based {name}")
            _apply_files(deps, stage_root, [name], dest_root)
        elif not jobs_fallback_done:
            logger.warning("PBS staged apply: falling back to file-based job configs")
            apply_file_fallback(deps, category_id, stage_root, dest_root)
            jobs_fallback_done = True
    if errors and not allow_fallback:
        return failed(category_id, "; ".join(errors))
    if errors:
        return applied(category_id, "API apply failed; staged files written instead")
    return applied(category_id, "applied via proxmox-backup-manager")


def apply_pbs_mount_guards(deps, plan: RestorePlan, stage_root: str) -> List[str]:
    """Guard offline datastore mountpoints before datastore.cfg goes live."""
    if not plan.has_category("datastore_pbs"):
        return []
    raw = read_stage_file(deps.fs, stage_root, pbs_rel("datastore.cfg"))
    if not raw or not raw.strip():
        return []
    return MountGuard(deps).guard_paths(datastore_paths(raw), label="PBS mount guard")


def apply_pbs_staged(deps, plan: RestorePlan, stage_root: str,
                     services: Optional[ServiceManager] = None, dest_root: str = "/") -> List[CategoryResult]:
    """Apply every selected PBS category from ``stage_root``: files first, then the API."""
    selected = [cid for cid in PBS_CATEGORY_IDS if plan.has_category(cid)]
    if not selected:
        return []
    services = services or ServiceManager(deps.runner, deps.clock)
    clean = plan.pbs_behavior == PBS_BEHAVIOR_CLEAN
    strict = clean
    allow_fallback = clean
    debug_step(logger, "pbs staged apply", "behavior=%s stage=%s categories=%s",
               plan.pbs_behavior, stage_root, ",".join(selected))

    results: List[CategoryResult] = []
    written = apply_file_phase(deps, plan, stage_root, dest_root)
    for cid in ("pbs_tape", "pbs_notifications"):
        if cid in written:
            if written[cid]:
                results.append(applied(cid))
            else:
                results.append(skipped(cid, "no staged files to apply"))

    api_categories = [cid for cid in API_CATEGORY_IDS if cid in selected]
    if not api_categories:
        return results

    api_available = False
    try:
        services.ensure_pbs_api()
        api_available = True
    except ServiceError as e:
        if allow_fallback:
            logger.warning(f"PBS API apply unavailable; falling back to file-based staged apply where possible: {e}")
        else:
            logger.warning(f"PBS API apply unavailable; skipping API-applied PBS categories (merge mode): {e}")

    manager = PBSManager(deps.runner)
    for cid in api_categories:
        if api_available:
            results.append(apply_api_category(deps, manager, cid, stage_root, strict, allow_fallback, dest_root))
        elif allow_fallback:
            apply_file_fallback(deps, cid, stage_root, dest_root)
            results.append(applied(cid, "PBS API unavailable; staged files written"))
        elif cid == "pbs_host" and written.get("pbs_host"):
            results.append(applied(cid, "node.cfg/traffic-control.cfg skipped: merge mode requires the PBS API"))
        else:
            results.append(skipped(cid, "merge mode requires the PBS API"))

    if api_available:
        services.stop_pbs_proxy_async()
    return results
