"""Restore workflow for Proxmox VE and Proxmox Backup Server configuration backups."""

import itertools
import logging
import os
import posixpath
from typing import Any, Dict, List, Optional

from ..models.candidate import Candidate, StagedBundle
from ..models.category import (Category, MODE_CUSTOM, MODE_FULL, TYPE_PBS, TYPE_PVE, available_categories,
                               categories_for_mode, path_matches_category, sanitize_for_cluster_recovery)
from ..models.manifest import Manifest
from ..models.plan import RestorePlan, plan_restore
from ..models.summary import STATUS_FAILED, CategoryResult, RestoreSummary, applied, failed, skipped
from ..storage.archive import extract_selective, list_archive_entries
from ..storage.bundle import prepare_plain_bundle
from ..storage.discovery import select_backup_candidate
from ..ui.cli import CLUSTER_ABORT, CLUSTER_SAFE
from ..utils.deps import SYSTEM_UNKNOWN
from ..utils.errors import (BundleError, DecryptAborted, InputAborted, NetworkApplyNotCommitted,
                            RestoreAborted, RestoreError)
from ..utils.logger import debug_step
from ..utils.progress import log_report
from ..utils.temp_registry import TempDirRegistry
from .fstab import smart_merge_fstab
from .safety_backup import SafetyBackupResult, create_safety_backup
from .services import ServiceError, ServiceManager
from .staged_apply import StagedApplier


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "Success"
STATUS_WARNINGS = "Warnings"
STATUS_NOT_COMMITTED = "NotCommitted"

FSTAB_MEMBER = "./etc/fstab"
REBOOT_CATEGORIES = ("network", "filesystem", "pve_cluster", "storage_stack", "zfs", "services")
ACCESS_CONTROL_IDS = ("pve_access_control", "pbs_access_control")

_stage_seq = itertools.count(1)


def compatibility_warning(system_type: str, manifest: Manifest) -> str:
    """Non-empty when restoring ``manifest`` on this system needs an explicit confirmation."""
    if system_type == SYSTEM_UNKNOWN:
        return "cannot detect current system type - restoration may fail"
    backup_type = manifest.proxmox_type.strip().lower()
    if backup_type not in (TYPE_PVE, TYPE_PBS):
        targets = [t.strip().lower() for t in manifest.targets()]
        backup_type = next((t for t in targets if t in (TYPE_PVE, TYPE_PBS)), "")
    if not backup_type or backup_type == system_type:
        return ""
    return (f"incompatible backup: this is a {backup_type.upper()} backup but you are running on a "
            f"{system_type.upper()} system. Please restore this backup only on a {backup_type.upper()} system")


def export_dest_root(base_dir: str, now) -> str:
    base = (base_dir or "").strip() or "/opt/proxsave"
    return posixpath.join(base, f"pve-config-export-{now.strftime('%Y%m%d-%H%M%S')}")


def stage_dest_root(temp_root: str, now) -> str:
    return posixpath.join(temp_root, f"restore-stage-{now.strftime('%Y%m%d-%H%M%S')}"
                                     f"_pid{os.getpid()}_{next(_stage_seq)}")


def not_committed_dict(err: NetworkApplyNotCommitted) -> Dict[str, Any]:
    """Diagnostic fields of an uncommitted network apply for JSON output."""
    return {
        "Status": "not committed",
        "RollbackArmed": err.rollback_armed,
        "RollbackMarker": err.rollback_marker,
        "RollbackLog": err.rollback_log,
        "RollbackDeadline": err.rollback_deadline.isoformat() if err.rollback_deadline else None,
        "OriginalIP": err.original_ip,
        "CurrentIP": err.restored_ip,
    }


def count_files_per_category(files: List[str], dest_root: str, categories: List[Category]) -> Dict[str, int]:
    counts = {c.id: 0 for c in categories}
    for target in files:
        rel = "./" + posixpath.relpath(target, dest_root)
        for cat in categories:
            if path_matches_category(rel, cat):
                counts[cat.id] += 1
    return counts


class RestoreOperation:
    """Handles restore operations for Proxmox configuration backups."""

    def __init__(self, deps, version: str = "", registry: Optional[TempDirRegistry] = None,
                 dest_root: str = "/", services: Optional[ServiceManager] = None):
        self.deps = deps
        self.version = version
        self.registry = registry or TempDirRegistry.open_for_run(deps.config, deps.fs, clock=deps.clock)
        self.dest_root = dest_root
        self.services = services or ServiceManager(deps.runner, deps.clock)

    @property
    def dry_run(self) -> bool:
        return bool(self.deps.config.dry_run)

    def run(self) -> RestoreSummary:
        """Select a backup, prepare it and restore it under operator supervision."""
        logger.info("Starting restore workflow")
        try:
            candidate = select_backup_candidate(self.deps, report=log_report(logger))
            with prepare_plain_bundle(self.deps, candidate, self.version, self.registry) as prepared:
                return self.restore_prepared(candidate, prepared)
        except (InputAborted, DecryptAborted):
            raise RestoreAborted()

    def restore_prepared(self, candidate: Candidate, prepared: StagedBundle) -> RestoreSummary:
        deps = self.deps
        ui = deps.ui
        logger.info(f"Restore target: {self.dest_root}")

        system_type = deps.system.detect()
        logger.info(f"Detected system type: {system_type}")

        warning = compatibility_warning(system_type, candidate.manifest)
        if warning:
            logger.warning(f"Compatibility check: {warning}")
            if not ui.confirm_compatibility(warning):
                raise RestoreAborted()

        logger.info("Analyzing backup contents...")
        try:
            available = available_categories(list_archive_entries(deps.fs, prepared.archive_path))
        except (OSError, BundleError) as e:
            logger.warning(f"Could not analyze categories: {e}")
            logger.info("Falling back to full restore mode")
            return self.run_full_restore(prepared, system_type)
        if not available:
            logger.warning("No known configuration categories found in backup")
            logger.info("Falling back to full restore mode")
            return self.run_full_restore(prepared, system_type)

        mode = ui.select_restore_mode(system_type)
        if mode == MODE_CUSTOM:
            selected = ui.select_categories(available, system_type)
        else:
            selected = categories_for_mode(mode, system_type, available)
        if not selected:
            raise RestoreError(f"no categories from the backup match restore mode {mode}")

        plan = plan_restore(candidate.manifest, selected, system_type, mode)
        self.choose_cluster_mode(plan)
        self.warn_hostname_mismatch(plan, candidate.manifest)

        ui.show_restore_plan(plan)
        if not ui.confirm_restore():
            logger.info("Restore operation cancelled by user")
            raise RestoreAborted()

        return self.execute_plan(plan, prepared)

    def choose_cluster_mode(self, plan: RestorePlan):
        if not (plan.needs_cluster_restore and plan.cluster_backup):
            return
        logger.info("Backup marked as cluster node; enabling guarded restore options for pve_cluster")
        choice = self.deps.ui.select_cluster_restore_mode()
        if choice == CLUSTER_ABORT:
            raise RestoreAborted()
        if choice == CLUSTER_SAFE:
            plan.apply_cluster_safe_mode(True)
            logger.info("Selected SAFE cluster restore: /var/lib/pve-cluster will be exported only")
        else:
            plan.apply_cluster_safe_mode(False)
            logger.warning("Selected RECOVERY cluster restore: the full cluster database will be restored; "
                           "ensure other nodes are isolated")

    def warn_hostname_mismatch(self, plan: RestorePlan, manifest: Manifest):
        if not any(plan.has_category(cid) for cid in ACCESS_CONTROL_IDS):
            return
        backup_host = manifest.hostname.strip()
        current_host = self.deps.system.hostname().strip()
        if backup_host and current_host and backup_host.lower() != current_host.lower():
            logger.warning(f"Access control/TFA: backup hostname={backup_host} current hostname={current_host}; "
                           f"WebAuthn users may require re-enrollment if the UI origin changes")

    @property
    def staging_enabled(self) -> bool:
        return self.dest_root == "/" and self.deps.fs.is_real

    def execute_plan(self, plan: RestorePlan, prepared: StagedBundle) -> RestoreSummary:
        """Snapshot, stop services, extract, merge and apply; services are restarted on the way out."""
        deps = self.deps
        summary = RestoreSummary(completed="", status=STATUS_SUCCESS, system_type=plan.system_type,
                                 plan=plan.to_dict())

        staged = plan.staged_categories() if self.staging_enabled else []
        if plan.staged_categories() and not staged:
            debug_step(logger, "restore", "staging disabled (dest=%s real=%s): extracting %d staged category(ies) directly",
                       self.dest_root, deps.fs.is_real, len(plan.staged_categories()))
        direct = [c for c in plan.normal_categories if c not in staged]

        safety = self.create_safety_backup(plan.normal_categories)
        if safety is not None:
            summary.safety_backup = safety.backup_path
        rollback_backup = self.create_network_rollback_backup(plan) if staged else ""

        cluster_stopped = False
        pbs_stopped = False
        try:
            if plan.needs_cluster_restore and not self.dry_run:
                logger.info("Preparing system for cluster database restore: stopping PVE services and unmounting /etc/pve")
                self.services.stop_pve_cluster()
                cluster_stopped = True
                try:
                    self.services.unmount_etc_pve()
                except ServiceError as e:
                    logger.warning(f"Could not unmount /etc/pve: {e}")

            if plan.needs_pbs_services and not self.dry_run:
                logger.info("Preparing PBS system for restore: stopping proxmox-backup services")
                try:
                    self.services.stop_pbs()
                    pbs_stopped = True
                except ServiceError as e:
                    logger.warning(f"Unable to stop PBS services automatically: {e}")
                    if not deps.ui.confirm_continue_with_pbs_services_running():
                        raise RestoreAborted()
                    logger.warning("Continuing restore with PBS services still running")

            needs_fstab = any(c.id == "filesystem" for c in direct)
            if needs_fstab:
                debug_step(logger, "restore", "filesystem category intercepted: smart fstab merge instead of extraction")
                direct = [c for c in direct if c.id != "filesystem"]

            for result in self.extract_direct(direct, prepared, plan.needs_cluster_restore, summary):
                summary.add(result)
            if needs_fstab:
                summary.add(self.merge_fstab(prepared))
            for result in self.export_categories(plan, prepared, summary):
                summary.add(result)

            if staged:
                try:
                    self.apply_staged(plan, staged, prepared, rollback_backup, summary)
                except NetworkApplyNotCommitted as e:
                    logger.warning("Network configuration not committed; the rollback will restore the previous files")
                    logger.info(f"Rollback marker: {e.rollback_marker}")
                    logger.info(f"Rollback log: {e.rollback_log}")
                    summary.network = not_committed_dict(e)
                    summary.status = STATUS_NOT_COMMITTED
        finally:
            if pbs_stopped:
                try:
                    self.services.start_pbs()
                except ServiceError as e:
                    logger.warning(f"Failed to restart PBS services after restore: {e}")
            if cluster_stopped:
                try:
                    self.services.start_pve_cluster()
                except ServiceError as e:
                    logger.warning(f"Failed to restart PVE services after restore: {e}")

        return self.finish(summary, plan)

    def create_safety_backup(self, categories: List[Category]) -> Optional[SafetyBackupResult]:
        if not categories:
            return None
        try:
            result = create_safety_backup(self.deps, categories, self.dest_root, show_progress=True)
        except OSError as e:
            logger.warning(f"Failed to create safety backup: {e}")
            if not self.deps.ui.confirm_continue_without_safety_backup(e):
                raise RestoreAborted()
            return None
        logger.info(f"Safety backup location: {result.backup_path}")
        logger.info(f"You can restore from this backup if needed using: tar -xzf {result.backup_path} -C /")
        return result

    def create_network_rollback_backup(self, plan: RestorePlan) -> str:
        network = [c for c in plan.normal_categories if c.id == "network"]
        if not network:
            return ""
        debug_step(logger, "restore", "network-only rollback backup for transactional network apply")
        try:
            result = create_safety_backup(self.deps, network, self.dest_root, prefix="network_rollback_backup")
        except OSError as e:
            logger.warning(f"Failed to create network rollback backup: {e}")
            return ""
        logger.info(f"Network rollback backup location: {result.backup_path}")
        return result.backup_path

    def extract_direct(self, categories: List[Category], prepared: StagedBundle, cluster_recovery: bool,
                       summary: RestoreSummary) -> List[CategoryResult]:
        if not categories:
            logger.info("No system-path categories selected for direct restore")
            return []
        original = categories
        if cluster_recovery:
            categories, removed = sanitize_for_cluster_recovery(categories)
            if removed:
                logger.warning("Cluster RECOVERY restore: skipping direct restore of /etc/pve paths "
                               "while the cluster filesystem is unmounted")
                for cid, paths in removed.items():
                    logger.warning(f"  - {cid}: {', '.join(paths)}")
                logger.info("These paths are restored from config.db and become visible once /etc/pve is remounted.")
        kept = {c.id for c in categories}
        results = [skipped(c.id, "paths live in /etc/pve; restored with config.db")
                   for c in original if c.id not in kept]
        if not categories:
            return results

        if self.dry_run:
            logger.info(f"DRY RUN: would extract {len(categories)} category(ies) into {self.dest_root}")
            return results + [skipped(c.id, "dry run enabled") for c in categories]

        try:
            extracted = extract_selective(self.deps.fs, prepared.archive_path, self.dest_root, categories,
                                          preserve_owner=self.deps.is_root)
        except BundleError as e:
            logger.error(f"Restore failed: {e}")
            if summary.safety_backup:
                logger.info(f"You can rollback using the safety backup at: {summary.safety_backup}")
            raise

        counts = count_files_per_category(extracted.files, self.dest_root, categories)
        for cat in categories:
            if counts[cat.id]:
                results.append(applied(cat.id, f"{counts[cat.id]} file(s) restored"))
            else:
                results.append(skipped(cat.id, "no regular files in backup"))
        if extracted.failed:
            results.append(failed("extraction", f"{extracted.failed} archive member(s) could not be restored"))
        return results

    def merge_fstab(self, prepared: StagedBundle) -> CategoryResult:
        """Extract the backup fstab to a scratch dir and offer the smart merge."""
        fs = self.deps.fs
        try:
            tmp = fs.mkdtemp(self.deps.config.temp_root, "proxsave-fstab-")
        except OSError as e:
            logger.warning(f"Failed to create temp dir for fstab merge: {e}")
            return failed("filesystem", str(e))
        try:
            extract_selective(fs, prepared.archive_path, tmp,
                              exclude=lambda name: name != FSTAB_MEMBER)
            merged = smart_merge_fstab(self.deps, posixpath.join(self.dest_root, "etc/fstab"),
                                       posixpath.join(tmp, "etc/fstab"), self.dry_run)
        except (OSError, RestoreError) as e:
            logger.warning(f"Smart fstab merge failed: {e}")
            return failed("filesystem", str(e))
        finally:
            fs.rmtree(tmp)
        if merged:
            return applied("filesystem", f"fstab merged; previous version at {merged}")
        return skipped("filesystem", "current fstab kept")

    def export_categories(self, plan: RestorePlan, prepared: StagedBundle,
                          summary: RestoreSummary) -> List[CategoryResult]:
        if not plan.export_categories:
            return []
        export_root = export_dest_root(self.deps.config.base_dir, self.deps.clock.now())
        logger.info(f"Exporting {len(plan.export_categories)} category(ies) to: {export_root}")
        try:
            self.deps.fs.makedirs(export_root)
            extract_selective(self.deps.fs, prepared.archive_path, export_root, plan.export_categories)
        except (OSError, BundleError) as e:
            logger.warning(f"Failed to export categories: {e}")
            return [failed(c.id, f"export failed: {e}") for c in plan.export_categories]
        summary.export_root = export_root
        return [applied(c.id, f"exported to {export_root}") for c in plan.export_categories]

    def apply_staged(self, plan: RestorePlan, staged: List[Category], prepared: StagedBundle,
                     rollback_backup: str, summary: RestoreSummary):
        stage_root = stage_dest_root(self.deps.config.temp_root, self.deps.clock.now())
        logger.info(f"Staging {len(staged)} sensitive category(ies) to: {stage_root}")
        try:
            self.deps.fs.makedirs(stage_root, 0o700)
            self.registry.register(stage_root)
            extract_selective(self.deps.fs, prepared.archive_path, stage_root, staged)
        except (OSError, ValueError, BundleError) as e:
            logger.warning(f"Failed to stage categories: {e}")
            for cat in staged:
                summary.add(failed(cat.id, f"staging failed: {e}"))
            self.release_stage(stage_root, summary)
            return

        applier = StagedApplier(self.deps, plan, stage_root, prepared.archive_path, rollback_backup,
                                self.dest_root, self.services)
        try:
            applier.run()
        finally:
            for result in applier.results:
                summary.add(result)
            summary.network = applier.network_dict()
            self.release_stage(stage_root, summary)

    def release_stage(self, stage_root: str, summary: RestoreSummary):
        """Remove the staged plaintext configs unless PRESERVE_RESTORE_STAGING is set."""
        fs = self.deps.fs
        keep = self.deps.config.preserve_restore_staging
        if not keep:
            try:
                if fs.exists(stage_root):
                    fs.rmtree(stage_root)
            except OSError as e:
                logger.warning(f"Failed to remove restore staging directory {stage_root}: {e}")
                keep = True
        try:
            self.registry.deregister(stage_root, remove_tree=False)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to deregister restore staging directory {stage_root}: {e}")
        if keep:
            summary.stage_root = stage_root

    def run_full_restore(self, prepared: StagedBundle, system_type: str) -> RestoreSummary:
        """Extract the whole archive when category analysis is not possible; fstab still goes through the merge."""
        ui = self.deps.ui
        ui.show_message("Full restore", "Backup category analysis failed; a full restore will be run "
                                        "(no selective modes).")
        if not ui.confirm_restore():
            raise RestoreAborted()

        summary = RestoreSummary(completed="", status=STATUS_SUCCESS, system_type=system_type,
                                 plan={"Mode": MODE_FULL, "SystemType": system_type})
        safe_fstab = self.staging_enabled
        if safe_fstab:
            logger.warning("Full restore safety: /etc/fstab will not be overwritten; "
                           "the smart merge runs after extraction")

        if self.dry_run:
            logger.info(f"DRY RUN: would extract the full archive into {self.dest_root}")
            summary.add(skipped("full", "dry run enabled"))
            return self.finish(summary, None)

        exclude = (lambda name: name == FSTAB_MEMBER) if safe_fstab else None
        extracted = extract_selective(self.deps.fs, prepared.archive_path, self.dest_root,
                                      preserve_owner=self.deps.is_root, exclude=exclude)
        if extracted.failed:
            summary.add(failed("full", f"{extracted.failed} archive member(s) could not be restored"))
        else:
            summary.add(applied("full", f"{len(extracted.files)} file(s) restored"))
        if safe_fstab:
            summary.add(self.merge_fstab(prepared))
        return self.finish(summary, None)

    def finish(self, summary: RestoreSummary, plan: Optional[RestorePlan]) -> RestoreSummary:
        summary.completed = self.deps.clock.now().strftime("%A, %b %d, %Y %H:%M")
        if summary.status != STATUS_NOT_COMMITTED and summary.has_failures:
            summary.status = STATUS_WARNINGS
        summary.reboot_recommended = plan is None or any(plan.has_category(c) for c in REBOOT_CATEGORIES)

        if summary.status == STATUS_SUCCESS:
            logger.info("Restore completed successfully.")
        else:
            logger.warning(f"Restore completed with status {summary.status}.")
        for result in summary.results:
            if result.status == STATUS_FAILED:
                logger.warning(f"  {result.category_id}: {result.reason}")
        if summary.export_root:
            logger.info(f"Export directory: {summary.export_root}")
        if summary.stage_root:
            logger.info(f"Staging directory: {summary.stage_root}")
        if summary.safety_backup:
            logger.info(f"Safety backup preserved at: {summary.safety_backup}")
            logger.info(f"Remove it manually if restore was successful: rm {summary.safety_backup}")
        if summary.system_type == TYPE_PVE:
            logger.info("PVE services: verify with 'pvecm status' or restart pve-cluster pvedaemon pveproxy")
        elif summary.system_type == TYPE_PBS:
            logger.info("PBS services: verify with 'systemctl status proxmox-backup proxmox-backup-proxy'")
        if summary.reboot_recommended:
            logger.info("A reboot is recommended so network, mounts and services pick up the restored configuration.")
        return summary
