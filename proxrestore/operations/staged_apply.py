"""Apply staged categories to the live system, one policy per category."""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..models.plan import RestorePlan
from ..models.summary import STATUS_FAILED, CategoryResult, applied, failed, skipped
from ..utils.errors import NetworkApplyNotCommitted, RestoreError
from ..utils.logger import debug_step
from .access_control import apply_pbs_access_control, apply_pve_access_control
from .network import NetworkApplyResult, apply_network_with_rollback
from .pbs_apply import apply_pbs_mount_guards, apply_pbs_staged
from .pve_apply import (apply_pve_firewall, apply_pve_ha, apply_pve_host, apply_pve_jobs,
                        apply_pve_notifications, apply_pve_sdn, apply_storage_pve)
from .services import ServiceManager


logger = logging.getLogger(__name__)

# Categories whose files live in the cluster filesystem; config.db owns them in RECOVERY.
CLUSTER_OWNED_IDS = ("pve_host", "pve_sdn", "pve_access_control", "pve_notifications",
                     "pve_firewall", "pve_ha")


def staged_apply_allowed(deps, dest_root: str) -> Tuple[bool, str]:
    """Staged apply only ever touches the real root filesystem as root outside dry runs."""
    if not deps.fs.is_real:
        return False, "non-system filesystem in use"
    if deps.config.dry_run:
        return False, "dry run enabled"
    if not deps.is_root:
        return False, "requires root privileges"
    if dest_root != "/":
        return False, f"destination {dest_root} is not /"
    return True, ""


class StagedApplier:
    """Runs the staged policies in order and collects one result per category.

    ``results`` is filled as categories complete, so a caller that catches
    NetworkApplyNotCommitted still sees what was applied before it.
    """

    def __init__(self, deps, plan: RestorePlan, stage_root: str, archive_path: str = "",
                 rollback_backup: str = "", dest_root: str = "/",
                 services: Optional[ServiceManager] = None):
        self.deps = deps
        self.plan = plan
        self.stage_root = stage_root
        self.archive_path = archive_path
        self.rollback_backup = rollback_backup
        self.dest_root = dest_root
        self.services = services or ServiceManager(deps.runner, deps.clock)
        self.results: List[CategoryResult] = []
        self.network: Optional[NetworkApplyResult] = None

    def _selected(self) -> List[str]:
        return [c.id for c in self.plan.staged_categories()]

    def _record(self, result: CategoryResult):
        if result.status == STATUS_FAILED:
            logger.warning(f"Staged apply of {result.category_id} failed: {result.reason}")
        else:
            debug_step(logger, "staged apply", "%s: %s %s", result.category_id, result.status, result.reason)
        self.results.append(result)

    def _run(self, category_id: str, func, *args):
        if not self.plan.has_category(category_id):
            return
        if self.plan.needs_cluster_restore and category_id in CLUSTER_OWNED_IDS:
            self._record(skipped(category_id, "cluster RECOVERY restores config.db"))
            return
        try:
            self._record(func(self.deps, *args))
        except (OSError, ValueError, RestoreError) as e:
            self._record(failed(category_id, str(e)))

    def run(self) -> List[CategoryResult]:
        selected = self._selected()
        if not selected:
            return self.results
        allowed, reason = staged_apply_allowed(self.deps, self.dest_root)
        if not allowed:
            logger.warning(f"Skipping staged apply: {reason}")
            for cid in selected:
                self._record(skipped(cid, reason))
            return self.results
        self.apply()
        return self.results

    def apply(self):
        """Apply without the live-system guard; callers that sandbox the destination use this."""
        deps, plan, stage, dest = self.deps, self.plan, self.stage_root, self.dest_root

        try:
            apply_pbs_mount_guards(deps, plan, stage)
        except (OSError, ValueError, RestoreError) as e:
            self._record(failed("pbs_mount_guard", str(e)))
        try:
            for result in apply_pbs_staged(deps, plan, stage, self.services, dest):
                self._record(result)
        except (OSError, ValueError, RestoreError) as e:
            logger.warning(f"PBS staged apply failed: {e}")
            for cid in ("pbs_host", "datastore_pbs", "pbs_remotes", "pbs_jobs", "pbs_tape", "pbs_notifications"):
                if plan.has_category(cid) and not any(r.category_id == cid for r in self.results):
                    self._record(failed(cid, str(e)))

        self._run("storage_pve", apply_storage_pve, plan, stage, dest)
        self._run("pve_jobs", apply_pve_jobs, plan, stage)
        self._run("pve_host", apply_pve_host, stage, dest)
        self._run("pve_sdn", apply_pve_sdn, stage, dest)
        self._run("pve_access_control", apply_pve_access_control, stage, dest)
        self._run("pbs_access_control", apply_pbs_access_control, stage, dest)
        self._run("pve_notifications", apply_pve_notifications, stage, dest)

        if plan.has_category("network"):
            self._apply_network()

        self._run("pve_firewall", apply_pve_firewall, stage, dest)
        self._run("pve_ha", apply_pve_ha, stage, dest)

    def _apply_network(self):
        try:
            self.network = apply_network_with_rollback(
                self.deps, self.plan, self.stage_root, self.archive_path,
                self.rollback_backup, self.dest_root)
        except NetworkApplyNotCommitted:
            self._record(failed("network", "not committed; rollback armed"))
            raise
        except RestoreError as e:
            self._record(failed("network", str(e)))
            return
        if self.network.status == "applied":
            self._record(applied("network"))
        else:
            self._record(skipped("network", self.network.reason))

    def network_dict(self) -> Dict[str, Any]:
        return self.network.to_dict() if self.network else {}
