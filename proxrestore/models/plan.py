"""Restore plan: a pure description of what a restore run will do."""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from .category import (Category, MODE_FULL, TYPE_PBS, TYPE_PVE, has_category,
                       is_staged_category)
from .manifest import Manifest


PBS_BEHAVIOR_CLEAN = "clean"
PBS_BEHAVIOR_MERGE = "merge"

CLUSTER_CATEGORY_ID = "pve_cluster"


def split_export_categories(categories: List[Category]):
    normal, export = [], []
    for cat in categories:
        (export if cat.export_only else normal).append(cat)
    return normal, export


def needs_pbs_services(categories: List[Category]) -> bool:
    """PBS categories need the proxy and daemon stopped while files are written."""
    return any(cat.type == TYPE_PBS for cat in categories)


@dataclass
class RestorePlan:
    """Categories to restore and the flags derived from them."""
    mode: str
    system_type: str
    normal_categories: List[Category] = field(default_factory=list)
    export_categories: List[Category] = field(default_factory=list)
    cluster_safe_mode: bool = False
    needs_cluster_restore: bool = False
    needs_pbs_services: bool = False
    cluster_backup: bool = False
    pbs_behavior: str = PBS_BEHAVIOR_CLEAN
    selection: List[Category] = field(default_factory=list, repr=False)

    def has_category(self, category_id: str) -> bool:
        return has_category(self.normal_categories, category_id)

    def staged_categories(self) -> List[Category]:
        """Normal categories applied through a staging directory."""
        return [c for c in self.normal_categories if is_staged_category(c.id)]

    def direct_categories(self) -> List[Category]:
        """Normal categories extracted straight onto the destination."""
        return [c for c in self.normal_categories if not is_staged_category(c.id)]

    def apply_cluster_safe_mode(self, enable: bool):
        """Toggle SAFE cluster handling and recompute the derived flags."""
        self.cluster_safe_mode = enable
        if not self.selection:
            self.selection = self.normal_categories + self.export_categories
        normal, export = split_export_categories(self.selection)
        if enable:
            kept = []
            for cat in normal:
                (export if cat.id == CLUSTER_CATEGORY_ID else kept).append(cat)
            normal = kept
        self.normal_categories = normal
        self.export_categories = export
        self._recompute()

    def _recompute(self):
        self.needs_cluster_restore = (self.system_type == TYPE_PVE
                                      and self.has_category(CLUSTER_CATEGORY_ID)
                                      and not self.cluster_safe_mode)
        self.needs_pbs_services = (self.system_type == TYPE_PBS
                                   and needs_pbs_services(self.normal_categories))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "Mode": self.mode,
            "SystemType": self.system_type,
            "NormalCategories": [c.id for c in self.normal_categories],
            "ExportCategories": [c.id for c in self.export_categories],
            "ClusterSafeMode": self.cluster_safe_mode,
            "NeedsClusterRestore": self.needs_cluster_restore,
            "NeedsPBSServices": self.needs_pbs_services,
            "ClusterBackup": self.cluster_backup,
            "PBSRestoreBehavior": self.pbs_behavior,
        }


def default_pbs_behavior(mode: str) -> str:
    return PBS_BEHAVIOR_CLEAN if mode == MODE_FULL else PBS_BEHAVIOR_MERGE


def plan_restore(manifest: Optional[Manifest], selected: List[Category], system_type: str,
                 mode: str, pbs_behavior: Optional[str] = None) -> RestorePlan:
    """Compute the restore plan without any I/O or prompts."""
    normal, export = split_export_categories(selected)
    cluster_backup = bool(manifest) and manifest.cluster_mode.strip().lower() == "cluster"
    plan = RestorePlan(
        mode=mode,
        system_type=system_type,
        normal_categories=normal,
        export_categories=export,
        cluster_backup=cluster_backup,
        pbs_behavior=pbs_behavior or default_pbs_behavior(mode),
        selection=list(selected),
    )
    plan.apply_cluster_safe_mode(False)
    return plan
