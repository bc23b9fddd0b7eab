"""Restore outcome data models."""

from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional


STATUS_APPLIED = "applied"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass
class CategoryResult:
    """Outcome of applying one category."""
    category_id: str
    status: str  # applied, skipped, failed
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {"Category": self.category_id, "Status": self.status}
        if self.reason:
            data["Reason"] = self.reason
        return data


def applied(category_id: str, reason: str = "") -> CategoryResult:
    return CategoryResult(category_id, STATUS_APPLIED, reason)


def skipped(category_id: str, reason: str) -> CategoryResult:
    return CategoryResult(category_id, STATUS_SKIPPED, reason)


def failed(category_id: str, reason: str) -> CategoryResult:
    return CategoryResult(category_id, STATUS_FAILED, reason)


@dataclass
class RestoreSummary:
    """Everything the operator needs after a restore run."""
    completed: str
    status: str  # "Success", "Warnings", "NotCommitted"
    system_type: str
    plan: Dict[str, Any] = field(default_factory=dict)
    results: List[CategoryResult] = field(default_factory=list)
    safety_backup: Optional[str] = None
    stage_root: Optional[str] = None
    export_root: Optional[str] = None
    network: Dict[str, Any] = field(default_factory=dict)
    reboot_recommended: bool = True

    @property
    def has_failures(self) -> bool:
        return any(r.status == STATUS_FAILED for r in self.results)

    def add(self, result: CategoryResult):
        self.results.append(result)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {
            "Completed": self.completed,
            "Status": self.status,
            "SystemType": self.system_type,
            "Plan": self.plan,
            "Categories": [r.to_dict() for r in self.results],
            "RebootRecommended": self.reboot_recommended,
        }
        if self.safety_backup:
            data["SafetyBackup"] = self.safety_backup
        if self.stage_root:
            data["StagingDirectory"] = self.stage_root
        if self.export_root:
            data["ExportDirectory"] = self.export_root
        if self.network:
            data["Network"] = self.network
        return data
