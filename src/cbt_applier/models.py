"""Data models for the change block tracking applier."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pyVmomi import vim


class OutcomeStatus(Enum):
    """Per-target result of an apply run."""

    APPLIED = "applied"
    APPLIED_UNVERIFIED = "applied_unverified"  # enable requested, flag not seen afterwards
    TARGET_NOT_FOUND = "target_not_found"
    FAILED = "failed"
    WOULD_APPLY = "would_apply"  # dry run
    UNCHANGED = "unchanged"  # only with skip_unchanged


@dataclass(frozen=True)
class ReconfigurationRequest:
    """Reconfiguration shared by every VM in one batch."""

    change_tracking_enabled: bool

    @property
    def action(self) -> str:
        """Human readable verb for the request."""
        return "enable" if self.change_tracking_enabled else "disable"

    def to_config_spec(self) -> vim.vm.ConfigSpec:
        """Build the vSphere ConfigSpec for this request."""
        return vim.vm.ConfigSpec(changeTrackingEnabled=self.change_tracking_enabled)


@dataclass(frozen=True)
class NotFound:
    """A target the resolver could not map to any VM."""

    target: str
    reason: str = "no matching VM"


@dataclass
class OutcomeReport:
    """Result for one target, or one VM a target pattern resolved to."""

    target: str
    status: OutcomeStatus
    vm_name: str | None = None
    message: str = ""
    snapshot_name: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_problem(self) -> bool:
        """Check if the outcome should be surfaced as a warning."""
        return self.status in (
            OutcomeStatus.APPLIED_UNVERIFIED,
            OutcomeStatus.TARGET_NOT_FOUND,
            OutcomeStatus.FAILED,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON serializable dict."""
        return {
            "target": self.target,
            "vm_name": self.vm_name,
            "status": self.status.value,
            "message": self.message,
            "snapshot_name": self.snapshot_name,
            "timestamp": self.timestamp.isoformat(),
        }


def retry_candidates(outcomes: list[OutcomeReport]) -> list[str]:
    """VM names whose setting did not verify and should be re-run."""
    return [
        o.vm_name
        for o in outcomes
        if o.status == OutcomeStatus.APPLIED_UNVERIFIED and o.vm_name is not None
    ]
