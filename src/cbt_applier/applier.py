"""Apply change block tracking to VMs and commit it with a transient snapshot."""

import threading
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import structlog

from .config import Settings
from .errors import TaskTimeoutError
from .models import NotFound, OutcomeReport, OutcomeStatus, ReconfigurationRequest
from .vsphere_client import VSphereClient

logger = structlog.get_logger()


class ChangeTrackingApplier:
    """Applies one change tracking setting to a batch of targets.

    Each target is resolved, reconfigured, committed with a create/delete
    snapshot pair and, when enabling, verified. Failures are recorded per
    target and never stop the batch. Only a failed preflight raises.
    """

    def __init__(self, settings: Settings, client: VSphereClient) -> None:
        """Initialize applier."""
        self.settings = settings
        self.client = client
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop before the next VM. The VM in progress is allowed to finish."""
        if not self._cancelled.is_set():
            logger.warning("Cancellation requested, stopping after the current VM")
        self._cancelled.set()

    def new_snapshot_name(self) -> str:
        """Generate a unique, recognisable name for a transient snapshot."""
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
        return f"{self.settings.snapshot_prefix}-{stamp}-{uuid.uuid4().hex}"

    def apply(
        self,
        targets: Sequence[str],
        enabled: bool,
        dry_run: bool = False,
    ) -> list[OutcomeReport]:
        """Apply the setting to every target in input order."""
        self.client.ensure_session()

        request = ReconfigurationRequest(change_tracking_enabled=enabled)
        logger.info(
            "Starting change tracking batch",
            action=request.action,
            targets=len(targets),
            dry_run=dry_run,
        )

        outcomes: list[OutcomeReport] = []
        for index, target in enumerate(targets):
            if self.cancelled:
                logger.warning("Batch cancelled", skipped_targets=list(targets[index:]))
                break
            outcomes.extend(self._apply_target(target, request, dry_run))

        problems = sum(1 for o in outcomes if o.is_problem)
        logger.info("Change tracking batch complete", outcomes=len(outcomes), problems=problems)
        return outcomes

    def _apply_target(
        self,
        target: str,
        request: ReconfigurationRequest,
        dry_run: bool,
    ) -> list[OutcomeReport]:
        """Resolve one target and apply the request to every VM it names."""
        try:
            resolved = self.client.resolve_vms(target)
        except Exception as e:
            return [self._record(OutcomeReport(target, OutcomeStatus.FAILED, message=str(e)))]

        if isinstance(resolved, NotFound):
            return [
                self._record(
                    OutcomeReport(target, OutcomeStatus.TARGET_NOT_FOUND, message=resolved.reason)
                )
            ]

        outcomes = []
        for vm in resolved:
            if self.cancelled:
                break
            outcomes.append(self._record(self._apply_vm(target, vm, request, dry_run)))
        return outcomes

    def _apply_vm(
        self,
        target: str,
        vm: Any,
        request: ReconfigurationRequest,
        dry_run: bool,
    ) -> OutcomeReport:
        vm_name: str | None = None
        snapshot_name: str | None = None
        snapshot_created = False
        try:
            vm_name = vm.name

            if dry_run:
                return OutcomeReport(
                    target,
                    OutcomeStatus.WOULD_APPLY,
                    vm_name=vm_name,
                    message=f"would {request.action} change block tracking",
                )

            if self.settings.skip_unchanged:
                current = self.client.get_current_setting(vm)
                if current == request.change_tracking_enabled:
                    return OutcomeReport(
                        target,
                        OutcomeStatus.UNCHANGED,
                        vm_name=vm_name,
                        message=f"already {request.action}d",
                    )

            self.client.reconfigure(vm, request)

            snapshot_name = self.new_snapshot_name()
            try:
                self.client.create_snapshot(vm, snapshot_name)
            except TaskTimeoutError:
                # The task may still finish and leave the snapshot behind
                snapshot_created = True
                raise
            snapshot_created = True
            self.client.delete_snapshot(vm, snapshot_name)
            snapshot_created = False

            # Disabling is best effort, only enabling is verified
            if request.change_tracking_enabled and not self.client.get_current_setting(vm):
                return OutcomeReport(
                    target,
                    OutcomeStatus.APPLIED_UNVERIFIED,
                    vm_name=vm_name,
                    snapshot_name=snapshot_name,
                    message=(
                        "change block tracking not reported as enabled yet, "
                        "re-run or power-cycle the VM"
                    ),
                )

            return OutcomeReport(
                target,
                OutcomeStatus.APPLIED,
                vm_name=vm_name,
                snapshot_name=snapshot_name,
                message=f"change block tracking {request.action}d",
            )
        except Exception as e:
            message = str(e)
            if snapshot_created:
                message += f" (snapshot {snapshot_name} may need manual removal)"
            return OutcomeReport(
                target,
                OutcomeStatus.FAILED,
                vm_name=vm_name,
                snapshot_name=snapshot_name,
                message=message,
            )

    def _record(self, outcome: OutcomeReport) -> OutcomeReport:
        """Log an outcome on the side channel."""
        log = logger.bind(target=outcome.target, vm=outcome.vm_name)
        if outcome.status == OutcomeStatus.TARGET_NOT_FOUND:
            log.warning("Target not found", reason=outcome.message)
        elif outcome.status == OutcomeStatus.APPLIED_UNVERIFIED:
            log.warning("Change tracking not verified", detail=outcome.message)
        elif outcome.status == OutcomeStatus.FAILED:
            log.warning("Failed to apply change tracking", error=outcome.message)
        elif outcome.status == OutcomeStatus.WOULD_APPLY:
            log.info("Dry run", action=outcome.message)
        else:
            log.info("Change tracking applied", result=outcome.status.value)
        return outcome
