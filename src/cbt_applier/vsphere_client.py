"""vSphere client wrapper for the change block tracking applier."""

import fnmatch
import ssl
import time
from typing import Any

import structlog
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from .config import Settings
from .errors import (
    ChangeTrackingError,
    PreflightUnavailableError,
    SnapshotNotFoundError,
    TaskFailedError,
    TaskTimeoutError,
)
from .models import NotFound, ReconfigurationRequest

logger = structlog.get_logger()

SNAPSHOT_DESCRIPTION = "Transient snapshot to commit change block tracking, removed automatically"


class VSphereClient:
    """Wrapper for the vSphere operations the applier needs."""

    def __init__(self, settings: Settings) -> None:
        """Initialize vSphere client (not connected yet)."""
        self.settings = settings
        self.si: Any = None

    def __enter__(self) -> "VSphereClient":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    def connect(self) -> None:
        """Log in to vCenter."""
        if not self.settings.connection_configured:
            raise PreflightUnavailableError("vCenter server and user must be configured")

        if self.settings.verify_ssl:
            context = ssl.create_default_context()
        else:
            context = ssl._create_unverified_context()

        password = self.settings.password.get_secret_value() if self.settings.password else ""
        try:
            self.si = SmartConnect(
                host=self.settings.server,
                user=self.settings.user,
                pwd=password,
                port=self.settings.port,
                sslContext=context,
            )
        except Exception as e:
            # SmartConnect raises a bare Exception for hosts that are not VIM servers
            message = getattr(e, "msg", None) or str(e)
            raise PreflightUnavailableError(
                f"Cannot connect to vCenter {self.settings.server}: {message}"
            ) from e
        logger.info("Connected to vCenter", server=self.settings.server, user=self.settings.user)

    def disconnect(self) -> None:
        """Log out of vCenter if connected."""
        if self.si is None:
            return
        try:
            Disconnect(self.si)
        except (vmodl.MethodFault, OSError) as e:
            logger.warning("Failed to disconnect cleanly", error=str(e))
        finally:
            self.si = None

    def ensure_session(self) -> None:
        """Raise PreflightUnavailableError unless a live session exists."""
        if self.si is None:
            raise PreflightUnavailableError("Not connected to vCenter")
        try:
            session = self.si.content.sessionManager.currentSession
        except (vmodl.MethodFault, OSError) as e:
            raise PreflightUnavailableError(f"vCenter session check failed: {e}") from e
        if session is None:
            raise PreflightUnavailableError("vCenter session is not authenticated")

    def resolve_vms(self, pattern: str) -> list[Any] | NotFound:
        """Resolve a VM name or glob pattern to the matching VMs.

        Matching is case-insensitive. An exact name match wins over glob
        expansion, so names like ``web[1]`` resolve to themselves. A literal
        name that matches more than one VM is ambiguous and reported as
        NotFound, a glob pattern may match many.
        """
        if not pattern.strip():
            return NotFound(pattern, "empty target name")

        content = self.si.RetrieveContent()
        try:
            view = content.viewManager.CreateContainerView(
                content.rootFolder, [vim.VirtualMachine], True
            )
        except vmodl.MethodFault as e:
            return NotFound(pattern, e.msg or str(e))

        needle = pattern.lower()
        try:
            named = [(vm, vm.name.lower()) for vm in view.view]
        except vmodl.MethodFault as e:
            return NotFound(pattern, e.msg or str(e))
        finally:
            view.Destroy()

        matches = [vm for vm, name in named if name == needle]
        literal = bool(matches) or not _is_glob(pattern)
        if not matches and not literal:
            matches = [vm for vm, name in named if fnmatch.fnmatchcase(name, needle)]

        if not matches:
            return NotFound(pattern)
        if len(matches) > 1 and literal:
            return NotFound(pattern, f"ambiguous name, {len(matches)} VMs match")
        return matches

    def reconfigure(self, vm: Any, request: ReconfigurationRequest) -> None:
        """Apply the reconfiguration request to a VM."""
        task = vm.ReconfigVM_Task(spec=request.to_config_spec())
        self.wait_for_task(task, f"Reconfigure {vm.name}")

    def create_snapshot(self, vm: Any, name: str) -> Any:
        """Create a disk-only, non-quiesced snapshot and return its reference."""
        task = vm.CreateSnapshot_Task(
            name=name,
            description=SNAPSHOT_DESCRIPTION,
            memory=False,
            quiesce=False,
        )
        return self.wait_for_task(task, f"Create snapshot {name} on {vm.name}")

    def delete_snapshot(self, vm: Any, name: str) -> None:
        """Remove the snapshot with exactly this name, keeping its children."""
        tree = vm.snapshot.rootSnapshotList if vm.snapshot else []
        snapshot = _find_snapshot(tree, name)
        if snapshot is None:
            raise SnapshotNotFoundError(f"Snapshot {name} not found on {vm.name}")
        task = snapshot.RemoveSnapshot_Task(removeChildren=False)
        self.wait_for_task(task, f"Delete snapshot {name} on {vm.name}")

    def get_current_setting(self, vm: Any) -> bool:
        """Read the VM's current change tracking flag."""
        config = vm.config
        if config is None:
            raise ChangeTrackingError(f"Configuration of {vm.name} is not available")
        return bool(config.changeTrackingEnabled)

    def wait_for_task(self, task: Any, description: str) -> Any:
        """Block until a task finishes and return its result."""
        timeout = self.settings.task_timeout_seconds
        deadline = time.monotonic() + timeout
        while True:
            info = task.info
            if info.state == vim.TaskInfo.State.success:
                logger.debug("Task complete", task=description)
                return info.result
            if info.state == vim.TaskInfo.State.error:
                fault = info.error
                raise TaskFailedError(description, fault.msg if fault else "unknown error")
            if time.monotonic() >= deadline:
                self._cancel_task(task, description)
                raise TaskTimeoutError(description, timeout)
            time.sleep(self.settings.task_poll_interval_seconds)

    def _cancel_task(self, task: Any, description: str) -> None:
        """Ask vCenter to cancel a task that ran past its deadline."""
        try:
            task.CancelTask()
            logger.warning("Cancelled timed out task", task=description)
        except vmodl.MethodFault as e:
            # Not every task is cancelable
            logger.warning("Could not cancel timed out task", task=description, error=e.msg or str(e))


def _is_glob(pattern: str) -> bool:
    return any(ch in pattern for ch in "*?[")


def _find_snapshot(tree: list[Any], name: str) -> Any:
    for node in tree:
        if node.name == name:
            return node.snapshot
        found = _find_snapshot(node.childSnapshotList, name)
        if found is not None:
            return found
    return None
