"""Exceptions raised while applying change block tracking."""


class ChangeTrackingError(Exception):
    """Base exception for change block tracking errors."""

    pass


class PreflightUnavailableError(ChangeTrackingError):
    """Raised when no usable vCenter session exists before the batch starts."""

    pass


class TaskFailedError(ChangeTrackingError):
    """Raised when a vSphere task ends in the error state."""

    def __init__(self, description: str, fault_message: str) -> None:
        self.description = description
        self.fault_message = fault_message
        super().__init__(f"{description} failed: {fault_message}")


class TaskTimeoutError(ChangeTrackingError):
    """Raised when a vSphere task does not finish within the deadline."""

    def __init__(self, description: str, timeout_seconds: float) -> None:
        self.description = description
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{description} did not finish within {timeout_seconds}s")


class SnapshotNotFoundError(ChangeTrackingError):
    """Raised when a snapshot to delete is not present on the VM."""

    pass
