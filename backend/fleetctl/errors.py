"""Typed errors for device auth, targeting, and task lifecycle operations."""


class FleetError(Exception):
    """Base class for control-plane errors."""


class DeviceAuthError(FleetError):
    """Raised when a device request fails signature, freshness, or identity checks."""


class DeviceNotFoundError(FleetError):
    """Raised when a device code is not present in the directory."""


class TargetConfigurationError(FleetError):
    """Raised when a task target cannot be resolved as declared."""


class TaskConfigurationError(FleetError):
    """Raised when a task definition is incomplete or invalid."""


class TaskNotFoundError(FleetError):
    """Raised when a task id does not exist."""


class TaskStateError(FleetError):
    """Raised when a task status transition is not allowed from the current status."""

    def __init__(self, task_id: str, current: str, action: str):
        self.task_id = task_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} task {task_id} while it is {current}")


class InvalidCronExpression(FleetError, ValueError):
    """Raised when a cron expression cannot be parsed."""


class StorageError(FleetError):
    """Raised when the shared store rejects or fails an operation."""
