"""Shared helpers for API routers."""

from fastapi import HTTPException, Request

from fleetctl.errors import (
    DeviceAuthError,
    DeviceNotFoundError,
    FleetError,
    StorageError,
    TargetConfigurationError,
    TaskConfigurationError,
    TaskNotFoundError,
    TaskStateError,
)
from fleetctl.runtime.deps import RuntimeDependencies

_STATUS_CODES: list[tuple[type[FleetError], int]] = [
    (DeviceAuthError, 401),
    (DeviceNotFoundError, 404),
    (TaskNotFoundError, 404),
    (TargetConfigurationError, 422),
    (TaskConfigurationError, 422),
    (TaskStateError, 409),
    (StorageError, 503),
]


def get_runtime(request: Request) -> RuntimeDependencies:
    """FastAPI dependency returning the container built at startup."""
    return request.app.state.runtime


def to_http_error(exc: FleetError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
