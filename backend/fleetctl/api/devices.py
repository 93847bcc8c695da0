"""Device-facing APIs (registration, heartbeat long-poll, result reports) plus operator presence tools."""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from fleetctl.api.deps import get_runtime, to_http_error
from fleetctl.devices.schemas import (
    DeviceHeartbeatRequest,
    DeviceHeartbeatResponse,
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    ReportResultRequest,
    ReportResultResponse,
)
from fleetctl.errors import FleetError
from fleetctl.runtime.deps import RuntimeDependencies

router = APIRouter(prefix="/api/devices", tags=["devices"])


@router.post("/register", response_model=DeviceRegisterResponse)
async def register_device_endpoint(
    request: DeviceRegisterRequest,
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> DeviceRegisterResponse:
    try:
        return await runtime.devices.register(request)
    except FleetError as exc:
        raise to_http_error(exc) from exc


@router.post("/heartbeat", response_model=DeviceHeartbeatResponse)
async def device_heartbeat_endpoint(
    request: DeviceHeartbeatRequest,
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> DeviceHeartbeatResponse:
    """Record presence and hold the request open until instructions arrive or poll_timeout elapses."""
    try:
        return await runtime.devices.heartbeat(request)
    except FleetError as exc:
        raise to_http_error(exc) from exc


@router.post("/results", response_model=ReportResultResponse)
async def report_result_endpoint(
    request: ReportResultRequest,
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> ReportResultResponse:
    try:
        return await runtime.devices.report_result(request)
    except FleetError as exc:
        raise to_http_error(exc) from exc


class CleanupRequest(BaseModel):
    offline_seconds: float = Field(default=30 * 86400, ge=0)
    dry_run: bool = False


@router.get("/presence")
async def device_presence_endpoint(
    codes: list[str] | None = Query(default=None),
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> dict:
    """Online flag per device; every registered device when no codes are given."""
    device_codes = codes or [d.code for d in await runtime.directory.list_all()]
    return {"devices": await runtime.presence.online_status(device_codes)}


@router.post("/{device_code}/offline")
async def mark_device_offline_endpoint(
    device_code: str,
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> dict:
    await runtime.presence.mark_offline(device_code)
    return {"device_code": device_code, "online": False}


@router.post("/cleanup")
async def cleanup_offline_devices_endpoint(
    request: CleanupRequest,
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> dict:
    cleaned = await runtime.devices.cleanup_offline(request.offline_seconds, dry_run=request.dry_run)
    return {"devices": cleaned, "dry_run": request.dry_run}
