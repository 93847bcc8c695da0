"""Operator queue inspection and maintenance APIs."""

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from fleetctl.api.deps import get_runtime
from fleetctl.queue.instruction import ROUTINE_PRIORITY, InstructionType
from fleetctl.runtime.deps import RuntimeDependencies

router = APIRouter(prefix="/api/queues", tags=["queues"])


class BroadcastRequest(BaseModel):
    device_codes: list[str] = Field(default_factory=list)  # empty means every device
    instruction_type: InstructionType
    payload: dict[str, Any] = Field(default_factory=dict)
    timeout: int | None = None
    priority: int = ROUTINE_PRIORITY


@router.get("")
async def queue_overview_endpoint(
    busy_limit: int = Query(default=10, ge=1, le=100),
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> dict:
    devices = await runtime.directory.list_all()
    overview = await runtime.monitor.fleet_overview([d.code for d in devices], busy_limit=busy_limit)
    return asdict(overview)


@router.post("/broadcast")
async def broadcast_endpoint(
    request: BroadcastRequest,
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> dict:
    codes = request.device_codes or [d.code for d in await runtime.directory.list_all()]
    results = await runtime.queue.enqueue_many(
        codes,
        request.instruction_type,
        request.payload,
        timeout=request.timeout,
        priority=request.priority,
        high_priority=request.instruction_type.is_urgent,
    )
    return {
        "sent": {code: instruction_id for code, instruction_id in results.items() if instruction_id},
        "failed": [code for code, instruction_id in results.items() if instruction_id is None],
    }


@router.get("/{device_code}")
async def device_queue_endpoint(
    device_code: str,
    limit: int = Query(default=10, ge=1, le=200),
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> dict:
    stats = await runtime.monitor.device_stats(device_code)
    preview = await runtime.queue.preview(device_code, limit)
    return {
        **asdict(stats),
        "last_seen": await runtime.presence.last_seen(device_code),
        "metrics": await runtime.presence.get_metrics(device_code),
        "instructions": [instruction.model_dump(mode="json") for instruction in preview],
    }


@router.delete("/{device_code}")
async def clear_device_queue_endpoint(
    device_code: str,
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> dict:
    removed = await runtime.queue.clear(device_code)
    return {"device_code": device_code, "removed": removed}


@router.delete("/{device_code}/{instruction_id}")
async def cancel_instruction_endpoint(
    device_code: str,
    instruction_id: str,
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> dict:
    if not await runtime.queue.cancel(device_code, instruction_id):
        raise HTTPException(status_code=404, detail=f"Instruction {instruction_id} is not queued for {device_code}")
    return {"device_code": device_code, "instruction_id": instruction_id, "cancelled": True}
