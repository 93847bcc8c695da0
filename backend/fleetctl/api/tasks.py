"""Operator task APIs."""

from fastapi import APIRouter, Depends, Query

from fleetctl.api.deps import get_runtime, to_http_error
from fleetctl.errors import FleetError
from fleetctl.runtime.deps import RuntimeDependencies
from fleetctl.storage.models import TaskStatus
from fleetctl.tasks.schemas import DueScanResult, TaskCreateRequest, TaskResponse, TaskStatistics

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.post("", response_model=TaskResponse, status_code=201)
async def create_task_endpoint(
    request: TaskCreateRequest,
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> TaskResponse:
    """Create a task; immediate tasks are dispatched before the response is sent."""
    try:
        task = await runtime.scheduler.create_and_dispatch(request)
    except FleetError as exc:
        raise to_http_error(exc) from exc
    return TaskResponse.model_validate(task)


@router.get("", response_model=list[TaskResponse])
async def list_tasks_endpoint(
    status: TaskStatus | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    runtime: RuntimeDependencies = Depends(get_runtime),
) -> list[TaskResponse]:
    tasks = await runtime.tasks.list_tasks(status=status, limit=limit)
    return [TaskResponse.model_validate(task) for task in tasks]


@router.get("/stats", response_model=TaskStatistics)
async def task_statistics_endpoint(runtime: RuntimeDependencies = Depends(get_runtime)) -> TaskStatistics:
    return await runtime.scheduler.statistics()


@router.post("/scan", response_model=DueScanResult)
async def run_due_scan_endpoint(runtime: RuntimeDependencies = Depends(get_runtime)) -> DueScanResult:
    return await runtime.scheduler.run_due_tasks()


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task_endpoint(task_id: str, runtime: RuntimeDependencies = Depends(get_runtime)) -> TaskResponse:
    try:
        task = await runtime.scheduler.get_task(task_id)
    except FleetError as exc:
        raise to_http_error(exc) from exc
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/dispatch", response_model=TaskResponse)
async def dispatch_task_endpoint(task_id: str, runtime: RuntimeDependencies = Depends(get_runtime)) -> TaskResponse:
    try:
        task = await runtime.scheduler.run_now(task_id)
    except FleetError as exc:
        raise to_http_error(exc) from exc
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/pause", response_model=TaskResponse)
async def pause_task_endpoint(task_id: str, runtime: RuntimeDependencies = Depends(get_runtime)) -> TaskResponse:
    try:
        task = await runtime.scheduler.pause(task_id)
    except FleetError as exc:
        raise to_http_error(exc) from exc
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/resume", response_model=TaskResponse)
async def resume_task_endpoint(task_id: str, runtime: RuntimeDependencies = Depends(get_runtime)) -> TaskResponse:
    try:
        task = await runtime.scheduler.resume(task_id)
    except FleetError as exc:
        raise to_http_error(exc) from exc
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task_endpoint(task_id: str, runtime: RuntimeDependencies = Depends(get_runtime)) -> TaskResponse:
    try:
        task = await runtime.scheduler.cancel(task_id)
    except FleetError as exc:
        raise to_http_error(exc) from exc
    return TaskResponse.model_validate(task)
