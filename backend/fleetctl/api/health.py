"""Health check endpoint."""

from fastapi import APIRouter, Depends

from fleetctl.api.deps import get_runtime
from fleetctl.runtime.deps import RuntimeDependencies

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check(runtime: RuntimeDependencies = Depends(get_runtime)) -> dict:
    """Report liveness and whether the shared store answers."""
    store_ok = True
    try:
        await runtime.store.exists("health:check")
    except Exception:  # noqa: BLE001
        store_ok = False
    return {
        "status": "healthy" if store_ok else "degraded",
        "storage_backend": runtime.settings.storage_backend,
        "store": "ok" if store_ok else "unreachable",
    }
