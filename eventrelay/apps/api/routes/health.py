from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from eventrelay.apps.api.deps import get_runtime
from eventrelay.apps.api.response import SuccessEnvelope, success_response
from eventrelay.persistence.db import pool_stats
from eventrelay.services.runtime import Runtime

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    outbox_backend: str
    worker_mode: str
    worker_running: bool
    webhook_endpoints: int
    db_pool: dict[str, int | None] | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    settings = runtime.settings
    payload = HealthResponse(
        status="ok",
        outbox_backend=type(runtime.outbox).__name__,
        worker_mode=settings.delivery_worker_mode,
        worker_running=runtime.worker.running,
        webhook_endpoints=len([endpoint for endpoint in runtime.endpoints if endpoint.active]),
        db_pool=pool_stats(runtime.engine) if runtime.engine is not None else None,
    )
    return success_response(request=request, data=payload.model_dump())
