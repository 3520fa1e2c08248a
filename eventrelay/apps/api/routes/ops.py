from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from eventrelay.apps.api.deps import get_runtime
from eventrelay.apps.api.response import SuccessEnvelope, success_response
from eventrelay.core.errors import OutboxEntryNotFoundError
from eventrelay.domain.events import OutboxEntry, OutboxStatus
from eventrelay.services.resilience import CircuitInfo
from eventrelay.services.runtime import Runtime
from eventrelay.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot

router = APIRouter(prefix="/ops", tags=["ops"])

_SUMMARY_COUNTER_PREFIXES = ("webhook_delivery_total.", "circuit_breaker_open_total", "realtime_publish_failed_total")
_SUMMARY_GAUGE_PREFIXES = ("circuit_breaker_state.", "webhook_delivery_")


class CircuitInfoResponse(BaseModel):
    name: str
    state: str
    failure_count: int
    success_count: int
    next_retry_time: datetime | None


class OutboxEntryResponse(BaseModel):
    id: str
    event_id: str
    event_type: str
    tenant_id: str
    endpoint_name: str
    status: str
    attempt: int
    next_attempt_at: datetime
    created_at: datetime
    updated_at: datetime
    last_error: str | None
    delivered_at: datetime | None
    replay_of: str | None
    payload: str


class OutboxSummaryResponse(BaseModel):
    counts: dict[str, int]
    counters: dict[str, int]
    gauges: dict[str, float]
    latency_ms: dict[str, dict[str, float | None]]


def _circuit_response(info: CircuitInfo) -> dict:
    return CircuitInfoResponse(
        name=info.name,
        state=info.state.value,
        failure_count=info.failure_count,
        success_count=info.success_count,
        next_retry_time=info.next_retry_time,
    ).model_dump(mode="json")


def _entry_response(entry: OutboxEntry) -> dict:
    return OutboxEntryResponse(
        id=entry.id,
        event_id=entry.event_id,
        event_type=entry.event_type,
        tenant_id=entry.tenant_id,
        endpoint_name=entry.endpoint_name,
        status=entry.status.value,
        attempt=entry.attempt,
        next_attempt_at=entry.next_attempt_at,
        created_at=entry.created_at,
        updated_at=entry.updated_at,
        last_error=entry.last_error,
        delivered_at=entry.delivered_at,
        replay_of=entry.replay_of,
        payload=entry.payload.decode("utf-8", errors="replace"),
    ).model_dump(mode="json")


@router.get("/circuits", response_model=SuccessEnvelope[list[CircuitInfoResponse]])
async def list_circuits(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    return success_response(request=request, data=[_circuit_response(info) for info in runtime.breakers.snapshot()])


@router.get("/circuits/{name}", response_model=SuccessEnvelope[CircuitInfoResponse])
async def get_circuit(name: str, request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    return success_response(request=request, data=_circuit_response(runtime.breakers.get_info(name)))


@router.post("/circuits/{name}/reset", response_model=SuccessEnvelope[CircuitInfoResponse])
async def reset_circuit(name: str, request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Operational recovery: close the circuit now instead of waiting out the open window.
    return success_response(request=request, data=_circuit_response(runtime.breakers.reset(name)))


@router.get("/outbox", response_model=SuccessEnvelope[list[OutboxEntryResponse]])
async def list_outbox_entries(
    request: Request,
    status: OutboxStatus | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    entries = await runtime.outbox.list_entries(status=status, tenant_id=tenant_id, limit=limit)
    return success_response(request=request, data=[_entry_response(entry) for entry in entries])


@router.get("/outbox/summary", response_model=SuccessEnvelope[OutboxSummaryResponse])
async def outbox_summary(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    counters = {
        name: value for name, value in counters_snapshot().items() if name.startswith(_SUMMARY_COUNTER_PREFIXES)
    }
    gauges = {name: value for name, value in gauges_snapshot().items() if name.startswith(_SUMMARY_GAUGE_PREFIXES)}
    payload = OutboxSummaryResponse(
        counts=await runtime.outbox.summary(),
        counters=counters,
        gauges=gauges,
        latency_ms=external_latency_by_integration(window_s),
    )
    return success_response(request=request, data=payload.model_dump())


@router.get("/outbox/{entry_id}", response_model=SuccessEnvelope[OutboxEntryResponse])
async def get_outbox_entry(entry_id: str, request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    entry = await runtime.outbox.get(entry_id)
    if entry is None:
        raise OutboxEntryNotFoundError(f"outbox entry {entry_id} not found")
    return success_response(request=request, data=_entry_response(entry))


@router.post("/outbox/{entry_id}/replay", status_code=202, response_model=SuccessEnvelope[OutboxEntryResponse])
async def replay_outbox_entry(entry_id: str, request: Request, runtime: Runtime = Depends(get_runtime)):
    # Re-deliver a dead-lettered entry as a new pending entry; the original stays terminal.
    replay = await runtime.outbox.replay_dead_letter(entry_id)
    return JSONResponse(content=success_response(request=request, data=_entry_response(replay)), status_code=202)
