from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from eventrelay.apps.api.deps import get_runtime, get_tenant_id
from eventrelay.apps.api.idempotency import (
    build_replay_response,
    check_idempotency,
    store_idempotency_failure,
    store_idempotency_response,
)
from eventrelay.apps.api.response import SuccessEnvelope, success_response
from eventrelay.services.idempotency import IDEMPOTENCY_HEADER, compute_request_hash
from eventrelay.services.notifications import PublishResult
from eventrelay.services.runtime import Runtime

router = APIRouter(prefix="/events", tags=["events"])


class PublishEventRequest(BaseModel):
    type: str = Field(min_length=1, max_length=200)
    data: dict[str, Any] = Field(default_factory=dict)
    # Producers that already own an event id pass it through to receivers.
    id: str | None = Field(default=None, min_length=1, max_length=200)


class PublishEventResponse(BaseModel):
    event_id: str
    type: str
    tenant_id: str
    created_at: str
    group_key: str
    realtime_published: bool
    outbox_entry_ids: list[str]


def _to_response(result: PublishResult) -> PublishEventResponse:
    return PublishEventResponse(
        event_id=result.event_id,
        type=result.envelope["type"],
        tenant_id=result.envelope["tenant_id"],
        created_at=result.envelope["created_at"],
        group_key=result.group_key,
        realtime_published=result.hub_published,
        outbox_entry_ids=result.outbox_entry_ids,
    )


@router.post("", status_code=202, response_model=SuccessEnvelope[PublishEventResponse])
async def publish_event(
    request: Request,
    payload: PublishEventRequest,
    tenant_id: str = Depends(get_tenant_id),
    runtime: Runtime = Depends(get_runtime),
    _idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
):
    # Producers get an answer once delivery intent is recorded; webhooks are delivered in the background.
    request_hash = compute_request_hash({"tenant_id": tenant_id, "payload": payload.model_dump()})
    idempotency_ctx, replay = await check_idempotency(
        request=request,
        runtime=runtime,
        tenant_id=tenant_id,
        request_hash=request_hash,
    )
    if replay is not None:
        return build_replay_response(replay)
    try:
        result = await runtime.dispatcher.publish(
            payload.type,
            payload.data,
            tenant_id,
            event_id=payload.id,
        )
    except Exception as exc:
        await store_idempotency_failure(request=request, runtime=runtime, context=idempotency_ctx, exc=exc)
        raise
    body = success_response(request=request, data=_to_response(result).model_dump())
    await store_idempotency_response(
        runtime=runtime,
        context=idempotency_ctx,
        response_status=202,
        response_body=body,
    )
    return JSONResponse(content=body, status_code=202)
