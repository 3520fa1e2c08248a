from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from eventrelay.apps.api.errors import domain_error_status, split_detail
from eventrelay.apps.api.response import REQUEST_ID_HEADER, error_response
from eventrelay.core.errors import EventRelayError
from eventrelay.services.idempotency import (
    IDEMPOTENCY_HEADER,
    IDEMPOTENT_REPLAY_HEADER,
    StoredResponse,
    idempotency_expiry,
    scoped_idempotency_key,
)
from eventrelay.services.runtime import Runtime


logger = logging.getLogger(__name__)

_MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


@dataclass(frozen=True)
class IdempotencyContext:
    # Held by the request that won the key; its outcome is stored for replays.
    scoped_key: str
    request_hash: str
    expires_at: datetime


@dataclass(frozen=True)
class IdempotencyReplay:
    status_code: int
    body: Any
    request_id: str | None


def _invalid_key(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "IDEMPOTENCY_KEY_INVALID", "message": message},
    )


def normalize_idempotency_key(value: str, *, min_length: int, max_length: int) -> str:
    # Enforce idempotency key size constraints for storage safety.
    cleaned = value.strip()
    if not cleaned:
        raise _invalid_key(f"{IDEMPOTENCY_HEADER} is empty")
    if len(cleaned) < min_length:
        raise _invalid_key(f"{IDEMPOTENCY_HEADER} must be at least {min_length} characters")
    if len(cleaned) > max_length:
        raise _invalid_key(f"{IDEMPOTENCY_HEADER} exceeds {max_length} characters")
    return cleaned


def _extract_request_id(body: Any) -> str | None:
    # Reuse stored request_id for idempotent replay responses.
    if isinstance(body, dict):
        meta = body.get("meta")
        if isinstance(meta, dict):
            value = meta.get("request_id")
            if isinstance(value, str):
                return value
    return None


def build_replay_response(replay: IdempotencyReplay) -> Response:
    headers = {IDEMPOTENT_REPLAY_HEADER: "true"}
    if replay.request_id:
        headers[REQUEST_ID_HEADER] = replay.request_id
    if replay.body is None:
        return Response(status_code=replay.status_code, headers=headers)
    return JSONResponse(content=replay.body, status_code=replay.status_code, headers=headers)


async def check_idempotency(
    *,
    request: Request,
    runtime: Runtime,
    tenant_id: str,
    request_hash: str,
) -> tuple[IdempotencyContext | None, IdempotencyReplay | None]:
    """Claim the request's idempotency key or resolve the earlier outcome.

    Returns a context when this request won the key and must store its
    outcome, a replay when the key already has a stored outcome for the same
    payload, and ``(None, None)`` when idempotency does not apply. Raises 409
    when the key was used with a different payload or its first request is
    still running.
    """
    settings = runtime.settings
    if not settings.idempotency_enabled or request.method.upper() not in _MUTATING_METHODS:
        return None, None
    raw_key = request.headers.get(IDEMPOTENCY_HEADER)
    if raw_key is None:
        if settings.idempotency_require_key:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "IDEMPOTENCY_KEY_REQUIRED", "message": f"{IDEMPOTENCY_HEADER} header is required"},
            )
        return None, None
    key = normalize_idempotency_key(
        raw_key,
        min_length=settings.idempotency_min_key_length,
        max_length=settings.idempotency_max_key_length,
    )
    scoped_key = scoped_idempotency_key(tenant_id, key)
    expires_at = idempotency_expiry(settings.idempotency_ttl_hours, now=runtime.clock())
    if await runtime.idempotency_store.try_put(scoped_key, expires_at):
        return IdempotencyContext(scoped_key=scoped_key, request_hash=request_hash, expires_at=expires_at), None

    stored = await runtime.idempotency_responses.get(scoped_key)
    if stored is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "IDEMPOTENCY_REQUEST_IN_PROGRESS",
                "message": f"A request with this {IDEMPOTENCY_HEADER} is still being processed",
            },
        )
    if stored.request_hash != request_hash:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "IDEMPOTENCY_KEY_CONFLICT",
                "message": f"{IDEMPOTENCY_HEADER} already used with different payload",
            },
        )
    logger.info("idempotent_replay key=%s status=%s", scoped_key, stored.status_code)
    return None, IdempotencyReplay(
        status_code=stored.status_code,
        body=stored.body,
        request_id=_extract_request_id(stored.body),
    )


async def store_idempotency_response(
    *,
    runtime: Runtime,
    context: IdempotencyContext | None,
    response_status: int,
    response_body: Any,
) -> None:
    if context is None:
        return
    await runtime.idempotency_responses.put(
        context.scoped_key,
        StoredResponse(
            status_code=response_status,
            body=jsonable_encoder(response_body),
            request_hash=context.request_hash,
            expires_at=context.expires_at,
        ),
    )


async def store_idempotency_failure(
    *,
    request: Request,
    runtime: Runtime,
    context: IdempotencyContext | None,
    exc: Exception,
) -> None:
    # The key stays consumed after a failure, so duplicates replay the failure instead of hanging in progress.
    if context is None:
        return
    if isinstance(exc, StarletteHTTPException):
        code, message, details = split_detail(exc.detail, exc.status_code)
        status_code = exc.status_code
    elif isinstance(exc, EventRelayError):
        status_code, code = domain_error_status(exc)
        message, details = "Request failed", None
    else:
        code, message, details = "INTERNAL_ERROR", "Internal server error", None
        status_code = 500
    body = error_response(request=request, code=code, message=message, details=details)
    try:
        await store_idempotency_response(
            runtime=runtime,
            context=context,
            response_status=status_code,
            response_body=body,
        )
    except Exception:  # noqa: BLE001 - the original failure is what the caller must see.
        logger.exception("idempotency_failure_store_failed key=%s", context.scoped_key)
