from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import time
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import quote

import httpx

from eventrelay.core.clock import Clock, utc_now
from eventrelay.core.config import Settings, get_settings
from eventrelay.core.errors import CircuitOpenError, OutboxLeaseLostError, WebhookDeliveryError
from eventrelay.domain.events import OutboxEntry, WebhookEndpointConfig
from eventrelay.services.resilience import CircuitBreakerRegistry
from eventrelay.services.telemetry import increment_counter, record_external_call, set_gauge
from eventrelay.services.webhooks.outbox import Outbox
from eventrelay.services.webhooks.signing import compute_signature


logger = logging.getLogger(__name__)

ENDPOINT_UNAVAILABLE = "endpoint_unavailable"

_HEADER_EVENT_ID = "X-Event-Id"
_HEADER_EVENT_TYPE = "X-Event-Type"
_HEADER_TENANT_ID = "X-Event-Tenant-Id"
_HEADER_DELIVERY_ID = "X-Delivery-Id"
_HEADER_DELIVERY_ATTEMPT = "X-Delivery-Attempt"


def _header_value(value: str) -> str:
    # Producer-supplied strings may hold non-ASCII or control characters; headers must stay ASCII.
    return quote(value, safe="-._~:@!$&'()*+,;=/")


def circuit_name(endpoint_name: str) -> str:
    return f"webhook:{endpoint_name}"


def compute_backoff_ms(attempt: int, *, initial_backoff_ms: int, max_backoff_ms: int | None = None) -> int:
    # Attempts count from 1: initial, 2x, 4x, ... capped so long outages do not push retries out for days.
    exponent = max(0, int(attempt) - 1)
    backoff = max(1, int(initial_backoff_ms)) * (2**exponent)
    if max_backoff_ms is not None and max_backoff_ms > 0:
        return min(backoff, int(max_backoff_ms))
    return backoff


@dataclass(frozen=True)
class DeliveryPolicy:
    max_attempts: int = 5
    initial_backoff_ms: int = 300
    max_backoff_ms: int = 300_000
    batch_size: int = 100
    max_concurrency: int = 16
    max_per_endpoint: int = 4
    lease_seconds: float = 60.0
    poll_interval_s: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> DeliveryPolicy:
        settings = settings or get_settings()
        return cls(
            max_attempts=max(1, settings.webhook_max_attempts),
            initial_backoff_ms=max(1, settings.webhook_initial_backoff_ms),
            max_backoff_ms=settings.webhook_max_backoff_ms,
            batch_size=max(1, settings.delivery_batch_size),
            max_concurrency=max(1, settings.delivery_max_concurrency),
            max_per_endpoint=max(1, settings.delivery_max_per_endpoint),
            # A send is bounded by the HTTP timeout, which must fit well inside one lease.
            lease_seconds=max(1.0, settings.delivery_lease_seconds, settings.webhook_timeout_seconds * 2),
            poll_interval_s=max(0.01, settings.delivery_poll_interval_s),
        )


@dataclass(frozen=True)
class DeliveryOutcome:
    entry_id: str
    endpoint_name: str
    attempt: int
    outcome: str
    error: str | None = None
    status_code: int | None = None
    next_attempt_at: datetime | None = None


class WebhookSender:
    """POST signed outbox payloads to receivers over one shared httpx client."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        signature_header: str = "X-Webhook-Signature",
        timeout_seconds: float = 5.0,
        clock: Clock | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=max(0.2, timeout_seconds))
        self._timeout_seconds = max(0.2, timeout_seconds)
        self._signature_header = signature_header
        self._clock = clock or utc_now

    def build_headers(self, endpoint: WebhookEndpointConfig, entry: OutboxEntry, attempt: int) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            self._signature_header: compute_signature(endpoint.secret, entry.payload, self._clock()),
            _HEADER_EVENT_ID: _header_value(entry.event_id),
            _HEADER_EVENT_TYPE: _header_value(entry.event_type),
            _HEADER_TENANT_ID: _header_value(entry.tenant_id),
            _HEADER_DELIVERY_ID: entry.id,
            _HEADER_DELIVERY_ATTEMPT: str(attempt),
        }

    async def send(self, endpoint: WebhookEndpointConfig, entry: OutboxEntry, *, attempt: int) -> int:
        # Send the stored bytes untouched; the signature covers exactly this body.
        headers = self.build_headers(endpoint, entry, attempt)
        started = time.monotonic()
        success = False
        try:
            response = await self._client.post(
                endpoint.url,
                content=entry.payload,
                headers=headers,
                timeout=self._timeout_seconds,
            )
            if not 200 <= response.status_code < 300:
                raise WebhookDeliveryError(endpoint.name, response.status_code)
            success = True
            return response.status_code
        finally:
            record_external_call(
                integration=circuit_name(endpoint.name),
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


DeadLetterCallback = Callable[[OutboxEntry], Awaitable[None]]


class DeliveryWorker:
    """Drain due outbox entries and deliver each through its endpoint circuit.

    ``run_cycle`` performs one claim-and-dispatch pass and is what tests drive
    with an injected clock. ``start``/``stop`` host the same pass as a
    restartable background task; ``stop`` stops claiming and lets in-flight
    attempts finish.
    """

    def __init__(
        self,
        *,
        outbox: Outbox,
        endpoints: Iterable[WebhookEndpointConfig],
        sender: WebhookSender,
        breakers: CircuitBreakerRegistry,
        policy: DeliveryPolicy | None = None,
        clock: Clock | None = None,
        on_dead_letter: DeadLetterCallback | None = None,
    ) -> None:
        self._outbox = outbox
        self._endpoints = {endpoint.name: endpoint for endpoint in endpoints}
        self._sender = sender
        self._breakers = breakers
        self._policy = policy or DeliveryPolicy.from_settings()
        self._clock = clock or utc_now
        self._on_dead_letter = on_dead_letter
        self._global_slots = asyncio.Semaphore(self._policy.max_concurrency)
        self._endpoint_slots: dict[str, asyncio.Semaphore] = {}
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def policy(self) -> DeliveryPolicy:
        return self._policy

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _endpoint_slot(self, endpoint_name: str) -> asyncio.Semaphore:
        slot = self._endpoint_slots.get(endpoint_name)
        if slot is None:
            slot = asyncio.Semaphore(self._policy.max_per_endpoint)
            self._endpoint_slots[endpoint_name] = slot
        return slot

    async def run_cycle(self) -> dict[str, int]:
        now = self._clock()
        entries = await self._outbox.claim_due(
            now=now,
            limit=self._policy.batch_size,
            lease=timedelta(seconds=self._policy.lease_seconds),
        )
        stats = {
            "claimed": len(entries),
            "delivered": 0,
            "retry_scheduled": 0,
            "dead_lettered": 0,
            "skipped": 0,
            "failed": 0,
        }
        if not entries:
            return stats
        outcomes = await asyncio.gather(*(self._dispatch(entry) for entry in entries))
        for outcome in outcomes:
            if outcome is None:
                stats["failed"] += 1
            else:
                stats[outcome.outcome] += 1
        set_gauge("webhook_delivery_last_batch_size", float(len(entries)))
        return stats

    async def _dispatch(self, entry: OutboxEntry) -> DeliveryOutcome | None:
        # One slow endpoint can hold at most max_per_endpoint global slots.
        async with self._endpoint_slot(entry.endpoint_name):
            async with self._global_slots:
                if not await self._renew_lease(entry):
                    return self._skip(entry, "lease_expired")
                try:
                    return await self.deliver(entry)
                except OutboxLeaseLostError:
                    return self._skip(entry, "lease_lost")
                except Exception:  # noqa: BLE001 - the lease expires and the entry is claimed again.
                    logger.exception(
                        "webhook_delivery_crashed entry_id=%s endpoint=%s",
                        entry.id,
                        entry.endpoint_name,
                    )
                    return None

    async def _renew_lease(self, entry: OutboxEntry) -> bool:
        # Waiting for a slot may outlast the claim lease; re-take it before sending.
        if entry.lease_token is None:
            return True
        return await self._outbox.renew_lease(
            entry.id,
            lease_token=entry.lease_token,
            now=self._clock(),
            lease=timedelta(seconds=self._policy.lease_seconds),
        )

    def _skip(self, entry: OutboxEntry, reason: str) -> DeliveryOutcome:
        increment_counter("webhook_delivery_total.skipped")
        logger.warning(
            "webhook_delivery_lease_lost entry_id=%s endpoint=%s reason=%s",
            entry.id,
            entry.endpoint_name,
            reason,
        )
        return DeliveryOutcome(entry.id, entry.endpoint_name, entry.attempt, "skipped", error=reason)

    async def deliver(self, entry: OutboxEntry) -> DeliveryOutcome:
        endpoint = self._endpoints.get(entry.endpoint_name)
        if endpoint is None or not endpoint.active:
            return await self._dead_letter(entry, attempt=entry.attempt, error=ENDPOINT_UNAVAILABLE)

        attempt = entry.attempt + 1
        status_code: int | None = None
        try:
            status_code = await self._breakers.execute(
                circuit_name(endpoint.name),
                lambda: self._sender.send(endpoint, entry, attempt=attempt),
            )
        except CircuitOpenError:
            error = "circuit_open"
        except WebhookDeliveryError as exc:
            status_code = exc.status_code
            error = f"http_{exc.status_code}"
        except httpx.TimeoutException:
            error = "timeout"
        except httpx.HTTPError as exc:
            error = f"network_error:{type(exc).__name__}"
        except Exception as exc:  # noqa: BLE001 - an unsendable entry still uses up an attempt.
            logger.exception("webhook_delivery_send_failed entry_id=%s endpoint=%s", entry.id, endpoint.name)
            error = f"delivery_error:{type(exc).__name__}"
        else:
            await self._outbox.mark_delivered(
                entry.id,
                attempt=attempt,
                now=self._clock(),
                lease_token=entry.lease_token,
            )
            increment_counter("webhook_delivery_total.delivered")
            logger.info(
                "webhook_delivery_attempt entry_id=%s endpoint=%s attempt=%s outcome=delivered status=%s",
                entry.id,
                endpoint.name,
                attempt,
                status_code,
            )
            return DeliveryOutcome(entry.id, endpoint.name, attempt, "delivered", status_code=status_code)

        if attempt >= self._policy.max_attempts:
            return await self._dead_letter(entry, attempt=attempt, error=error, status_code=status_code)

        now = self._clock()
        delay_ms = compute_backoff_ms(
            attempt,
            initial_backoff_ms=self._policy.initial_backoff_ms,
            max_backoff_ms=self._policy.max_backoff_ms,
        )
        next_attempt_at = now + timedelta(milliseconds=delay_ms)
        await self._outbox.schedule_retry(
            entry.id,
            attempt=attempt,
            next_attempt_at=next_attempt_at,
            error=error,
            now=now,
            lease_token=entry.lease_token,
        )
        increment_counter("webhook_delivery_total.retry_scheduled")
        logger.warning(
            "webhook_delivery_attempt entry_id=%s endpoint=%s attempt=%s outcome=retry_scheduled error=%s backoff_ms=%s",
            entry.id,
            endpoint.name,
            attempt,
            error,
            delay_ms,
        )
        return DeliveryOutcome(
            entry.id,
            endpoint.name,
            attempt,
            "retry_scheduled",
            error=error,
            status_code=status_code,
            next_attempt_at=next_attempt_at,
        )

    async def _dead_letter(
        self,
        entry: OutboxEntry,
        *,
        attempt: int,
        error: str,
        status_code: int | None = None,
    ) -> DeliveryOutcome:
        dead = await self._outbox.mark_dead_lettered(
            entry.id,
            attempt=attempt,
            error=error,
            now=self._clock(),
            lease_token=entry.lease_token,
        )
        increment_counter("webhook_delivery_total.dead_lettered")
        logger.error(
            "webhook_delivery_attempt entry_id=%s endpoint=%s attempt=%s outcome=dead_lettered error=%s "
            "event_type=%s tenant_id=%s",
            entry.id,
            entry.endpoint_name,
            attempt,
            error,
            entry.event_type,
            entry.tenant_id,
        )
        if self._on_dead_letter is not None:
            try:
                await self._on_dead_letter(dead)
            except Exception:  # noqa: BLE001 - dead-letter hooks must not undo the terminal transition.
                logger.exception("webhook_dead_letter_hook_failed entry_id=%s", entry.id)
        return DeliveryOutcome(entry.id, entry.endpoint_name, attempt, "dead_lettered", error=error, status_code=status_code)

    async def run_forever(self) -> None:
        # Poll on a fixed cadence; a full batch means more work is due, so poll again immediately.
        interval = self._policy.poll_interval_s
        while not self._stop_event.is_set():
            stats: dict[str, Any] | None = None
            try:
                stats = await self.run_cycle()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("webhook delivery cycle failed")
            if stats is not None and stats["claimed"] >= self._policy.batch_size:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_forever(), name="webhook-delivery-worker")
        logger.info("webhook_delivery_worker_started endpoints=%s", len(self._endpoints))

    async def stop(self, *, timeout: float | None = None) -> None:
        task = self._task
        self._stop_event.set()
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("webhook_delivery_worker_stop_timeout timeout_s=%s", timeout)
        finally:
            self._task = None
        logger.info("webhook_delivery_worker_stopped")
