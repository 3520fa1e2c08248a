from __future__ import annotations

import logging

from arq.connections import RedisSettings

from eventrelay.core.config import get_settings
from eventrelay.core.logging import configure_logging
from eventrelay.services.runtime import build_runtime

logger = logging.getLogger(__name__)


async def replay_dead_letter_entry(ctx, entry_id: str) -> str:
    # Operator-triggered replay: append a fresh pending entry linked to the dead-lettered one.
    runtime = ctx["runtime"]
    replay = await runtime.outbox.replay_dead_letter(entry_id)
    return replay.id


async def run_delivery_cycle(ctx) -> dict[str, int]:
    # One claim-and-dispatch pass on demand, e.g. right after a bulk replay.
    runtime = ctx["runtime"]
    return await runtime.worker.run_cycle()


async def _startup(ctx) -> None:
    # In external mode the polling loop lives here, beside the arq job runner; inline mode leaves it to the API.
    configure_logging()
    runtime = build_runtime(get_settings())
    await runtime.startup()
    if runtime.settings.delivery_worker_mode == "external":
        runtime.worker.start()
    else:
        logger.info("delivery_loop_not_started worker_mode=%s", runtime.settings.delivery_worker_mode)
    ctx["runtime"] = runtime


async def _shutdown(ctx) -> None:
    runtime = ctx.get("runtime")
    if runtime is not None:
        await runtime.shutdown()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.delivery_queue_name
    functions = [replay_dead_letter_entry, run_delivery_cycle]
    on_startup = _startup
    on_shutdown = _shutdown
