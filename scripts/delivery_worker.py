from __future__ import annotations

import asyncio

from eventrelay.core.config import get_settings
from eventrelay.core.logging import configure_logging
from eventrelay.services.runtime import build_runtime


async def _main() -> None:
    # Boot a dedicated delivery loop so webhook retries run independently from API handlers.
    configure_logging()
    runtime = build_runtime(get_settings())
    await runtime.startup()
    try:
        await runtime.worker.run_forever()
    finally:
        await runtime.shutdown()


if __name__ == "__main__":
    asyncio.run(_main())
