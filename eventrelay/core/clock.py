from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


# Inject clocks as zero-arg callables returning aware UTC datetimes.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
