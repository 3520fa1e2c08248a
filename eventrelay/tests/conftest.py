from __future__ import annotations

import pytest

from eventrelay.core.config import get_settings
from eventrelay.services.telemetry import reset_telemetry
from eventrelay.tests.utils.fakes import FakeClock


@pytest.fixture(autouse=True)
def _reset_process_state() -> None:
    # Settings and telemetry are process-wide; isolate every test from the previous one.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
