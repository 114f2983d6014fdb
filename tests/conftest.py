"""Fixtures and configuration for vuload tests."""

from __future__ import annotations

import asyncio
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from vuload.config import Pacing, Settings, reset_settings  # noqa: E402
from vuload.metrics import MetricStream  # noqa: E402
from vuload.scenarios import Scenario, VUContext  # noqa: E402


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@dataclass
class SleepScenario(Scenario):
    """Sleeps, then records a synthetic request duration."""

    name: str = "sleep"
    description: str = "Fixed latency scenario for tests"
    delay: float = 0.01
    duration_ms: float = 10.0
    slow_every: int = 0
    slow_ms: float = 500.0

    async def run(self, ctx: VUContext) -> None:
        await asyncio.sleep(self.delay)
        slow = self.slow_every and ctx.iteration % self.slow_every == 0
        ctx.add("http_req_duration", self.slow_ms if slow else self.duration_ms)


@dataclass
class FailingScenario(Scenario):
    """Raises for selected VUs, succeeds for the rest."""

    name: str = "failing"
    description: str = "Fails for selected VUs"
    failing_vus: frozenset[int] = frozenset({1})
    delay: float = 0.005

    async def run(self, ctx: VUContext) -> None:
        await asyncio.sleep(self.delay)
        if ctx.vu_id in self.failing_vus:
            raise RuntimeError("authentication rejected")


@pytest.fixture
def stream():
    """Fresh unbounded metric stream."""
    return MetricStream()


@pytest.fixture
def fast_pacing():
    """Short fixed pacing so loops iterate quickly."""
    return Pacing(fixed=0.005)


@pytest.fixture
def fast_settings():
    """Settings with a short scheduler tick and no result files."""
    return Settings(log_level="DEBUG", output_dir=".vuload-results", tick_interval=0.02, save_results=False)


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch):
    """Isolate tests from VULOAD_* variables in the environment."""
    for name in ("VULOAD_LOG_LEVEL", "VULOAD_OUTPUT_DIR", "VULOAD_TICK_INTERVAL", "VULOAD_SAVE_RESULTS"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()
