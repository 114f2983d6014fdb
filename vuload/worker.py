"""
Virtual user loop.

Each virtual user runs a ScenarioRunner: invoke the scenario, commit the
iteration's samples to the MetricStream as one group, pause, repeat until
stopped. Stopping is cooperative and never interrupts an iteration.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from vuload.config import Pacing
from vuload.errors import ScenarioInvocationError
from vuload.metrics import ITERATION_DURATION, MetricStream
from vuload.scenarios import HttpSession, IterationRecorder, Scenario, VUContext

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger("vuload.worker")


class ScenarioRunner:
    """
    The loop one virtual user executes.

    Usage:
        runner = ScenarioRunner(1, scenario, stream, Pacing(fixed=3.0))
        task = asyncio.create_task(runner.loop())
        ...
        runner.stop()   # finishes the current iteration, then returns
    """

    def __init__(
        self,
        vu_id: int,
        scenario: Scenario,
        stream: MetricStream,
        pacing: Pacing,
        *,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.vu_id = vu_id
        self.scenario = scenario
        self.stream = stream
        self.pacing = pacing
        self.http = http

        self._stop = asyncio.Event()
        self._iterations = 0
        self._failures = 0
        self._running = False

    @property
    def iterations(self) -> int:
        """Completed iterations."""
        return self._iterations

    @property
    def failures(self) -> int:
        """Iterations whose scenario raised."""
        return self._failures

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the current iteration."""
        self._stop.set()

    async def loop(self) -> None:
        """Run iterations until stopped."""
        self._running = True
        logger.debug(f"VU {self.vu_id} started")
        try:
            while not self._stop.is_set():
                await self._iterate()

                if self._stop.is_set():
                    break

                delay = self.pacing.next_delay()
                if delay > 0:
                    await self._pause(delay)
        finally:
            self._running = False
            logger.debug(f"VU {self.vu_id} stopped after {self._iterations} iterations")

    async def _pause(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early on stop."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _iterate(self) -> None:
        iteration = self._iterations
        recorder = IterationRecorder({"vu": self.vu_id, "iteration": iteration})
        session = HttpSession(self.http, recorder) if self.http is not None else None
        ctx = VUContext(vu_id=self.vu_id, iteration=iteration, recorder=recorder, http=session)

        error: ScenarioInvocationError | None = None
        start = time.perf_counter()

        # CancelledError propagates and the buffered samples are dropped
        try:
            await self.scenario.run(ctx)
        except Exception as e:
            error = ScenarioInvocationError(self.vu_id, iteration, e)
            logger.debug(str(error))

        elapsed_ms = (time.perf_counter() - start) * 1000

        if error is None:
            recorder.add(ITERATION_DURATION, elapsed_ms)
        else:
            self._failures += 1
            recorder.add(ITERATION_DURATION, elapsed_ms, failed=True, tags={"error": error.reason})

        self.stream.record_many(recorder.samples)
        self._iterations += 1
