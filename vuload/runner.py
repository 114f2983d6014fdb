"""
Load Test Runner

Orchestrates one load test:
- Resolves the scenario and thresholds (configuration errors abort here)
- Runs the VU scheduler with a shared, instrumented HTTP client
- Polls running thresholds, aborting early when one opts in
- Evaluates thresholds once more at the end and reports results
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from vuload.config import LoadTestOptions, Settings, get_settings
from vuload.errors import ThresholdViolation
from vuload.metrics import MetricStream
from vuload.scenarios import Scenario, resolve_scenario
from vuload.scheduler import SchedulerStats, VUScheduler
from vuload.thresholds import Threshold, ThresholdEvaluator, ThresholdReport
from vuload.worker import ScenarioRunner

logger = logging.getLogger("vuload.runner")


@dataclass
class LoadTestResult:
    """Results from a load test run."""

    options: LoadTestOptions
    report: ThresholdReport
    scheduler: SchedulerStats
    metrics: dict[str, dict[str, Any]]
    scenario_name: str
    start_time: datetime
    end_time: datetime
    error: str | None = None
    aborted_by: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """True when every threshold passed at final evaluation."""
        return self.report.passed

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def raise_for_thresholds(self) -> None:
        """
        Raise if any threshold failed.

        Raises:
            ThresholdViolation: Carrying the failing results
        """
        if not self.report.passed:
            raise ThresholdViolation(self.report)

    def to_dict(self) -> dict[str, Any]:
        """Export results as dictionary."""
        return {
            "options": self.options.model_dump(mode="json", by_alias=True),
            "scenario_name": self.scenario_name,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "passed": self.passed,
            "error": self.error,
            "aborted_by": self.aborted_by,
            "scheduler": self.scheduler.to_dict(),
            "thresholds": self.report.to_dict(),
            "metrics": self.metrics,
        }

    def save(self, path: Path | str | None = None, output_dir: str | None = None) -> Path:
        """Save results to JSON file."""
        if path is None:
            directory = Path(output_dir or get_settings().output_dir)
            timestamp = self.start_time.strftime("%Y%m%d_%H%M%S")
            path = directory / f"load_{self.scenario_name.replace(':', '_')}_{timestamp}.json"

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

        return path

    def summary(self) -> str:
        """Generate human-readable summary."""
        lines = [
            "=== Load Test Results ===",
            "",
            f"Scenario: {self.scenario_name}",
            f"Duration: {self.duration_seconds:.1f}s",
            f"Iterations: {self.scheduler.iterations}",
            f"Peak VUs: {self.scheduler.peak_vus}",
            f"Forced Cancellations: {self.scheduler.forced_cancellations}",
        ]
        if self.scheduler.aborted:
            lines.append(f"Aborted: {self.scheduler.abort_reason}")
        if self.error:
            lines.append(f"Error: {self.error}")

        lines += ["", "Thresholds:"]
        for result in self.report.results:
            mark = "PASS" if result.passed else "FAIL"
            observed = "n/a" if result.observed is None else f"{result.observed:.4g}"
            lines.append(
                f"  [{mark}] {result.threshold.metric}: {result.threshold.expression} (observed {observed})"
            )
        return "\n".join(lines)


class LoadTestRunner:
    """
    Runs one load test described by LoadTestOptions.

    Usage:
        runner = LoadTestRunner(options)
        result = await runner.run()
        result.raise_for_thresholds()
    """

    def __init__(
        self,
        options: LoadTestOptions,
        *,
        scenario: Scenario | None = None,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        keep_samples: bool = False,
        handle_signals: bool = False,
    ) -> None:
        """
        Initialize load test runner.

        Args:
            options: Frozen test configuration
            scenario: Scenario instance; resolved from options when omitted
            http_client: Shared client; one is created and closed when omitted
            settings: Process settings (tick interval, output dir)
            keep_samples: Keep samples in ``self.stream`` after the run
            handle_signals: Abort on SIGINT/SIGTERM, force-stop on the second signal
        """
        self.options = options
        self.settings = settings or get_settings()
        self.keep_samples = keep_samples
        self.handle_signals = handle_signals

        # Configuration errors surface here, before any worker exists
        self.thresholds: tuple[Threshold, ...] = options.compile_thresholds()
        self.scenario = scenario or resolve_scenario(options.scenario)
        self.scenario_name = options.scenario.name if scenario is None else scenario.name

        self.stream = MetricStream(options.retention)
        self.evaluator = ThresholdEvaluator()
        self.last_report: ThresholdReport | None = None
        self.aborted_by: list[str] = []

        self._http_client = http_client
        self._client: httpx.AsyncClient | None = None
        self._scheduler: VUScheduler | None = None
        self._cancel_requests = 0

    def _build_scheduler(self) -> VUScheduler:
        def factory(vu_id: int) -> ScenarioRunner:
            return ScenarioRunner(
                vu_id,
                self.scenario,
                self.stream,
                self.options.pacing,
                http=self._client,
            )

        return VUScheduler(
            self.options.stages,
            factory,
            start_vus=self.options.start_vus,
            graceful_stop=self.options.graceful_stop,
            ramp_policy=self.options.ramp_policy,
            tick_interval=self.settings.tick_interval,
        )

    def _build_client(self) -> httpx.AsyncClient:
        connections = max(self.options.max_target, 1)
        return httpx.AsyncClient(
            timeout=self.options.http_timeout,
            limits=httpx.Limits(max_connections=connections, max_keepalive_connections=connections),
        )

    async def run(self) -> LoadTestResult:
        """
        Execute the load test.

        Returns:
            LoadTestResult with the final threshold report
        """
        start_time = datetime.now()
        error: str | None = None

        scheduler = self._build_scheduler()
        self._scheduler = scheduler
        self._cancel_requests = 0
        client = self._http_client or self._build_client()
        owns_client = self._http_client is None
        self._client = client

        if self.handle_signals:
            self._setup_signal_handlers()

        logger.info(
            f"Starting load test: scenario={self.scenario_name}, "
            f"stages={len(self.options.stages)}, duration={self.options.total_duration:g}s, "
            f"max VUs={self.options.max_target}"
        )

        try:
            await self.scenario.setup()
            try:
                monitor = asyncio.create_task(self._monitor_thresholds(scheduler))
                try:
                    await scheduler.run()
                finally:
                    monitor.cancel()
                    await asyncio.gather(monitor, return_exceptions=True)
            finally:
                await self.scenario.teardown()

        except asyncio.CancelledError:
            logger.info("Load test cancelled")
            error = "Test cancelled"

        except Exception as e:
            logger.exception("Load test failed")
            error = str(e)

        finally:
            if owns_client:
                await client.aclose()
            if self.handle_signals:
                self._remove_signal_handlers()

        report = self.evaluator.evaluate(self.thresholds, self.stream)
        self.last_report = report
        metrics = {name: dict(stats) for name, stats in self.stream.summary().items()}

        if not self.keep_samples:
            self.stream.clear()

        result = LoadTestResult(
            options=self.options,
            report=report,
            scheduler=scheduler.stats,
            metrics=metrics,
            scenario_name=self.scenario_name,
            start_time=start_time,
            end_time=datetime.now(),
            error=error,
            aborted_by=list(self.aborted_by),
        )

        if self.settings.save_results:
            path = result.save(output_dir=self.settings.output_dir)
            logger.info(f"Results saved to {path}")

        return result

    async def _monitor_thresholds(self, scheduler: VUScheduler) -> None:
        """Evaluate thresholds on the live stream at every interval."""
        if not self.thresholds:
            return

        started = time.monotonic()
        while True:
            await asyncio.sleep(self.options.evaluation_interval)

            report = self.evaluator.evaluate(self.thresholds, self.stream)
            self.last_report = report
            elapsed = time.monotonic() - started

            for result in report.failures:
                threshold = result.threshold
                logger.debug(
                    f"Threshold {threshold.metric}: {threshold.expression} failing "
                    f"(observed {result.observed}) at {elapsed:.1f}s"
                )
                if threshold.abort_on_fail and elapsed >= threshold.delay_abort_eval:
                    label = f"{threshold.metric}: {threshold.expression}"
                    self.aborted_by.append(label)
                    scheduler.abort(f"threshold {label} failed")
                    return

    def cancel(self) -> None:
        """
        Stop the running test.

        The first call stops gracefully; a second call force-cancels
        workers still inside an iteration.
        """
        if self._scheduler is None:
            return
        self._cancel_requests += 1
        if self._cancel_requests == 1:
            self._scheduler.abort("cancelled")
        else:
            logger.warning("Cancel requested again, force-stopping workers")
            self._scheduler.force_stop("cancelled")

    def _setup_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to cancel()."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.cancel)
            except (NotImplementedError, RuntimeError) as e:
                # Not supported on this platform or outside the main thread
                logger.debug(f"Cannot install handler for {signum}: {e}")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                pass


async def run_load_test(options: LoadTestOptions, **kwargs: Any) -> LoadTestResult:
    """
    Convenience function to run a load test.

    Args:
        options: Test configuration
        **kwargs: Passed to LoadTestRunner

    Returns:
        LoadTestResult
    """
    runner = LoadTestRunner(options, **kwargs)
    return await runner.run()
