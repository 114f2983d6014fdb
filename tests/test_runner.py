"""
Tests for vuload.runner module.

End-to-end runs with short stages and in-process scenarios.
"""

import asyncio
import json
from dataclasses import dataclass

import httpx
import pytest

from conftest import SleepScenario
from vuload.config import Settings, options_from_mapping
from vuload.errors import ConfigurationError, ThresholdViolation
from vuload.metrics import CHECKS, HTTP_REQ_DURATION, HTTP_REQ_FAILED, ITERATION_DURATION
from vuload.runner import LoadTestResult, LoadTestRunner, run_load_test
from vuload.scenarios import FunctionScenario, Scenario, VUContext


def make_options(**overrides):
    data = {
        "stages": [{"duration": "300ms", "target": 3}],
        "pacing": "5ms",
        "gracefulStop": "1s",
        "evaluationInterval": "50ms",
    }
    data.update(overrides)
    return options_from_mapping(data)


def auth_client(status_code=200, seen=None):
    """AsyncClient answering every request with ``status_code``."""
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(json.loads(request.content))
        return httpx.Response(status_code, json={"ok": status_code == 200})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@dataclass
class CountingScenario(Scenario):
    """Counts lifecycle hook calls."""

    name: str = "counting"
    setups: int = 0
    teardowns: int = 0

    async def setup(self) -> None:
        self.setups += 1

    async def run(self, ctx: VUContext) -> None:
        ctx.add("counted", 1)

    async def teardown(self) -> None:
        self.teardowns += 1


@dataclass
class BrokenSetupScenario(Scenario):
    """Fails before any worker starts."""

    name: str = "broken"

    async def setup(self) -> None:
        raise RuntimeError("fixture server unavailable")

    async def run(self, ctx: VUContext) -> None:
        pass


class TestThresholdGating:
    """Tests for threshold outcomes of complete runs."""

    @pytest.mark.asyncio
    async def test_fast_requests_pass_p95(self, fast_settings):
        """Constant 10ms samples satisfy p(95)<70."""
        options = make_options(thresholds={HTTP_REQ_DURATION: "p(95)<70"})
        runner = LoadTestRunner(options, scenario=SleepScenario(), settings=fast_settings)

        result = await runner.run()

        assert result.passed
        assert result.error is None
        assert result.report.results[0].observed == pytest.approx(10.0)
        result.raise_for_thresholds()

    @pytest.mark.asyncio
    async def test_slow_tail_fails_p95(self, fast_settings):
        """Every tenth iteration at 500ms pushes p95 past the bound."""
        options = make_options(thresholds={HTTP_REQ_DURATION: "p(95)<70"})
        scenario = SleepScenario(slow_every=10, slow_ms=500.0)
        runner = LoadTestRunner(options, scenario=scenario, settings=fast_settings)

        result = await runner.run()

        assert not result.passed
        failure = result.report.failures[0]
        assert failure.threshold.metric == HTTP_REQ_DURATION
        assert failure.observed > 70

        with pytest.raises(ThresholdViolation) as exc_info:
            result.raise_for_thresholds()
        assert exc_info.value.failures == [failure]

    @pytest.mark.asyncio
    async def test_unauthorized_fails_error_rate(self, fast_settings):
        """401 responses count as failed requests."""
        options = make_options(
            scenario="auth",
            thresholds={HTTP_REQ_FAILED: "rate<0.0001"},
        )
        async with auth_client(401) as client:
            runner = LoadTestRunner(options, http_client=client, settings=fast_settings, keep_samples=True)
            result = await runner.run()

        assert not result.passed
        assert result.report.results[0].observed == 1.0
        checks = runner.stream.snapshot(CHECKS)
        assert checks.count > 0
        assert checks.rate == 1.0

    @pytest.mark.asyncio
    async def test_successful_auth_run(self, fast_settings):
        """Each VU logs in as its own user and every threshold passes."""
        seen = []
        options = make_options(
            scenario="auth",
            thresholds={
                HTTP_REQ_DURATION: ["p(95)<1000"],
                HTTP_REQ_FAILED: ["rate<0.0001"],
                CHECKS: ["rate==0"],
            },
        )
        async with auth_client(200, seen) as client:
            result = await LoadTestRunner(options, http_client=client, settings=fast_settings).run()

        assert result.passed
        assert {body["username"] for body in seen} == {"user1", "user2", "user3"}
        assert {body["password"] for body in seen} == {"testpassword"}
        assert result.metrics[HTTP_REQ_FAILED]["count"] == len(seen)

    @pytest.mark.asyncio
    async def test_no_samples_passes(self, fast_settings):
        """A threshold on a metric nobody emits passes vacuously."""
        options = make_options(thresholds={"never_emitted": "p(95)<1"})
        result = await LoadTestRunner(options, scenario=SleepScenario(), settings=fast_settings).run()

        assert result.passed
        assert result.report.results[0].observed is None


class TestAbortOnFail:
    """Tests for thresholds that end the run early."""

    @pytest.mark.asyncio
    async def test_abort_on_fail_stops_run(self, fast_settings):
        """A failing abortOnFail threshold ends a long run quickly."""
        options = make_options(
            stages=[{"duration": "30s", "target": 2}],
            scenario="auth",
            thresholds={HTTP_REQ_FAILED: {"threshold": "rate<0.0001", "abortOnFail": True}},
        )
        async with auth_client(500) as client:
            result = await LoadTestRunner(options, http_client=client, settings=fast_settings).run()

        assert result.duration_seconds < 5
        assert result.scheduler.aborted
        assert result.aborted_by == [f"{HTTP_REQ_FAILED}: rate<0.0001"]
        assert not result.passed

    @pytest.mark.asyncio
    async def test_delay_abort_eval_postpones_abort(self, fast_settings):
        """No abort happens before delayAbortEval has elapsed."""
        options = make_options(
            stages=[{"duration": "400ms", "target": 2}],
            scenario="auth",
            thresholds={
                HTTP_REQ_FAILED: {"threshold": "rate<0.0001", "abortOnFail": True, "delayAbortEval": "10s"},
            },
        )
        async with auth_client(500) as client:
            result = await LoadTestRunner(options, http_client=client, settings=fast_settings).run()

        assert not result.scheduler.aborted
        assert result.aborted_by == []
        assert not result.passed

    @pytest.mark.asyncio
    async def test_passing_threshold_does_not_abort(self, fast_settings):
        options = make_options(
            thresholds={ITERATION_DURATION: {"threshold": "max<10000", "abortOnFail": True}},
        )
        result = await LoadTestRunner(options, scenario=SleepScenario(), settings=fast_settings).run()

        assert result.passed
        assert not result.scheduler.aborted

    @pytest.mark.asyncio
    async def test_cancel(self, fast_settings):
        """cancel() aborts the scheduler like a signal would."""
        options = make_options(stages=[{"duration": "30s", "target": 1}])
        runner = LoadTestRunner(options, scenario=SleepScenario(), settings=fast_settings)

        async def cancel_soon():
            await asyncio.sleep(0.1)
            runner.cancel()

        canceller = asyncio.create_task(cancel_soon())
        result = await runner.run()
        await canceller

        assert result.scheduler.aborted
        assert result.scheduler.abort_reason == "cancelled"
        assert result.duration_seconds < 5

    @pytest.mark.asyncio
    async def test_second_cancel_forces_stop(self, fast_settings):
        """A repeated cancel does not wait out a long graceful stop."""
        async def stuck(ctx):
            await asyncio.sleep(60)

        options = make_options(
            stages=[{"duration": "30s", "target": 2}], gracefulStop="30s", rampPolicy="immediate"
        )
        runner = LoadTestRunner(options, scenario=FunctionScenario(fn=stuck), settings=fast_settings)

        async def cancel_twice():
            await asyncio.sleep(0.1)
            runner.cancel()
            await asyncio.sleep(0.1)
            runner.cancel()

        canceller = asyncio.create_task(cancel_twice())
        result = await runner.run()
        await canceller

        assert result.duration_seconds < 5
        assert result.scheduler.forced_cancellations == 2
        assert result.error is None


class TestLoadTestRunner:
    """Tests for runner lifecycle and configuration handling."""

    def test_unknown_scenario_rejected_at_construction(self, fast_settings):
        options = make_options(scenario="does-not-exist")

        with pytest.raises(ConfigurationError):
            LoadTestRunner(options, settings=fast_settings)

    def test_duplicate_thresholds_rejected_at_construction(self, fast_settings):
        options = make_options(thresholds={HTTP_REQ_DURATION: ["p(95)<70", "p(95)<70"]})

        with pytest.raises(ConfigurationError):
            LoadTestRunner(options, scenario=SleepScenario(), settings=fast_settings)

    def test_scenario_options_forwarded(self, fast_settings):
        options = make_options(scenario={"name": "auth", "options": {"base_url": "http://sut:9000"}})
        runner = LoadTestRunner(options, settings=fast_settings)

        assert runner.scenario.base_url == "http://sut:9000"
        assert runner.scenario_name == "auth"

    @pytest.mark.asyncio
    async def test_setup_and_teardown_run_once(self, fast_settings):
        scenario = CountingScenario()
        result = await LoadTestRunner(make_options(), scenario=scenario, settings=fast_settings).run()

        assert scenario.setups == 1
        assert scenario.teardowns == 1
        assert result.metrics["counted"]["count"] > 0
        assert result.scenario_name == "counting"

    @pytest.mark.asyncio
    async def test_setup_failure_reported_as_error(self, fast_settings):
        """A failing setup yields an errored result without workers."""
        result = await LoadTestRunner(
            make_options(), scenario=BrokenSetupScenario(), settings=fast_settings
        ).run()

        assert result.error == "fixture server unavailable"
        assert result.scheduler.spawned == 0

    @pytest.mark.asyncio
    async def test_samples_cleared_unless_kept(self, fast_settings):
        runner = LoadTestRunner(make_options(), scenario=SleepScenario(), settings=fast_settings)
        await runner.run()
        assert runner.stream.metrics() == []

        keeper = LoadTestRunner(
            make_options(), scenario=SleepScenario(), settings=fast_settings, keep_samples=True
        )
        await keeper.run()
        assert ITERATION_DURATION in keeper.stream.metrics()

    @pytest.mark.asyncio
    async def test_retention_bounds_memory(self, fast_settings):
        """With retention set, aggregates cover the newest samples only."""
        options = make_options(retention=5)
        runner = LoadTestRunner(options, scenario=SleepScenario(delay=0.001), settings=fast_settings, keep_samples=True)
        result = await runner.run()

        assert result.metrics[ITERATION_DURATION]["count"] == 5
        assert runner.stream.dropped(ITERATION_DURATION) == result.scheduler.iterations - 5

    @pytest.mark.asyncio
    async def test_run_load_test(self, fast_settings):
        result = await run_load_test(make_options(), scenario=SleepScenario(), settings=fast_settings)

        assert isinstance(result, LoadTestResult)
        assert result.scheduler.iterations > 0


class TestLoadTestResult:
    """Tests for result export."""

    @pytest.mark.asyncio
    async def test_to_dict_and_save(self, fast_settings, tmp_path):
        options = make_options(thresholds={HTTP_REQ_DURATION: "p(95)<70"})
        result = await LoadTestRunner(options, scenario=SleepScenario(), settings=fast_settings).run()

        path = result.save(tmp_path / "out" / "result.json")
        data = json.loads(path.read_text())

        assert data["passed"] is True
        assert data["scenario_name"] == "sleep"
        assert data["options"]["gracefulStop"] == 1.0
        assert data["thresholds"]["passed"] is True
        assert HTTP_REQ_DURATION in data["metrics"]
        assert data["scheduler"]["peak_vus"] == 3

    @pytest.mark.asyncio
    async def test_saved_automatically_when_enabled(self, tmp_path, monkeypatch):
        """Results go to the output_dir of the settings given to the runner."""
        monkeypatch.chdir(tmp_path)
        output_dir = tmp_path / "results"
        settings = Settings(log_level="INFO", output_dir=str(output_dir), tick_interval=0.02, save_results=True)
        await LoadTestRunner(make_options(), scenario=SleepScenario(), settings=settings).run()

        files = list(output_dir.glob("load_sleep_*.json"))
        assert len(files) == 1
        assert not (tmp_path / ".vuload-results").exists()

    @pytest.mark.asyncio
    async def test_summary(self, fast_settings):
        options = make_options(thresholds={ITERATION_DURATION: "max<0"})
        result = await LoadTestRunner(options, scenario=SleepScenario(), settings=fast_settings).run()

        summary = result.summary()
        assert "=== Load Test Results ===" in summary
        assert f"[FAIL] {ITERATION_DURATION}: max<0" in summary


class TestScaledTimeline:
    """The source ramp shape on a compressed timeline."""

    @pytest.mark.asyncio
    async def test_fifty_to_hundred_vus(self, fast_settings):
        options = make_options(
            stages=[{"duration": "200ms", "target": 50}, {"duration": "200ms", "target": 100}],
            pacing="10ms",
            thresholds={HTTP_REQ_DURATION: "p(95)<70"},
        )
        result = await LoadTestRunner(options, scenario=SleepScenario(), settings=fast_settings).run()

        assert result.passed
        assert 50 < result.scheduler.peak_vus <= 100
