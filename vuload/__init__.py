"""
vuload - Virtual User Load Generator

Ramps concurrent virtual users through timed stages, records per-request
metrics and gates the run on declarative thresholds such as ``p(95)<70``.

Modules:
- vuload.scheduler: Stage-driven VU scheduler
- vuload.worker: Per-VU scenario loop
- vuload.metrics: Thread-safe metric stream and snapshots
- vuload.thresholds: Threshold parsing and evaluation
- vuload.runner: End-to-end test orchestration
"""

from vuload.config import LoadTestOptions, Pacing, RampPolicy, Stage, load_options
from vuload.errors import (
    ConfigurationError,
    ScenarioInvocationError,
    SchedulerTimeout,
    ThresholdViolation,
    VuloadError,
)
from vuload.metrics import MetricSnapshot, MetricStream, Sample
from vuload.runner import LoadTestResult, LoadTestRunner, run_load_test
from vuload.scenarios import AuthScenario, FunctionScenario, Scenario, VUContext
from vuload.scheduler import SchedulerStats, VUScheduler
from vuload.thresholds import Threshold, ThresholdEvaluator, ThresholdReport, parse_threshold
from vuload.worker import ScenarioRunner

__version__ = "0.1.0"

__all__ = [
    # Config
    "LoadTestOptions",
    "Pacing",
    "RampPolicy",
    "Stage",
    "load_options",
    # Errors
    "VuloadError",
    "ConfigurationError",
    "ScenarioInvocationError",
    "SchedulerTimeout",
    "ThresholdViolation",
    # Metrics
    "MetricStream",
    "MetricSnapshot",
    "Sample",
    # Thresholds
    "Threshold",
    "ThresholdEvaluator",
    "ThresholdReport",
    "parse_threshold",
    # Execution
    "Scenario",
    "FunctionScenario",
    "AuthScenario",
    "VUContext",
    "ScenarioRunner",
    "VUScheduler",
    "SchedulerStats",
    "LoadTestRunner",
    "LoadTestResult",
    "run_load_test",
    "__version__",
]
