"""
vuload - Error Hierarchy

Structured errors for the load-generation core. Every error carries a
stable code and a severity so the CLI and reports can treat them uniformly.

Propagation rules:
- ScenarioInvocationError stays local to one iteration
- SchedulerTimeout is logged, the run continues
- ThresholdViolation is raised only after the run has finished
- ConfigurationError is fatal before any worker is spawned
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from vuload.thresholds import ThresholdReport, ThresholdResult


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"           # Local to one iteration
    MEDIUM = "medium"     # Degrades the run but it continues
    HIGH = "high"         # Run outcome is a failure
    CRITICAL = "critical" # Run cannot start


@dataclass
class ErrorContext:
    """Context attached to an error for reports and logs."""

    timestamp: datetime = field(default_factory=datetime.now)
    vu_id: int | None = None
    iteration: int | None = None
    operation: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "vu_id": self.vu_id,
            "iteration": self.iteration,
            "operation": self.operation,
            "details": self.details,
        }


class VuloadError(Exception):
    """
    Base exception for all vuload errors.

    Provides a machine-readable code, a severity and optional context.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "VULOAD_ERROR",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context.to_dict(),
            "cause": repr(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code!r}, "
            f"message={self.message!r}, "
            f"severity={self.severity.value})"
        )


class ConfigurationError(VuloadError):
    """Malformed stages, thresholds or scenario declaration."""

    def __init__(self, source: str, errors: list[str], **kwargs: Any) -> None:
        super().__init__(
            f"Invalid configuration ({source}): {'; '.join(errors)}",
            code="CONFIGURATION_ERROR",
            severity=ErrorSeverity.CRITICAL,
            **kwargs,
        )
        self.source = source
        self.errors = errors


class ScenarioInvocationError(VuloadError):
    """The scenario callback raised during one iteration."""

    def __init__(self, vu_id: int, iteration: int, cause: BaseException) -> None:
        super().__init__(
            f"VU {vu_id} iteration {iteration} failed: {type(cause).__name__}: {cause}",
            code="SCENARIO_INVOCATION_ERROR",
            severity=ErrorSeverity.LOW,
            context=ErrorContext(vu_id=vu_id, iteration=iteration, operation="scenario.run"),
            cause=cause,
        )
        self.vu_id = vu_id
        self.iteration = iteration

    @property
    def reason(self) -> str:
        """Short reason used as the ``error`` tag on the failed sample."""
        if self.cause is None:
            return "unknown"
        text = str(self.cause)
        return f"{type(self.cause).__name__}: {text}" if text else type(self.cause).__name__


class SchedulerTimeout(VuloadError):
    """A worker did not stop within the graceful stop period."""

    def __init__(self, vu_id: int, grace_seconds: float) -> None:
        super().__init__(
            f"VU {vu_id} did not stop within {grace_seconds:g}s, force-cancelled",
            code="SCHEDULER_TIMEOUT",
            severity=ErrorSeverity.MEDIUM,
            context=ErrorContext(vu_id=vu_id, operation="scheduler.drain"),
        )
        self.vu_id = vu_id
        self.grace_seconds = grace_seconds


class ThresholdViolation(VuloadError):
    """One or more thresholds failed at final evaluation."""

    def __init__(self, report: ThresholdReport) -> None:
        failures: list[ThresholdResult] = report.failures
        described = ", ".join(f"{r.threshold.metric}: {r.threshold.expression}" for r in failures)
        super().__init__(
            f"{len(failures)} threshold(s) failed: {described}",
            code="THRESHOLD_VIOLATION",
            severity=ErrorSeverity.HIGH,
            context=ErrorContext(
                operation="thresholds.evaluate",
                details={"failed": [r.to_dict() for r in failures]},
            ),
        )
        self.report = report
        self.failures = failures
