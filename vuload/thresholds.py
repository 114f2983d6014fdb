"""
Threshold Evaluation

Parses threshold expressions such as ``p(95)<70`` or ``rate<0.0001`` into
structured predicates and evaluates them against MetricStream snapshots.

A metric with no samples passes vacuously; its observed value is None.
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from vuload.errors import ConfigurationError
from vuload.metrics import MetricSnapshot, MetricStream

logger = logging.getLogger("vuload.thresholds")


class Aggregation(Enum):
    """Aggregations available in threshold expressions."""

    PERCENTILE = "p"
    RATE = "rate"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    MED = "med"
    COUNT = "count"


_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_EXPRESSION = re.compile(
    r"""^\s*
    (?:
        p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\)
      | (?P<agg>rate|avg|min|max|med|count)
    )
    \s*(?P<op><=|>=|==|!=|<|>)\s*
    (?P<bound>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)
    \s*$""",
    re.VERBOSE,
)


@dataclass(frozen=True)
class Predicate:
    """Pre-parsed threshold predicate."""

    aggregation: Aggregation
    operator: str
    bound: float
    percentile: float | None = None

    def __post_init__(self) -> None:
        if self.aggregation is Aggregation.PERCENTILE and self.percentile is None:
            raise ValueError("percentile predicate needs a percentile")
        if self.operator not in _OPERATORS:
            raise ValueError(f"unknown operator: {self.operator!r}")

    def observe(self, snapshot: MetricSnapshot) -> float:
        """Aggregate the snapshot to the value compared against ``bound``."""
        if self.aggregation is Aggregation.PERCENTILE:
            return snapshot.percentile(self.percentile)
        if self.aggregation is Aggregation.RATE:
            return snapshot.rate
        if self.aggregation is Aggregation.AVG:
            return snapshot.mean
        if self.aggregation is Aggregation.MIN:
            return snapshot.min
        if self.aggregation is Aggregation.MAX:
            return snapshot.max
        if self.aggregation is Aggregation.MED:
            return snapshot.median
        return float(snapshot.count)

    def holds(self, observed: float) -> bool:
        return _OPERATORS[self.operator](observed, self.bound)

    def describe(self) -> str:
        if self.aggregation is Aggregation.PERCENTILE:
            return f"p({self.percentile:g}){self.operator}{self.bound:g}"
        return f"{self.aggregation.value}{self.operator}{self.bound:g}"


@dataclass(frozen=True)
class Threshold:
    """A declared pass/fail condition over one metric."""

    metric: str
    expression: str
    predicate: Predicate
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "expression": self.expression,
            "abort_on_fail": self.abort_on_fail,
            "delay_abort_eval": self.delay_abort_eval,
        }


def parse_predicate(expression: str) -> Predicate:
    """
    Parse a threshold expression.

    Args:
        expression: e.g. ``"p(95)<70"``, ``"rate<0.0001"``, ``"avg<=200"``

    Returns:
        Structured predicate

    Raises:
        ConfigurationError: If the expression cannot be parsed
    """
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ConfigurationError(
            "thresholds",
            [f"cannot parse threshold expression {expression!r}"],
        )

    bound = float(match["bound"])
    op = match["op"]

    if match["pct"] is not None:
        pct = float(match["pct"])
        if not 0 <= pct <= 100:
            raise ConfigurationError(
                "thresholds",
                [f"percentile out of range in {expression!r}: {pct:g}"],
            )
        return Predicate(Aggregation.PERCENTILE, op, bound, percentile=pct)

    return Predicate(Aggregation(match["agg"]), op, bound)


def parse_threshold(
    metric: str,
    expression: str,
    *,
    abort_on_fail: bool = False,
    delay_abort_eval: float = 0.0,
) -> Threshold:
    """Build a Threshold for ``metric`` from its expression."""
    if not metric:
        raise ConfigurationError("thresholds", ["threshold metric name must not be empty"])
    return Threshold(
        metric=metric,
        expression=expression.strip(),
        predicate=parse_predicate(expression),
        abort_on_fail=abort_on_fail,
        delay_abort_eval=delay_abort_eval,
    )


@dataclass(frozen=True)
class ThresholdResult:
    """Outcome of one threshold at one evaluation point."""

    threshold: Threshold
    passed: bool
    observed: float | None
    sample_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.threshold.metric,
            "expression": self.threshold.expression,
            "passed": self.passed,
            "observed": None if self.observed is None else round(self.observed, 6),
            "sample_count": self.sample_count,
        }


class ThresholdReport(Mapping[Threshold, ThresholdResult]):
    """Mapping of threshold to its result, in declaration order."""

    def __init__(self, results: Iterable[ThresholdResult]) -> None:
        self._results: dict[Threshold, ThresholdResult] = {}
        for result in results:
            if result.threshold in self._results:
                raise ConfigurationError(
                    "thresholds",
                    [f"duplicate threshold {result.threshold.metric}: {result.threshold.expression}"],
                )
            self._results[result.threshold] = result

    def __getitem__(self, key: Threshold) -> ThresholdResult:
        return self._results[key]

    def __iter__(self) -> Iterator[Threshold]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    @property
    def results(self) -> list[ThresholdResult]:
        return list(self._results.values())

    @property
    def passed(self) -> bool:
        """True when every threshold passed (vacuously true when empty)."""
        return all(r.passed for r in self._results.values())

    @property
    def failures(self) -> list[ThresholdResult]:
        return [r for r in self._results.values() if not r.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "results": [r.to_dict() for r in self._results.values()],
        }


class ThresholdEvaluator:
    """
    Evaluates thresholds against a MetricStream.

    Usage:
        evaluator = ThresholdEvaluator()
        report = evaluator.evaluate(thresholds, stream)
        if not report.passed:
            ...
    """

    def evaluate_one(self, threshold: Threshold, stream: MetricStream) -> ThresholdResult:
        """Evaluate a single threshold on the live snapshot."""
        snapshot = stream.snapshot(threshold.metric)

        if snapshot.count == 0:
            logger.debug(f"No samples for {threshold.metric}, {threshold.expression} passes vacuously")
            return ThresholdResult(threshold, passed=True, observed=None, sample_count=0)

        observed = threshold.predicate.observe(snapshot)
        return ThresholdResult(
            threshold,
            passed=threshold.predicate.holds(observed),
            observed=observed,
            sample_count=snapshot.count,
        )

    def evaluate(self, thresholds: Iterable[Threshold], stream: MetricStream) -> ThresholdReport:
        """
        Evaluate all thresholds.

        Args:
            thresholds: Declared thresholds
            stream: Stream holding the run's samples

        Returns:
            ThresholdReport mapping each threshold to pass/fail
        """
        return ThresholdReport(self.evaluate_one(t, stream) for t in thresholds)
