"""
Load test configuration.

Declarative test options (stages, thresholds, scenario, pacing) are loaded
once from YAML/JSON into a frozen pydantic model and never mutated after
the run starts. Process-level settings come from ``VULOAD_*`` environment
variables.
"""

from __future__ import annotations

import os
import random
import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from vuload.errors import ConfigurationError
from vuload.thresholds import Predicate, Threshold, parse_predicate, parse_threshold

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """
    Convert a duration to seconds.

    Accepts numbers (seconds) and strings such as ``"5s"``, ``"250ms"``,
    ``"1m30s"`` or ``"2h"``. A bare numeric string is taken as seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip().lower()
    try:
        return float(text)
    except ValueError:
        pass

    if text.startswith("-"):
        raise ValueError(f"duration must not be negative: {value!r}")

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


DurationSeconds = Annotated[float, BeforeValidator(parse_duration)]
NonNegativeDuration = Annotated[float, BeforeValidator(parse_duration), Field(ge=0)]


class RampPolicy(StrEnum):
    """How the scheduler moves between stage targets."""

    LINEAR = "linear"
    IMMEDIATE = "immediate"


class Stage(BaseModel):
    """A time-bounded ramp target for concurrency."""

    duration: DurationSeconds = Field(gt=0)
    target: int = Field(ge=0)

    model_config = ConfigDict(frozen=True)


class Pacing(BaseModel):
    """Pause between iterations: fixed, or uniform between min and max."""

    fixed: NonNegativeDuration | None = None
    minimum: NonNegativeDuration | None = Field(default=None, alias="min")
    maximum: NonNegativeDuration | None = Field(default=None, alias="max")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _from_scalar(cls, data: Any) -> Any:
        if isinstance(data, (int, float, str)) and not isinstance(data, bool):
            return {"fixed": data}
        return data

    @model_validator(mode="after")
    def _check_range(self) -> Pacing:
        if self.fixed is None:
            if self.minimum is None or self.maximum is None:
                raise ValueError("pacing needs either a fixed delay or both min and max")
            if self.minimum > self.maximum:
                raise ValueError("pacing min must not exceed max")
        return self

    def next_delay(self, rng: random.Random | None = None) -> float:
        """Delay in seconds before the next iteration."""
        if self.fixed is not None:
            return self.fixed
        if self.minimum is None or self.maximum is None:
            raise ValueError("pacing needs either a fixed delay or both min and max")
        return (rng or random).uniform(self.minimum, self.maximum)


class ThresholdEntry(BaseModel):
    """One threshold declaration as written in the config file."""

    threshold: str
    abort_on_fail: bool = Field(default=False, alias="abortOnFail")
    delay_abort_eval: DurationSeconds = Field(default=0.0, alias="delayAbortEval", ge=0)

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"threshold": data}
        return data

    @field_validator("threshold")
    @classmethod
    def _parseable(cls, v: str) -> str:
        try:
            parse_predicate(v)
        except ConfigurationError as e:
            raise ValueError("; ".join(e.errors)) from e
        return v


class ScenarioSpec(BaseModel):
    """Which scenario to run and the keyword options passed to it."""

    name: str = "noop"
    options: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _from_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data


class LoadTestOptions(BaseModel):
    """
    Complete, immutable description of one load test.

    Usage:
        options = load_options("load_test.yaml")
        runner = LoadTestRunner(options)
    """

    stages: tuple[Stage, ...] = Field(min_length=1)
    thresholds: dict[str, tuple[ThresholdEntry, ...]] = Field(default_factory=dict)
    scenario: ScenarioSpec = Field(default_factory=ScenarioSpec)
    pacing: Pacing = Field(default_factory=lambda: Pacing(fixed=0.0))
    graceful_stop: DurationSeconds = Field(default=30.0, alias="gracefulStop", ge=0)
    start_vus: int = Field(default=0, alias="startVUs", ge=0)
    ramp_policy: RampPolicy = Field(default=RampPolicy.LINEAR, alias="rampPolicy")
    evaluation_interval: DurationSeconds = Field(default=1.0, alias="evaluationInterval", gt=0)
    retention: int | None = Field(default=None, gt=0)
    http_timeout: DurationSeconds = Field(default=60.0, alias="httpTimeout", gt=0)

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    @field_validator("thresholds", mode="before")
    @classmethod
    def _wrap_single(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {k: [e] if isinstance(e, (str, dict)) else e for k, e in v.items()}
        return v

    @property
    def total_duration(self) -> float:
        """Sum of all stage durations in seconds."""
        return sum(s.duration for s in self.stages)

    @property
    def max_target(self) -> int:
        """Largest concurrency any stage (or start_vus) asks for."""
        return max([self.start_vus, *(s.target for s in self.stages)])

    def compile_thresholds(self) -> tuple[Threshold, ...]:
        """
        Parsed thresholds in declaration order.

        Raises:
            ConfigurationError: If one metric declares the same predicate twice
        """
        compiled: list[Threshold] = []
        seen: set[tuple[str, Predicate]] = set()
        duplicates: list[str] = []

        for metric, entries in self.thresholds.items():
            for entry in entries:
                threshold = parse_threshold(
                    metric,
                    entry.threshold,
                    abort_on_fail=entry.abort_on_fail,
                    delay_abort_eval=entry.delay_abort_eval,
                )
                key = (metric, threshold.predicate)
                if key in seen:
                    duplicates.append(f"thresholds.{metric}: duplicate threshold {entry.threshold!r}")
                seen.add(key)
                compiled.append(threshold)

        if duplicates:
            raise ConfigurationError("thresholds", duplicates)
        return tuple(compiled)


def _format_validation_error(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        messages.append(f"{location}: {item['msg']}")
    return messages


def options_from_mapping(data: Any, source: str = "<mapping>") -> LoadTestOptions:
    """
    Validate raw configuration data.

    Raises:
        ConfigurationError: If the data is not a valid load test definition
    """
    if not isinstance(data, dict):
        raise ConfigurationError(source, ["configuration must be a mapping"])

    try:
        return LoadTestOptions.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(source, _format_validation_error(e)) from e


def load_options(path: str | Path) -> LoadTestOptions:
    """
    Load load test options from a YAML or JSON file.

    Args:
        path: Path to the configuration file

    Returns:
        Validated, frozen LoadTestOptions

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(str(path), ["file not found"])

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(str(path), [f"YAML parse error: {e}"]) from e

    return options_from_mapping(data, str(path))


@dataclass
class Settings:
    """Process-level settings read from the environment."""

    log_level: str = field(default_factory=lambda: os.getenv("VULOAD_LOG_LEVEL", "INFO").upper())
    output_dir: str = field(default_factory=lambda: os.getenv("VULOAD_OUTPUT_DIR", ".vuload-results"))
    tick_interval: float = field(default_factory=lambda: float(os.getenv("VULOAD_TICK_INTERVAL", "0.1")))
    save_results: bool = field(
        default_factory=lambda: os.getenv("VULOAD_SAVE_RESULTS", "false").lower() in ("true", "1", "yes")
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings, reading the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget cached settings (used by tests)."""
    global _settings
    _settings = None
