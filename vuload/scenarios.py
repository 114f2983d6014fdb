"""
Load Test Scenarios

A scenario is the unit of work one virtual user performs per iteration.
Scenarios receive everything they need through a VUContext:
- the virtual user id and iteration number
- an instrumented HTTP session
- a check recorder

Built-in scenarios:
- Auth: log in as ``user<vu>`` and check for a 200
- Noop: do nothing (scheduler smoke test)
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from vuload.config import ScenarioSpec
from vuload.errors import ConfigurationError
from vuload.metrics import CHECKS, HTTP_REQ_DURATION, HTTP_REQ_FAILED, Sample

logger = logging.getLogger("vuload.scenarios")


class IterationRecorder:
    """Buffers the samples of one iteration until the worker commits them."""

    def __init__(self, base_tags: Mapping[str, Any] | None = None) -> None:
        self.base_tags = dict(base_tags or {})
        self.samples: list[Sample] = []

    def add(
        self,
        metric: str,
        value: float,
        *,
        failed: bool = False,
        tags: Mapping[str, Any] | None = None,
    ) -> Sample:
        sample = Sample(
            metric=metric,
            value=float(value),
            failed=failed,
            tags={**self.base_tags, **(tags or {})},
        )
        self.samples.append(sample)
        return sample


class HttpSession:
    """
    httpx client wrapper that records request timing and outcome.

    Every request emits ``http_req_duration`` (ms) and ``http_req_failed``.
    A request fails when the status is >= 400 or the transport raised.
    Transport errors are re-raised after recording.
    """

    def __init__(self, client: httpx.AsyncClient, recorder: IterationRecorder) -> None:
        self.client = client
        self.recorder = recorder

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        tags: dict[str, Any] = {"method": method.upper(), "url": url}
        start = time.perf_counter()
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            tags.update(status=0, error=type(e).__name__)
            self.recorder.add(HTTP_REQ_DURATION, elapsed_ms, failed=True, tags=tags)
            self.recorder.add(HTTP_REQ_FAILED, 1, failed=True, tags=tags)
            raise

        elapsed_ms = (time.perf_counter() - start) * 1000
        failed = response.status_code >= 400
        tags["status"] = response.status_code
        self.recorder.add(HTTP_REQ_DURATION, elapsed_ms, failed=failed, tags=tags)
        self.recorder.add(HTTP_REQ_FAILED, 1 if failed else 0, failed=failed, tags=tags)
        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)


@dataclass
class VUContext:
    """Per-iteration dependencies handed to a scenario."""

    vu_id: int
    iteration: int
    recorder: IterationRecorder
    http: HttpSession | None = None

    def check(
        self,
        value: Any,
        checks: Mapping[str, Callable[[Any], bool]],
        tags: Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Run named assertions against ``value`` and record one ``checks`` sample each.

        A check that raises counts as failed. Returns True if all passed.
        """
        all_passed = True
        for name, condition in checks.items():
            try:
                passed = bool(condition(value))
            except Exception as e:
                logger.debug(f"Check {name!r} raised on VU {self.vu_id}: {e}")
                passed = False
            self.recorder.add(CHECKS, 1 if passed else 0, failed=not passed, tags={**(tags or {}), "check": name})
            all_passed = all_passed and passed
        return all_passed

    def add(
        self,
        metric: str,
        value: float,
        *,
        failed: bool = False,
        tags: Mapping[str, Any] | None = None,
    ) -> None:
        """Record a custom metric sample for this iteration."""
        self.recorder.add(metric, value, failed=failed, tags=tags)


@dataclass
class Scenario(ABC):
    """
    Base class for load test scenarios.

    ``setup`` and ``teardown`` run once per test; ``run`` runs once per
    iteration of every virtual user and must not rely on global state.
    """

    name: str = "scenario"
    description: str = ""

    async def setup(self) -> None:
        """Prepare shared state before any worker starts."""

    @abstractmethod
    async def run(self, ctx: VUContext) -> None:
        """
        Execute one iteration.

        Args:
            ctx: Per-iteration context (vu id, http session, checks)
        """

    async def teardown(self) -> None:
        """Release shared state after all workers stopped."""


ScenarioFn = Callable[[VUContext], Awaitable[None] | None]


@dataclass
class FunctionScenario(Scenario):
    """
    Adapts a plain callable into a Scenario.

    Coroutine functions are awaited; synchronous callables run in a worker
    thread so they cannot block the event loop.
    """

    name: str = "function"
    description: str = "Wraps a plain scenario function"
    fn: ScenarioFn | None = None

    async def run(self, ctx: VUContext) -> None:
        if self.fn is None:
            raise RuntimeError("FunctionScenario has no function")
        if inspect.iscoroutinefunction(self.fn):
            await self.fn(ctx)
        else:
            result = await asyncio.to_thread(self.fn, ctx)
            if inspect.isawaitable(result):
                await result


@dataclass
class NoopScenario(Scenario):
    """Does nothing. Useful to exercise the scheduler alone."""

    name: str = "noop"
    description: str = "No requests, exercises scheduling only"

    async def run(self, ctx: VUContext) -> None:
        await asyncio.sleep(0)


@dataclass
class AuthScenario(Scenario):
    """
    Authenticate each virtual user against ``POST <base_url><path>``.

    The username is derived from the VU id so every virtual user has a
    distinct, stable identity.
    """

    name: str = "auth"
    description: str = "POST credentials for user<vu> and check for a 200"
    base_url: str = "http://localhost:8080"
    path: str = "/api/auth"
    password: str = "testpassword"
    username_template: str = "user{vu}"

    async def run(self, ctx: VUContext) -> None:
        if ctx.http is None:
            raise RuntimeError("AuthScenario requires an HTTP session")

        payload = {
            "username": self.username_template.format(vu=ctx.vu_id),
            "password": self.password,
        }
        response = await ctx.http.post(
            f"{self.base_url.rstrip('/')}{self.path}",
            json=payload,
            headers={"Content-Type": "application/json"},
        )

        ctx.check(response, {
            "auth status is 200": lambda r: r.status_code == 200,
        })


# Scenario registry
SCENARIOS: dict[str, type[Scenario]] = {
    "auth": AuthScenario,
    "noop": NoopScenario,
}


def get_scenario(name: str, **kwargs: Any) -> Scenario:
    """
    Get a built-in scenario by name.

    Args:
        name: Scenario name
        **kwargs: Override scenario parameters

    Returns:
        Configured scenario instance
    """
    if name not in SCENARIOS:
        raise ConfigurationError(
            "scenario",
            [f"unknown scenario: {name}. Available: {list(SCENARIOS.keys())}"],
        )

    try:
        return SCENARIOS[name](**kwargs)
    except TypeError as e:
        raise ConfigurationError("scenario", [f"bad options for {name}: {e}"]) from e


def _import_target(path: str) -> Any:
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError("scenario", [f"expected 'module:attribute', got {path!r}"])
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError("scenario", [f"cannot import {module_name}: {e}"]) from e
    try:
        return getattr(module, attr)
    except AttributeError as e:
        raise ConfigurationError("scenario", [f"{module_name} has no attribute {attr!r}"]) from e


def resolve_scenario(spec: ScenarioSpec) -> Scenario:
    """
    Turn a scenario declaration into a Scenario instance.

    ``spec.name`` is either a registry name or ``module:attribute`` pointing
    at a Scenario subclass, a Scenario instance, or a plain function.
    """
    if ":" not in spec.name:
        return get_scenario(spec.name, **spec.options)

    target = _import_target(spec.name)

    if isinstance(target, Scenario):
        return target
    if isinstance(target, type) and issubclass(target, Scenario):
        try:
            return target(**spec.options)
        except TypeError as e:
            raise ConfigurationError("scenario", [f"bad options for {spec.name}: {e}"]) from e
    if callable(target):
        return FunctionScenario(name=spec.name, fn=target)

    raise ConfigurationError("scenario", [f"{spec.name} is not a scenario or callable"])


def list_scenarios() -> list[dict[str, str]]:
    """List available scenarios."""
    return [
        {"name": name, "description": cls.description}
        for name, cls in SCENARIOS.items()
    ]
