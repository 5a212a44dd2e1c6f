from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator

from contextrag.core.config import Settings
from contextrag.core.errors import NonRetriableError, WorkflowError
from contextrag.services.resilience import (
    RetryPolicy,
    Throttle,
    ThrottleConfig,
    default_retry_policy,
    retry_async,
)


logger = logging.getLogger(__name__)

Handler = Callable[["WorkflowContext", Any], Awaitable[Any]]


@dataclass(frozen=True)
class BatchConfig:
    """Window over trigger events: closes at ``max_size`` events or after ``timeout_s``."""

    max_size: int
    timeout_s: float
    # Events whose concatenated values for these fields match share a batch.
    key_fields: tuple[str, ...] = ()

    def batch_key(self, data: Any) -> str:
        if not isinstance(data, dict):
            return ""
        return "".join(str(data.get(name) or "") for name in self.key_fields)


@dataclass(frozen=True)
class WorkflowFunction:
    name: str
    trigger: str
    # Batched functions receive a list of event payloads; others receive one payload.
    handler: Handler
    batch: BatchConfig | None = None
    throttle: ThrottleConfig | None = None
    # (event name, payload field) pairs this function waits on via wait_for_event.
    waits_for: tuple[tuple[str, str], ...] = ()


class FunctionRegistry:
    def __init__(self, functions: list[WorkflowFunction] | None = None) -> None:
        self._functions: dict[str, WorkflowFunction] = {}
        for function in functions or []:
            self.register(function)

    def register(self, function: WorkflowFunction) -> WorkflowFunction:
        if function.name in self._functions:
            raise WorkflowError(f"function {function.name} already registered")
        self._functions[function.name] = function
        return function

    def get(self, name: str) -> WorkflowFunction:
        try:
            return self._functions[name]
        except KeyError as exc:
            raise WorkflowError(f"unknown workflow function {name}") from exc

    def triggered_by(self, event: str) -> list[WorkflowFunction]:
        return [fn for fn in self._functions.values() if fn.trigger == event]

    def match_keys(self, event: str) -> set[str]:
        # Payload fields that senders must index so early events reach later waiters.
        return {key for fn in self._functions.values() for name, key in fn.waits_for if name == event}

    def __iter__(self) -> Iterator[WorkflowFunction]:
        return iter(self._functions.values())


def to_json_value(value: Any) -> Any:
    # Step results are persisted as JSON; round-trip so replays see the same shape.
    return json.loads(json.dumps(value))


@dataclass
class WorkflowContext:
    engine: "WorkflowEngine"
    function: WorkflowFunction
    run_id: str
    attempt: int = 1
    _seen_steps: set[str] = field(default_factory=set)

    def _claim(self, name: str) -> None:
        # Memo keys are step names; reusing one inside a run would replay the wrong result.
        if name in self._seen_steps:
            raise WorkflowError(f"duplicate step name {name} in run {self.run_id}")
        self._seen_steps.add(name)

    async def run_step(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        self._claim(name)
        found, value = await self.engine.load_step(self.run_id, name)
        if found:
            logger.debug("step_replayed run_id=%s step=%s", self.run_id, name)
            return value
        value = to_json_value(await fn())
        await self.engine.save_step(self.run_id, name, value)
        return value

    async def invoke(self, name: str, function: str | WorkflowFunction, data: Any) -> Any:
        """Run another function in-process and memoize its result under ``name``."""
        self._claim(name)
        found, value = await self.engine.load_step(self.run_id, name)
        if found:
            return value
        target = function if isinstance(function, WorkflowFunction) else self.engine.registry.get(function)
        value = to_json_value(await self.engine.execute(target, data, run_id=f"{self.run_id}:{name}"))
        await self.engine.save_step(self.run_id, name, value)
        return value

    async def send_event(self, name: str, event: str, data: Any) -> None:
        self._claim(name)
        found, _ = await self.engine.load_step(self.run_id, name)
        if found:
            return
        await self.engine.send(event, data)
        await self.engine.save_step(self.run_id, name, True)

    async def wait_for_event(
        self,
        name: str,
        *,
        event: str,
        match_key: str,
        match_value: str,
        timeout_s: float,
    ) -> Any | None:
        """Suspend until an ``event`` whose ``match_key`` equals ``match_value`` arrives.

        Returns the event payload, or None on timeout. Both outcomes are
        memoized, so a retried run never waits for the same event twice.
        """
        self._claim(name)
        found, value = await self.engine.load_step(self.run_id, name)
        if found:
            return value
        value = await self.engine.wait_for(event, match_key, match_value, timeout_s)
        await self.engine.save_step(self.run_id, name, value)
        return value


class WorkflowEngine(ABC):
    def __init__(
        self,
        registry: FunctionRegistry,
        settings: Settings,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self.retry_policy = retry_policy or default_retry_policy(settings)
        self._throttles: dict[str, Throttle] = {}

    @abstractmethod
    async def load_step(self, run_id: str, step: str) -> tuple[bool, Any]:
        ...

    @abstractmethod
    async def save_step(self, run_id: str, step: str, value: Any) -> None:
        ...

    @abstractmethod
    async def send(self, event: str, data: Any) -> list[str]:
        """Deliver an event to waiters and start every function it triggers."""

    @abstractmethod
    async def wait_for(self, event: str, match_key: str, match_value: str, timeout_s: float) -> Any | None:
        ...

    def _build_throttle(self, function: WorkflowFunction) -> Throttle:
        return Throttle(function.name, function.throttle)

    def throttle_for(self, function: WorkflowFunction) -> Throttle | None:
        if function.throttle is None:
            return None
        throttle = self._throttles.get(function.name)
        if throttle is None:
            throttle = self._build_throttle(function)
            self._throttles[function.name] = throttle
        return throttle

    async def run_once(self, function: WorkflowFunction, data: Any, *, run_id: str, attempt: int = 1) -> Any:
        throttle = self.throttle_for(function)
        if throttle is not None:
            await throttle.acquire()
        context = WorkflowContext(engine=self, function=function, run_id=run_id, attempt=attempt)
        return await function.handler(context, data)

    async def execute(self, function: WorkflowFunction, data: Any, *, run_id: str) -> Any:
        """Run a function to completion with the engine retry policy."""
        attempts = {"n": 0}

        async def _attempt() -> Any:
            attempts["n"] += 1
            return await self.run_once(function, data, run_id=run_id, attempt=attempts["n"])

        def _on_retry(attempt: int, exc: BaseException) -> None:
            logger.warning(
                "workflow_retry function=%s run_id=%s attempt=%s error=%s",
                function.name,
                run_id,
                attempt,
                exc.__class__.__name__,
            )

        try:
            return await retry_async(_attempt, policy=self.retry_policy, on_retry=_on_retry)
        except NonRetriableError as exc:
            logger.error(
                "workflow_failed_non_retriable function=%s run_id=%s error=%s",
                function.name,
                run_id,
                exc,
            )
            raise
