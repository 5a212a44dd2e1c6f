from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from contextrag.core.config import Settings
from contextrag.services.resilience import RetryPolicy
from contextrag.workflow.base import FunctionRegistry, WorkflowEngine, WorkflowFunction


logger = logging.getLogger(__name__)


@dataclass
class RunRecord:
    function: str
    status: str = "running"
    result: Any = None
    error: BaseException | None = None


class InlineWorkflowEngine(WorkflowEngine):
    """Single-process engine: memo in dicts, events through an in-memory mailbox.

    Used by tests and ``ingest_execution_mode=inline``. Nothing survives a
    process restart, which is the trade for running without Redis.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        settings: Settings,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(registry, settings, retry_policy=retry_policy)
        self._steps: dict[str, dict[str, Any]] = defaultdict(dict)
        # Events that arrived before anyone waited on them, keyed by (event, field, value).
        self._mailbox: dict[tuple[str, str, str], deque[Any]] = defaultdict(deque)
        self._waiters: dict[tuple[str, str, str], deque[asyncio.Future]] = defaultdict(deque)
        self._batches: dict[tuple[str, str], list[Any]] = {}
        self._batch_timers: dict[tuple[str, str], asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self.runs: dict[str, RunRecord] = {}

    async def load_step(self, run_id: str, step: str) -> tuple[bool, Any]:
        steps = self._steps.get(run_id)
        if steps is None or step not in steps:
            return False, None
        return True, steps[step]

    async def save_step(self, run_id: str, step: str, value: Any) -> None:
        self._steps[run_id][step] = value

    def _deliver(self, event: str, data: Any) -> None:
        if not isinstance(data, dict):
            return
        for match_key in self.registry.match_keys(event):
            value = data.get(match_key)
            if value is None:
                continue
            slot = (event, match_key, str(value))
            waiters = self._waiters.get(slot)
            while waiters:
                waiter = waiters.popleft()
                if not waiter.done():
                    waiter.set_result(data)
                    break
            else:
                self._mailbox[slot].append(data)

    async def wait_for(self, event: str, match_key: str, match_value: str, timeout_s: float) -> Any | None:
        slot = (event, match_key, str(match_value))
        buffered = self._mailbox.get(slot)
        if buffered:
            return buffered.popleft()
        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters[slot].append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning("wait_for_event_timeout event=%s %s=%s", event, match_key, match_value)
            return None
        finally:
            if waiter in self._waiters.get(slot, ()):
                self._waiters[slot].remove(waiter)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_recorded(self, function: WorkflowFunction, data: Any, run_id: str) -> None:
        record = self.runs[run_id]
        try:
            record.result = await self.execute(function, data, run_id=run_id)
            record.status = "completed"
        except Exception as exc:  # noqa: BLE001 - top-level runs report failure on their record
            record.status = "failed"
            record.error = exc
            logger.exception("workflow_run_failed function=%s run_id=%s", function.name, run_id)

    def start(self, function: WorkflowFunction, data: Any, *, run_id: str | None = None) -> str:
        run_id = run_id or f"{function.name}:{uuid4()}"
        self.runs[run_id] = RunRecord(function=function.name)
        self._spawn(self._run_recorded(function, data, run_id))
        return run_id

    def _flush(self, slot: tuple[str, str]) -> str | None:
        events = self._batches.pop(slot, None)
        timer = self._batch_timers.pop(slot, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        if not events:
            return None
        function = self.registry.get(slot[0])
        logger.info("batch_flushed function=%s key=%s size=%s", function.name, slot[1], len(events))
        return self.start(function, events)

    async def _flush_after(self, slot: tuple[str, str], timeout_s: float) -> None:
        await asyncio.sleep(timeout_s)
        self._flush(slot)

    def _add_to_batch(self, function: WorkflowFunction, data: Any) -> str | None:
        batch = function.batch
        slot = (function.name, batch.batch_key(data))
        events = self._batches.setdefault(slot, [])
        events.append(data)
        if len(events) >= batch.max_size:
            return self._flush(slot)
        if slot not in self._batch_timers:
            self._batch_timers[slot] = self._spawn(self._flush_after(slot, batch.timeout_s))
        return None

    async def send(self, event: str, data: Any) -> list[str]:
        self._deliver(event, data)
        run_ids: list[str] = []
        for function in self.registry.triggered_by(event):
            if function.batch is not None:
                run_id = self._add_to_batch(function, data)
            else:
                run_id = self.start(function, data)
            if run_id:
                run_ids.append(run_id)
        return run_ids

    async def run(self, name: str, data: Any, *, run_id: str | None = None) -> Any:
        """Execute one function to completion in the caller's task and return its result."""
        function = self.registry.get(name)
        return await self.execute(function, data, run_id=run_id or f"{name}:{uuid4()}")

    async def drain(self, timeout_s: float = 30.0) -> None:
        # Wait until spawned runs and open batch windows have settled.
        async def _settle() -> None:
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await asyncio.wait_for(_settle(), timeout=timeout_s)
