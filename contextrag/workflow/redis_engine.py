from __future__ import annotations

import json
import logging
import math
import time
from typing import Any
from uuid import uuid4

from arq import Retry
from arq.connections import ArqRedis

from contextrag.core.config import Settings
from contextrag.core.errors import NonRetriableError
from contextrag.services.resilience import RetryPolicy, Throttle, backoff_seconds, is_retryable
from contextrag.workflow.base import FunctionRegistry, WorkflowEngine, WorkflowFunction


logger = logging.getLogger(__name__)

RUN_FUNCTION_JOB = "run_function"
FLUSH_BATCH_JOB = "flush_batch"

# Move up to ARGV[1] items from the open batch list into a per-flush list exactly once,
# so a retried flush job replays the same events instead of taking new ones.
_TAKE_BATCH_LUA = r"""
if redis.call("EXISTS", KEYS[2]) == 1 then
  return redis.call("LRANGE", KEYS[2], 0, -1)
end
local items = redis.call("LRANGE", KEYS[1], 0, tonumber(ARGV[1]) - 1)
if #items == 0 then
  return items
end
redis.call("LTRIM", KEYS[1], #items, -1)
redis.call("RPUSH", KEYS[2], unpack(items))
redis.call("EXPIRE", KEYS[2], tonumber(ARGV[2]))
return items
"""


def _decode(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    return str(value)


class RedisWorkflowEngine(WorkflowEngine):
    """Durable engine on Redis and arq.

    Step results live in one Redis hash per run; events are pushed onto one
    list per (event, match field, value) and consumed with BLPOP; batch
    windows are Redis lists flushed by deferred arq jobs. Function runs are arq
    jobs, retried through arq ``Retry`` for anything not marked non-retriable.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        settings: Settings,
        *,
        redis: ArqRedis,
        retry_policy: RetryPolicy | None = None,
        clock: Any | None = None,
    ) -> None:
        super().__init__(registry, settings, retry_policy=retry_policy)
        self._redis = redis
        self._prefix = settings.workflow_redis_prefix
        self._ttl_s = settings.workflow_state_ttl_s
        self._queue_name = settings.ingest_queue_name
        self._clock = clock or time.time

    def _steps_key(self, run_id: str) -> str:
        return f"{self._prefix}:run:{run_id}:steps"

    def _event_key(self, event: str, match_key: str, match_value: str) -> str:
        return f"{self._prefix}:event:{event}:{match_key}:{match_value}"

    def _batch_key(self, function: str, key: str) -> str:
        return f"{self._prefix}:batch:{function}:{key}"

    def _taken_key(self, flush_id: str) -> str:
        return f"{self._prefix}:batch-taken:{flush_id}"

    def _build_throttle(self, function: WorkflowFunction) -> Throttle:
        # Shared bucket so the limit holds across every worker process.
        return Throttle(
            function.name,
            function.throttle,
            redis=self._redis,
            key_prefix=f"{self._prefix}:throttle",
        )

    async def load_step(self, run_id: str, step: str) -> tuple[bool, Any]:
        raw = await self._redis.hget(self._steps_key(run_id), step)
        if raw is None:
            return False, None
        return True, json.loads(_decode(raw))

    async def save_step(self, run_id: str, step: str, value: Any) -> None:
        key = self._steps_key(run_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, step, json.dumps(value))
            pipe.expire(key, self._ttl_s)
            await pipe.execute()

    async def _deliver(self, event: str, data: Any) -> None:
        if not isinstance(data, dict):
            return
        payload = json.dumps(data)
        for match_key in self.registry.match_keys(event):
            value = data.get(match_key)
            if value is None:
                continue
            key = self._event_key(event, match_key, str(value))
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.rpush(key, payload)
                pipe.expire(key, self._ttl_s)
                await pipe.execute()

    async def wait_for(self, event: str, match_key: str, match_value: str, timeout_s: float) -> Any | None:
        key = self._event_key(event, match_key, str(match_value))
        # BLPOP timeout 0 means forever; keep at least one second.
        result = await self._redis.blpop([key], timeout=max(1, int(math.ceil(timeout_s))))
        if result is None:
            logger.warning("wait_for_event_timeout event=%s %s=%s", event, match_key, match_value)
            return None
        _, raw = result
        return json.loads(_decode(raw))

    async def _enqueue(self, job: str, *args: Any, job_id: str | None = None, defer_s: float | None = None) -> None:
        kwargs: dict[str, Any] = {"_queue_name": self._queue_name}
        if job_id is not None:
            kwargs["_job_id"] = job_id
        if defer_s is not None:
            kwargs["_defer_by"] = defer_s
        # arq returns None when the job id already exists; that is the dedup we want.
        await self._redis.enqueue_job(job, *args, **kwargs)

    async def _schedule_flush(self, function: WorkflowFunction, batch_key: str, size: int) -> None:
        batch = function.batch
        if size >= batch.max_size:
            await self._enqueue(FLUSH_BATCH_JOB, function.name, batch_key, job_id=f"flush:{uuid4()}")
            return
        # One deferred flush per window; later events in the same window reuse its job id.
        window = int(self._clock() // max(batch.timeout_s, 0.001))
        await self._enqueue(
            FLUSH_BATCH_JOB,
            function.name,
            batch_key,
            job_id=f"flush:{function.name}:{batch_key}:{window}",
            defer_s=batch.timeout_s,
        )

    async def _add_to_batch(self, function: WorkflowFunction, data: Any) -> None:
        batch_key = function.batch.batch_key(data)
        key = self._batch_key(function.name, batch_key)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.rpush(key, json.dumps(data))
            pipe.expire(key, self._ttl_s)
            size, _ = await pipe.execute()
        await self._schedule_flush(function, batch_key, int(size))

    async def send(self, event: str, data: Any) -> list[str]:
        await self._deliver(event, data)
        run_ids: list[str] = []
        for function in self.registry.triggered_by(event):
            if function.batch is not None:
                await self._add_to_batch(function, data)
                continue
            run_id = f"{function.name}:{uuid4()}"
            await self._enqueue(RUN_FUNCTION_JOB, function.name, data, run_id, job_id=run_id)
            run_ids.append(run_id)
        return run_ids

    async def run_job(self, name: str, data: Any, run_id: str, *, job_try: int) -> Any:
        """Entry point for the arq job: one attempt, retried by arq through ``Retry``."""
        function = self.registry.get(name)
        try:
            return await self.run_once(function, data, run_id=run_id, attempt=job_try)
        except NonRetriableError as exc:
            logger.error("workflow_failed_non_retriable function=%s run_id=%s error=%s", name, run_id, exc)
            raise
        except Exception as exc:
            if is_retryable(exc) and job_try < self.retry_policy.max_attempts:
                logger.warning(
                    "workflow_retry function=%s run_id=%s attempt=%s error=%s",
                    name,
                    run_id,
                    job_try,
                    exc.__class__.__name__,
                )
                raise Retry(defer=backoff_seconds(self.retry_policy, job_try)) from exc
            raise

    async def take_batch(self, name: str, batch_key: str, flush_id: str) -> list[Any]:
        function = self.registry.get(name)
        items = await self._redis.eval(
            _TAKE_BATCH_LUA,
            2,
            self._batch_key(name, batch_key),
            self._taken_key(flush_id),
            function.batch.max_size,
            self._ttl_s,
        )
        return [json.loads(_decode(item)) for item in items or []]

    async def flush_job(self, name: str, batch_key: str, *, flush_id: str, job_try: int) -> Any:
        function = self.registry.get(name)
        events = await self.take_batch(name, batch_key, flush_id)
        if not events:
            return None
        remaining = await self._redis.llen(self._batch_key(name, batch_key))
        if remaining:
            await self._schedule_flush(function, batch_key, int(remaining))
        logger.info("batch_flushed function=%s key=%s size=%s", name, batch_key, len(events))
        result = await self.run_job(name, events, f"batch:{flush_id}", job_try=job_try)
        await self._redis.delete(self._taken_key(flush_id))
        return result
