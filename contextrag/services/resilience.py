from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from contextrag.core.config import Settings
from contextrag.core.errors import NonRetriableError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    # Attempts include the first call; backoff doubles per attempt with jitter.
    max_attempts: int
    backoff_ms: int


def default_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max(1, settings.ingest_max_retries),
        backoff_ms=settings.retry_backoff_ms,
    )


def is_retryable(exc: BaseException) -> bool:
    # Everything except explicit non-retriable failures gets the engine's retry policy.
    return isinstance(exc, Exception) and not isinstance(exc, NonRetriableError)


def backoff_seconds(policy: RetryPolicy, attempt: int) -> float:
    jitter = random.uniform(0.5, 1.5)
    return (policy.backoff_ms / 1000.0) * (2 ** (max(attempt, 1) - 1)) * jitter


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> Any:
    # Retry helper with jittered backoff; non-retriable failures surface immediately.
    retryable = retryable or is_retryable
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            await asyncio.sleep(backoff_seconds(policy, attempt))
            attempt += 1


@dataclass(frozen=True)
class ThrottleConfig:
    # At most `limit` calls per `period_s`, with a burst of up to `limit`.
    limit: int
    period_s: float

    @property
    def rate(self) -> float:
        if self.period_s <= 0:
            return float(self.limit)
        return self.limit / self.period_s


_THROTTLE_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(burst, tokens + ((now_ms - ts) / 1000.0) * rate)

local retry_ms = 0
local allowed = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
elseif rate <= 0 then
  retry_ms = 1000
else
  retry_ms = math.ceil(((1 - tokens) / rate) * 1000)
end

redis.call("HSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)
return {allowed, retry_ms}
"""


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(burst), tokens + (delta_s * rate))


def _retry_after_ms(tokens: float, *, rate: float, cost: int = 1) -> int:
    # Compute retry-after using the token deficit and sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    return int(math.ceil(((cost - tokens) / rate) * 1000))


def _ttl_seconds(config: ThrottleConfig) -> int:
    # Expire idle buckets after a conservative refill window.
    return max(1, int(math.ceil(config.period_s * 2)))


class Throttle:
    """Token bucket gating calls to a rate-limited provider.

    With a Redis client the bucket is shared by every worker process; without
    one it is local to this process. ``acquire`` waits until a token is free.
    """

    def __init__(
        self,
        name: str,
        config: ThrottleConfig,
        *,
        redis: Redis | None = None,
        key_prefix: str = "contextrag:throttle",
        time_source: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.name = name
        self.config = config
        self._redis = redis
        self._key = f"{key_prefix}:{name}"
        self._time = time_source or time.time
        self._sleep = sleep or asyncio.sleep
        self._tokens: float | None = None
        self._last_ms: int | None = None
        self._lock = asyncio.Lock()

    async def _try_local(self, now_ms: int) -> int:
        async with self._lock:
            tokens = _calculate_tokens(
                tokens=self._tokens,
                last_ms=self._last_ms,
                now_ms=now_ms,
                rate=self.config.rate,
                burst=self.config.limit,
            )
            retry_ms = _retry_after_ms(tokens, rate=self.config.rate)
            if retry_ms == 0:
                tokens -= 1
            self._tokens = tokens
            self._last_ms = now_ms
            return retry_ms

    async def _try_redis(self, now_ms: int) -> int:
        allowed, retry_ms = await self._redis.eval(
            _THROTTLE_LUA,
            1,
            self._key,
            now_ms,
            self.config.rate,
            self.config.limit,
            _ttl_seconds(self.config),
        )
        return 0 if int(allowed) == 1 else max(1, int(retry_ms))

    async def acquire(self) -> None:
        waited_ms = 0
        while True:
            now_ms = int(self._time() * 1000)
            if self._redis is not None:
                retry_ms = await self._try_redis(now_ms)
            else:
                retry_ms = await self._try_local(now_ms)
            if retry_ms == 0:
                if waited_ms:
                    logger.info("throttle_released name=%s waited_ms=%s", self.name, waited_ms)
                return
            waited_ms += retry_ms
            await self._sleep(retry_ms / 1000.0)
