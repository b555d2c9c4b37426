from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("sms.rate_limit")


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    window_ms: int = 3_600_000
    max_requests: int = 5


@dataclass(frozen=True, slots=True)
class RateLimitStatus:
    remaining: int
    total: int
    reset_at_ms: Optional[float] = None


@dataclass(slots=True)
class RateLimitRecord:
    count: int
    window_reset_at: float


class RateLimitStore(Protocol):
    config: RateLimitConfig
    backend: str

    def check(self, key: str) -> bool:
        ...

    def increment(self, key: str, window_ms: int | None = None) -> int:
        ...

    def acquire(self, key: str) -> tuple[bool, int]:
        ...

    def reset(self, key: str) -> None:
        ...

    def get_status(self, key: str) -> RateLimitStatus:
        ...

    def sweep(self) -> int:
        ...

    def start_sweeper(self) -> None:
        ...

    def stop_sweeper(self) -> None:
        ...


class InMemoryRateLimitStore:
    """Fixed-window counters keyed by E.164 number.

    Up to ``2 * max_requests`` sends can land around a window boundary; that
    is the price of O(1) state per recipient.
    """

    backend = "memory"

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()
        self._sweeper: threading.Thread | None = None
        self._stop_event = threading.Event()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _live_record(self, key: str, now_ms: float) -> RateLimitRecord | None:
        record = self._records.get(key)
        if record is None or record.window_reset_at <= now_ms:
            return None
        return record

    def _increment_locked(self, key: str, window_ms: int, now_ms: float) -> int:
        record = self._live_record(key, now_ms)
        if record is None:
            self._records[key] = RateLimitRecord(count=1, window_reset_at=now_ms + window_ms)
            return 1
        record.count += 1
        return record.count

    def check(self, key: str) -> bool:
        with self._lock:
            record = self._live_record(key, self._now_ms())
            return record is None or record.count < self.config.max_requests

    def increment(self, key: str, window_ms: int | None = None) -> int:
        with self._lock:
            return self._increment_locked(key, window_ms or self.config.window_ms, self._now_ms())

    def acquire(self, key: str) -> tuple[bool, int]:
        """Check and increment in one step; a blocked key is left untouched."""

        with self._lock:
            now_ms = self._now_ms()
            record = self._live_record(key, now_ms)
            if record is not None and record.count >= self.config.max_requests:
                return False, record.count
            return True, self._increment_locked(key, self.config.window_ms, now_ms)

    def reset(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def get_status(self, key: str) -> RateLimitStatus:
        with self._lock:
            record = self._live_record(key, self._now_ms())
        total = self.config.max_requests
        if record is None:
            return RateLimitStatus(remaining=total, total=total)
        return RateLimitStatus(
            remaining=max(total - record.count, 0),
            total=total,
            reset_at_ms=record.window_reset_at,
        )

    def sweep(self) -> int:
        with self._lock:
            now_ms = self._now_ms()
            expired = [key for key, record in self._records.items() if record.window_reset_at <= now_ms]
            for key in expired:
                self._records.pop(key, None)
        if expired:
            logger.debug("Rate limit sweep removed %s expired records", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def start_sweeper(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="sms-rate-limit-sweeper", daemon=True)
        self._sweeper.start()
        logger.info("Rate limit sweeper started | interval=%ss", self.sweep_interval_seconds)

    def stop_sweeper(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.sweep_interval_seconds + 1)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception:  # pragma: no cover - keep the sweeper alive
                logger.exception("Rate limit sweep failed")


# KEYS[1] = counter key, ARGV[1] = window ms. Returns the new count.
_INCREMENT_SCRIPT = """
local count = redis.call("INCR", KEYS[1])
if count == 1 or redis.call("PTTL", KEYS[1]) < 0 then
    redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
return count
"""

# KEYS[1] = counter key, ARGV[1] = window ms, ARGV[2] = max requests.
# Returns the new count, or -count when the key is already exhausted.
_ACQUIRE_SCRIPT = """
local current = tonumber(redis.call("GET", KEYS[1]) or "0")
if current >= tonumber(ARGV[2]) then
    return -current
end
local count = redis.call("INCR", KEYS[1])
if count == 1 or redis.call("PTTL", KEYS[1]) < 0 then
    redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
return count
"""


class RedisRateLimitStore:
    """Fixed-window counters shared by every process talking to one Redis."""

    backend = "redis"

    def __init__(self, client: Redis, config: RateLimitConfig, *, namespace: str = "sms:ratelimit") -> None:
        self.client = client
        self.config = config
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _count(self, key: str) -> int:
        value = self.client.get(self._key(key))
        return int(value) if value is not None else 0

    def check(self, key: str) -> bool:
        return self._count(key) < self.config.max_requests

    def increment(self, key: str, window_ms: int | None = None) -> int:
        return int(self.client.eval(_INCREMENT_SCRIPT, 1, self._key(key), window_ms or self.config.window_ms))

    def acquire(self, key: str) -> tuple[bool, int]:
        result = int(
            self.client.eval(
                _ACQUIRE_SCRIPT,
                1,
                self._key(key),
                self.config.window_ms,
                self.config.max_requests,
            )
        )
        if result < 0:
            return False, -result
        return True, result

    def reset(self, key: str) -> None:
        self.client.delete(self._key(key))

    def get_status(self, key: str) -> RateLimitStatus:
        count = self._count(key)
        total = self.config.max_requests
        reset_at_ms = None
        if count:
            ttl_ms = self.client.pttl(self._key(key))
            if ttl_ms and ttl_ms > 0:
                reset_at_ms = time.time() * 1000.0 + ttl_ms
        return RateLimitStatus(remaining=max(total - count, 0), total=total, reset_at_ms=reset_at_ms)

    def sweep(self) -> int:
        # Redis expires counters on its own.
        return 0

    def start_sweeper(self) -> None:
        return None

    def stop_sweeper(self) -> None:
        return None


def create_rate_limit_store(
    config: RateLimitConfig,
    *,
    backend: str = "memory",
    redis_url: str | None = None,
    sweep_interval_seconds: float = 60.0,
) -> RateLimitStore:
    if backend == "redis":
        if redis_url:
            try:
                client = Redis.from_url(redis_url)
                client.ping()
                logger.info("Using Redis rate limit store.")
                return RedisRateLimitStore(client, config)
            except (RedisError, OSError) as exc:  # pragma: no cover - best effort
                logger.warning("Redis unavailable (%s). Falling back to in-memory rate limit store.", exc)
        else:
            logger.warning("SMS_RATE_LIMIT_BACKEND=redis but REDIS_URL is not set. Using in-memory store.")
    logger.info("Using in-memory rate limit store.")
    return InMemoryRateLimitStore(config, sweep_interval_seconds=sweep_interval_seconds)
