"""
Sliding-window rate limiter for the bridge gate.

Each key owns a deque of request timestamps. A timestamp counts against the
key while it is strictly newer than ``now - window_seconds``, so a burst at a
window boundary never earns a fresh allowance.

Locking: ``_store_lock`` guards the key map only; every record has its own
lock for the prune/read/append sequence. The sweep takes both for one key at
a time and flags evicted records so a concurrent ``hit`` that already holds a
reference retries on a fresh record instead of writing into a detached one.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Protocol

from shared.errors import RateLimitExceededError
from shared.logging import get_logger

logger = get_logger("bridge.rate_limiter")

DEFAULT_LIMIT = 60
DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0
DEFAULT_MESSAGE = "Too many requests, please try again later."

RATE_LIMIT_PRESETS: Mapping[str, Mapping[str, Any]] = MappingProxyType({
    "strict": MappingProxyType({"limit": 30, "window_seconds": 60.0}),
    "standard": MappingProxyType({"limit": 60, "window_seconds": 60.0}),
    "relaxed": MappingProxyType({"limit": 120, "window_seconds": 60.0}),
    "api": MappingProxyType({"limit": 1000, "window_seconds": 3600.0}),
    "webhook": MappingProxyType({"limit": 100, "window_seconds": 60.0}),
    "auth": MappingProxyType({"limit": 10, "window_seconds": 60.0}),
})


@dataclass(frozen=True)
class RateLimitConfig:
    """Resolved limiter settings. Built once per limiter, never re-merged."""

    limit: int = DEFAULT_LIMIT
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    headers: bool = True
    message: str = DEFAULT_MESSAGE
    key_generator: Optional[Callable[[Any], str]] = None
    skip: Optional[Callable[[Any], bool]] = None
    # Called with (request, info) before a rejection is raised.
    on_limit_reached: Optional[Callable[[Any, RateLimitInfo], None]] = None

    def __post_init__(self):
        if self.limit <= 0:
            raise ValueError(f"limit must be positive, got {self.limit}")
        if self.window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {self.window_seconds}")


DEFAULT_RATE_LIMIT_CONFIG = RateLimitConfig()


def resolve_rate_limit_config(preset: Optional[str] = None, **overrides: Any) -> RateLimitConfig:
    """
    Build a ``RateLimitConfig`` from an optional preset plus overrides.

    ``None`` overrides are ignored so callers can pass optional settings through.
    """
    values: Dict[str, Any] = {}
    if preset is not None:
        try:
            values.update(RATE_LIMIT_PRESETS[preset])
        except KeyError:
            raise ValueError(f"Unknown rate limit preset: {preset}") from None
    values.update({name: value for name, value in overrides.items() if value is not None})
    return RateLimitConfig(**values)


@dataclass(frozen=True)
class RateLimitInfo:
    limit: int
    remaining: int
    reset_at: float
    limited: bool

    def retry_after(self, now: float) -> int:
        """Whole seconds until a slot frees up, never less than one."""
        return max(1, math.ceil(self.reset_at - now))

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class _RateLimitRecord:
    __slots__ = ("timestamps", "last_access", "lock", "evicted")

    def __init__(self, now: float):
        self.timestamps: Deque[float] = deque()
        self.last_access = now
        self.lock = threading.Lock()
        self.evicted = False


class SweepScheduler(Protocol):
    def start(self, interval: float, callback: Callable[[], Any]) -> None:
        ...

    def stop(self) -> None:
        ...


class ThreadScheduler:
    """Runs ``callback`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, name: str = "rate-limit-sweep"):
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self, interval: float, callback: Callable[[], Any]) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()

        def run():
            while not self._stop_event.wait(interval):
                try:
                    callback()
                except Exception as e:
                    logger.error("Rate limit sweep failed", scheduler=self.name, error=str(e))

        self._thread = threading.Thread(target=run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join()
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None


class ManualScheduler:
    """Scheduler for tests: the sweep runs only when ``tick`` is called."""

    def __init__(self):
        self.interval: Optional[float] = None
        self._callback: Optional[Callable[[], Any]] = None

    def start(self, interval: float, callback: Callable[[], Any]) -> None:
        self.interval = interval
        self._callback = callback

    def stop(self) -> None:
        self._callback = None

    @property
    def running(self) -> bool:
        return self._callback is not None

    def tick(self) -> None:
        if self._callback is not None:
            self._callback()


class RateLimiter:
    """In-memory sliding-window limiter keyed by caller identity."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        scheduler: Optional[SweepScheduler] = None,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        name: str = "default",
    ):
        self.config = config or DEFAULT_RATE_LIMIT_CONFIG
        self.name = name
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._scheduler = scheduler if scheduler is not None else ThreadScheduler(f"rate-limit-sweep-{name}")
        self._store: Dict[str, _RateLimitRecord] = {}
        self._store_lock = threading.Lock()
        self._started = False

    @property
    def limit(self) -> int:
        return self.config.limit

    @property
    def window_seconds(self) -> float:
        return self.config.window_seconds

    @property
    def size(self) -> int:
        """Number of tracked keys."""
        with self._store_lock:
            return len(self._store)

    def now(self) -> float:
        return self._clock()

    def start(self) -> None:
        """Start the periodic sweep."""
        if self._started:
            return
        self._scheduler.start(self.sweep_interval, self.sweep)
        self._started = True
        logger.info(
            "Rate limiter started",
            limiter=self.name,
            limit=self.config.limit,
            window_seconds=self.config.window_seconds,
        )

    def stop(self) -> None:
        """Stop the periodic sweep and wait for it to finish."""
        if not self._started:
            return
        self._scheduler.stop()
        self._started = False
        logger.info("Rate limiter stopped", limiter=self.name)

    def __enter__(self) -> "RateLimiter":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def _prune(self, record: _RateLimitRecord, now: float) -> None:
        cutoff = now - self.config.window_seconds
        timestamps = record.timestamps
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

    def _full_allowance(self, now: float) -> RateLimitInfo:
        return RateLimitInfo(
            limit=self.config.limit,
            remaining=self.config.limit,
            reset_at=now + self.config.window_seconds,
            limited=False,
        )

    def _info(self, record: _RateLimitRecord, now: float) -> RateLimitInfo:
        remaining = max(0, self.config.limit - len(record.timestamps))
        if record.timestamps:
            reset_at = record.timestamps[0] + self.config.window_seconds
        else:
            reset_at = now + self.config.window_seconds
        return RateLimitInfo(
            limit=self.config.limit,
            remaining=remaining,
            reset_at=reset_at,
            limited=remaining == 0,
        )

    def check(self, key: str) -> RateLimitInfo:
        """Current allowance for ``key``. Prunes old timestamps; does not count as a hit."""
        now = self._clock()
        with self._store_lock:
            record = self._store.get(key)
        if record is None:
            return self._full_allowance(now)

        with record.lock:
            if record.evicted:
                return self._full_allowance(now)
            self._prune(record, now)
            record.last_access = now
            return self._info(record, now)

    def get_info(self, key: str) -> RateLimitInfo:
        """Inspect ``key`` without consuming allowance."""
        return self.check(key)

    def hit(self, key: str) -> RateLimitInfo:
        """
        Record a request for ``key`` if it is within its allowance.

        The returned info has ``limited=True`` when the request was rejected;
        otherwise ``remaining`` already accounts for this request.
        """
        while True:
            now = self._clock()
            with self._store_lock:
                record = self._store.get(key)
                if record is None:
                    record = _RateLimitRecord(now)
                    self._store[key] = record

            with record.lock:
                if record.evicted:
                    continue
                self._prune(record, now)
                record.last_access = now
                info = self._info(record, now)
                if info.limited:
                    return info
                record.timestamps.append(now)
                return replace(info, remaining=info.remaining - 1)

    def reset(self, key: str) -> None:
        """Drop ``key`` back to a full allowance."""
        with self._store_lock:
            record = self._store.pop(key, None)
            if record is not None:
                with record.lock:
                    record.evicted = True

    def reset_all(self) -> None:
        """Drop every key back to a full allowance."""
        with self._store_lock:
            records = list(self._store.values())
            self._store.clear()
            for record in records:
                with record.lock:
                    record.evicted = True

    def sweep(self) -> int:
        """Evict keys idle for more than twice the window. Returns the number evicted."""
        now = self._clock()
        expire_before = now - 2 * self.config.window_seconds
        with self._store_lock:
            keys = list(self._store)

        evicted = 0
        for key in keys:
            with self._store_lock:
                record = self._store.get(key)
                if record is None:
                    continue
                with record.lock:
                    if record.last_access < expire_before:
                        record.evicted = True
                        del self._store[key]
                        evicted += 1

        if evicted:
            logger.debug("Rate limit sweep evicted idle keys", limiter=self.name, evicted=evicted)
        return evicted


def create_rate_limiter_from_preset(preset: str, **overrides: Any) -> RateLimiter:
    """Limiter for a named preset; ``clock``/``scheduler``/``name`` go to the limiter."""
    limiter_kwargs = {
        name: overrides.pop(name)
        for name in ("clock", "scheduler", "sweep_interval", "name")
        if name in overrides
    }
    return RateLimiter(resolve_rate_limit_config(preset, **overrides), **limiter_kwargs)


def require_rate_limit(limiter: RateLimiter, key: str) -> RateLimitInfo:
    """
    Record a hit and raise if the key is over its limit.

    Raises:
        RateLimitExceededError: with ``retry_after`` in whole seconds
    """
    info = limiter.hit(key)
    if info.limited:
        error = RateLimitExceededError(
            info.retry_after(limiter.now()),
            message=limiter.config.message,
            details={"limit": info.limit},
        )
        if limiter.config.headers:
            error.headers.update(info.headers())
        raise error
    return info
