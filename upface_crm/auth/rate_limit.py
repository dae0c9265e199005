"""
Sliding-Window Rate Limiting

Request throttling for sensitive operations, keyed by actor id or client IP.
Each operation class carries its own (window, max requests) pair. On every
check, requests older than the window are dropped before counting; the call
is denied when the remaining count has reached the maximum, otherwise the
call is recorded and allowed.

Counting is done by the ``limits`` moving-window strategy, the engine behind
Flask-Limiter, over one of its storages:

- ``memory://`` keeps per-process state. It is only correct for a
  single-process deployment; with several workers or nodes every process
  enforces its own limit and the effective limit multiplies.
- ``redis://`` keeps one sorted set per key in Redis, shared by every
  process, and lets Redis expire idle keys.

``cleanup()`` is never triggered by the limiter itself; it is run by an
external scheduler through the ``flask security cleanup-rate-limits`` command
and clears the idle buckets this process has seen.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Set, Tuple

import redis
import structlog
from limits import RateLimitItemPerSecond
from limits.storage import Storage, storage_from_string
from limits.strategies import MovingWindowRateLimiter

from upface_crm.monitoring.metrics import rate_limit_metrics

logger = structlog.get_logger(__name__)

KEY_NAMESPACE = 'upface'


@dataclass(frozen=True)
class RateLimitConfig:
    """Window duration in seconds and the maximum requests inside it."""

    window_seconds: int
    max_requests: int


DEFAULT_RATE_LIMITS: Dict[str, RateLimitConfig] = {
    'login': RateLimitConfig(15 * 60, 5),
    'api_general': RateLimitConfig(60, 100),
    'api_sensitive': RateLimitConfig(60, 10),
    'crm_operations': RateLimitConfig(60, 50),
    'public': RateLimitConfig(15 * 60, 200),
    'admin': RateLimitConfig(15 * 60, 50),
    'client_creation': RateLimitConfig(60, 5),
    'inquiry_submission': RateLimitConfig(5 * 60, 3),
    'interaction_creation': RateLimitConfig(60, 10),
}


@dataclass(frozen=True)
class RateLimitStatus:
    """Snapshot of a bucket, used for ``X-RateLimit-*`` response headers."""

    limit: int
    remaining: int
    reset_at: float

    @property
    def retry_after(self) -> int:
        return max(1, int(math.ceil(self.reset_at - time.time())))


def _storage_name(storage: Storage) -> str:
    return type(storage).__name__.replace('Storage', '').lower() or 'unknown'


class SlidingWindowRateLimiter:
    """
    Sliding-window limiter for one operation class.

    Args:
        window_seconds: Length of the trailing window, whole seconds
        max_requests: Requests allowed inside the window
        storage: ``limits`` storage, defaults to a private in-memory one
        name: Operation class name, used to namespace keys and label metrics
    """

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        storage: Optional[Storage] = None,
        name: str = 'default'
    ):
        window_seconds = int(window_seconds)
        if window_seconds <= 0 or max_requests <= 0:
            raise ValueError('window_seconds and max_requests must be positive')
        self.window_seconds = window_seconds
        self.max_requests = int(max_requests)
        self.storage = storage if storage is not None else storage_from_string('memory://')
        self.strategy = MovingWindowRateLimiter(self.storage)
        self.item = RateLimitItemPerSecond(
            self.max_requests, self.window_seconds, namespace=KEY_NAMESPACE
        )
        self.name = name
        self._seen: Set[str] = set()
        self._seen_lock = threading.Lock()

    @classmethod
    def from_config(cls, name: str, config: RateLimitConfig,
                    storage: Optional[Storage] = None) -> 'SlidingWindowRateLimiter':
        return cls(config.window_seconds, config.max_requests, storage=storage, name=name)

    def is_allowed(self, key: str) -> bool:
        """
        Check and record one request for ``key``.

        Store failures are logged and the request is allowed: throttling is
        advisory and must not take the API down with its backing store.
        """
        try:
            allowed = self.strategy.hit(self.item, self.name, key)
        except redis.RedisError as e:
            rate_limit_metrics['store_errors_total'].labels(
                store=_storage_name(self.storage)
            ).inc()
            logger.error(
                "Rate limit store unavailable, allowing request",
                operation=self.name,
                error=str(e),
            )
            return True

        with self._seen_lock:
            self._seen.add(key)
        rate_limit_metrics['checks_total'].labels(
            operation=self.name, result='allowed' if allowed else 'denied'
        ).inc()
        if not allowed:
            logger.warning("Rate limit exceeded", operation=self.name, key=key)
        return allowed

    def status(self, key: str) -> RateLimitStatus:
        """Current bucket usage for ``key`` without recording a request."""
        try:
            reset_time, remaining = self.strategy.get_window_stats(self.item, self.name, key)
        except redis.RedisError:
            return RateLimitStatus(
                limit=self.max_requests,
                remaining=self.max_requests,
                reset_at=time.time() + self.window_seconds,
            )
        return RateLimitStatus(
            limit=self.max_requests,
            remaining=max(0, int(remaining)),
            reset_at=float(reset_time),
        )

    def cleanup(self) -> int:
        """Clear the idle buckets of this operation class. Returns the number removed."""
        with self._seen_lock:
            keys = list(self._seen)

        removed = 0
        for key in keys:
            _, remaining = self.strategy.get_window_stats(self.item, self.name, key)
            if remaining < self.max_requests:
                continue
            self.strategy.clear(self.item, self.name, key)
            with self._seen_lock:
                self._seen.discard(key)
            removed += 1

        if removed:
            rate_limit_metrics['evictions_total'].labels(operation=self.name).inc(removed)
        return removed

    def reset(self, key: str) -> None:
        self.strategy.clear(self.item, self.name, key)
        with self._seen_lock:
            self._seen.discard(key)


class RateLimiterRegistry:
    """One limiter per operation class, all sharing a storage."""

    def __init__(
        self,
        limits: Optional[Mapping[str, RateLimitConfig]] = None,
        storage: Optional[Storage] = None
    ):
        self.storage = storage if storage is not None else storage_from_string('memory://')
        self._limiters: Dict[str, SlidingWindowRateLimiter] = {}
        for name, config in (limits or DEFAULT_RATE_LIMITS).items():
            self._limiters[name] = SlidingWindowRateLimiter.from_config(
                name, _coerce_config(config), storage=self.storage
            )

    def get(self, operation: str) -> SlidingWindowRateLimiter:
        """
        Raises:
            KeyError: If no limiter is configured for ``operation``
        """
        return self._limiters[operation]

    def __contains__(self, operation: str) -> bool:
        return operation in self._limiters

    def is_allowed(self, operation: str, key: str) -> bool:
        return self.get(operation).is_allowed(key)

    def cleanup_all(self) -> Dict[str, int]:
        results = {name: limiter.cleanup() for name, limiter in self._limiters.items()}
        logger.info("Rate limit cleanup completed", evicted=sum(results.values()))
        return results


def _coerce_config(config) -> RateLimitConfig:
    if isinstance(config, RateLimitConfig):
        return config
    window, limit = config
    return RateLimitConfig(int(window), int(limit))


def build_rate_limit_storage(storage: str, redis_url: Optional[str] = None) -> Storage:
    """Create the ``limits`` storage named by the ``RATE_LIMIT_STORAGE`` setting."""
    if storage == 'redis':
        if not redis_url:
            raise ValueError('REDIS_URL is required when RATE_LIMIT_STORAGE=redis')
        return storage_from_string(redis_url, socket_timeout=2)
    if storage == 'memory':
        return storage_from_string('memory://')
    raise ValueError(f'Unknown rate limit storage: {storage}')


def parse_rate_limits(raw: Mapping[str, Tuple[float, int]]) -> Dict[str, RateLimitConfig]:
    return {name: _coerce_config(value) for name, value in raw.items()}
