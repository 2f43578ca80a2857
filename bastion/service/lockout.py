from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol, Union

from bastion.logging import get_logger
from bastion.service.audit import AuditRecorder, EventType
from bastion.service.errors import RateLimitedError
from bastion.storage.models import CounterState, Severity, utcnow
from bastion.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class LimitPolicy:
    """Fixed-window attempt budget for one use site.

    ``fail_closed`` decides what happens when the counter backend errors:
    reject the attempt, or let it through with a diagnostic log.
    """

    name: str
    max_attempts: int
    window_seconds: int
    severity: Severity = Severity.WARNING
    fail_closed: bool = True


class AttemptCounter(Protocol):
    async def hit(self, key: str, window_seconds: int) -> CounterState: ...

    async def peek(self, key: str) -> Optional[CounterState]: ...

    async def reset(self, key: str) -> None: ...


class MemoryAttemptCounter:
    """Per-process counters; increments happen inside one lock."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, tuple[int, datetime]] = {}

    async def hit(self, key: str, window_seconds: int) -> CounterState:
        now = self._clock()
        with self._lock:
            count, reset_at = self._counters.get(key, (0, now))
            if reset_at <= now:
                count, reset_at = 0, now + timedelta(seconds=window_seconds)
            count += 1
            self._counters[key] = (count, reset_at)
        return CounterState(key=key, count=count, window_reset_at=reset_at)

    async def peek(self, key: str) -> Optional[CounterState]:
        now = self._clock()
        with self._lock:
            entry = self._counters.get(key)
            if entry is None:
                return None
            count, reset_at = entry
            if reset_at <= now:
                self._counters.pop(key, None)
                return None
        return CounterState(key=key, count=count, window_reset_at=reset_at)

    async def reset(self, key: str) -> None:
        with self._lock:
            self._counters.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, (_, reset_at) in self._counters.items() if reset_at <= now]
            for key in stale:
                self._counters.pop(key, None)
        return len(stale)


class RedisAttemptCounter:
    """Counters shared across processes via a Lua INCR/PEXPIRE script."""

    def __init__(self, cache: RedisCache, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.cache = cache
        self._clock = clock

    async def hit(self, key: str, window_seconds: int) -> CounterState:
        count, ttl_ms = await self.cache.incr_window(key, window_seconds)
        reset_at = self._clock() + timedelta(milliseconds=max(ttl_ms, 0))
        return CounterState(key=key, count=count, window_reset_at=reset_at)

    async def peek(self, key: str) -> Optional[CounterState]:
        count, ttl_ms = await self.cache.peek_window(key)
        if count <= 0:
            return None
        reset_at = self._clock() + timedelta(milliseconds=ttl_ms)
        return CounterState(key=key, count=count, window_reset_at=reset_at)

    async def reset(self, key: str) -> None:
        await self.cache.reset_window(key)


PolicyRef = Union[LimitPolicy, str]


class RateGuard:
    """Counts attempts per key and blocks once a policy's budget is spent."""

    def __init__(
        self,
        counter: AttemptCounter,
        audit: AuditRecorder,
        policies: Dict[str, LimitPolicy],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.counter = counter
        self.audit = audit
        self.policies = dict(policies)
        self._clock = clock

    @classmethod
    def default_policies(cls, settings) -> Dict[str, LimitPolicy]:
        return {
            "login": LimitPolicy(
                "login",
                settings.login_max_attempts,
                settings.login_window_seconds,
                Severity.WARNING,
            ),
            "sensitive": LimitPolicy(
                "sensitive",
                settings.sensitive_max_attempts,
                settings.sensitive_window_seconds,
                Severity.HIGH,
            ),
            "general": LimitPolicy(
                "general",
                settings.general_max_requests,
                settings.general_window_seconds,
                Severity.WARNING,
                fail_closed=False,
            ),
        }

    def policy(self, ref: PolicyRef) -> LimitPolicy:
        if isinstance(ref, LimitPolicy):
            return ref
        try:
            return self.policies[ref]
        except KeyError:
            raise ValueError(f"unknown rate limit policy: {ref}") from None

    @staticmethod
    def _scoped(policy: LimitPolicy, key: str) -> str:
        return f"{policy.name}:{key}"

    def _retry_after(self, state: CounterState) -> int:
        remaining = (state.window_reset_at - self._clock()).total_seconds()
        return max(1, int(remaining + 0.999))

    async def record_attempt(self, key: str, policy: PolicyRef) -> CounterState:
        limit = self.policy(policy)
        return await self.counter.hit(self._scoped(limit, key), limit.window_seconds)

    async def is_blocked(self, key: str, policy: PolicyRef) -> bool:
        limit = self.policy(policy)
        try:
            state = await self.counter.peek(self._scoped(limit, key))
        except Exception as exc:
            logger.error("rate_guard_backend_error", policy=limit.name, error=str(exc))
            return limit.fail_closed
        return state is not None and state.count >= limit.max_attempts

    async def acquire(
        self,
        key: str,
        policy: PolicyRef,
        *,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CounterState:
        """Count one attempt and raise ``RateLimitedError`` if it is over budget.

        Increment and comparison use the counter's single atomic step, so
        concurrent callers cannot all observe a count below the threshold.
        """
        limit = self.policy(policy)
        try:
            state = await self.counter.hit(self._scoped(limit, key), limit.window_seconds)
        except Exception as exc:
            logger.error("rate_guard_backend_error", policy=limit.name, error=str(exc))
            if limit.fail_closed:
                raise RateLimitedError("rate limiting unavailable") from exc
            return CounterState(key=key, count=0, window_reset_at=self._clock())

        if state.count > limit.max_attempts:
            retry_after = self._retry_after(state)
            await self.audit.security_event(
                EventType.RATE_LIMIT_EXCEEDED,
                limit.severity,
                f"{limit.name} limit of {limit.max_attempts} attempts per "
                f"{limit.window_seconds}s exceeded",
                actor_id=actor_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={
                    "policy": limit.name,
                    "key": key,
                    "count": state.count,
                    "retry_after": retry_after,
                    **(metadata or {}),
                },
            )
            raise RateLimitedError(
                "too many attempts",
                retry_after=retry_after,
                detail={"policy": limit.name, "retry_after": retry_after},
            )
        return state

    async def reset(self, key: str, policy: PolicyRef) -> None:
        limit = self.policy(policy)
        try:
            await self.counter.reset(self._scoped(limit, key))
        except Exception as exc:
            logger.warning("rate_guard_reset_failed", policy=limit.name, error=str(exc))
