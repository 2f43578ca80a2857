from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for attempt counters, session activity and audit streams."""

    # INCR and window expiry in one round trip; the first hit of a window sets
    # the TTL, later hits only read it. A key without TTL (e.g. left behind by a
    # crash between commands in an older client) is given one.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local window_ms = tonumber(ARGV[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], window_ms)
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    AUDIT_STREAM = "bastion:audit"
    AUDIT_STREAM_MAXLEN = 100_000

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _counter_key(key: str) -> str:
        """Hash counter subjects so emails and paths cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"guard:{digest}"

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment ``key`` in its fixed window.

        Returns:
            Tuple of (count after increment, milliseconds until the window resets)
        """
        count, ttl_ms = await self._fixed_window(
            keys=[self._counter_key(key)], args=[int(window_seconds * 1000)]
        )
        return int(count), int(ttl_ms)

    async def peek_window(self, key: str) -> Tuple[int, int]:
        safe_key = self._counter_key(key)
        pipe = self.client.pipeline()
        pipe.get(safe_key)
        pipe.pttl(safe_key)
        raw_count, ttl_ms = await pipe.execute()
        if raw_count is None or int(ttl_ms) <= 0:
            return 0, 0
        return int(raw_count), int(ttl_ms)

    async def reset_window(self, key: str) -> None:
        await self.client.delete(self._counter_key(key))

    async def update_session_activity(
        self, session_token: str, when: datetime, ttl_seconds: int = 86400
    ) -> None:
        digest = hashlib.sha256(session_token.encode()).hexdigest()
        await self.client.set(
            f"session:activity:{digest}",
            when.astimezone(timezone.utc).isoformat(),
            ex=max(1, ttl_seconds),
        )

    async def get_session_activity(self, session_token: str) -> Optional[datetime]:
        digest = hashlib.sha256(session_token.encode()).hexdigest()
        value = await self.client.get(f"session:activity:{digest}")
        if value:
            try:
                return datetime.fromisoformat(value)
            except (ValueError, TypeError):
                return None
        return None

    async def append_audit_event(self, payload: Dict[str, Any]) -> None:
        await self.client.xadd(
            self.AUDIT_STREAM,
            {"event": json.dumps(payload, default=str)},
            maxlen=self.AUDIT_STREAM_MAXLEN,
            approximate=True,
        )

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
