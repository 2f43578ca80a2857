from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from bastion.config import Settings, get_settings, reset_settings_cache
from bastion.logging import get_logger
from bastion.service.audit import AuditRecorder, LogAuditSink, RedisAuditSink
from bastion.service.auth import AuthService
from bastion.service.gate import AccessGate
from bastion.service.lockout import MemoryAttemptCounter, RateGuard, RedisAttemptCounter
from bastion.service.mfa import MFAService
from bastion.service.rbac import RBACEngine
from bastion.service.role_catalog import load_role_config
from bastion.service.sessions import SessionRegistry
from bastion.service.tokens import TokenCodec
from bastion.storage.memory import MemoryAuditSink, MemoryStore
from bastion.storage.models import utcnow
from bastion.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide store handles and services, wired once."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_redis=self.settings.use_redis,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(
            fs_root=None if self.settings.test_mode else self.settings.shared_fs_root,
            mfa_encryption_key=self.settings.mfa_encryption_key or self.settings.jwt_secret,
        )

        self.cache: RedisCache | None = None
        if self.settings.use_redis:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
                    raise RuntimeError(
                        "Redis is required for shared rate-guard counters; start Redis or set "
                        "ALLOW_REDIS_FALLBACK_DEV=true for per-process counters."
                    ) from exc
                logger.warning(
                    "redis_unavailable_using_memory_counters",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.audit_log = MemoryAuditSink(max_events=self.settings.audit_buffer_size)
        sinks = [self.audit_log, LogAuditSink()]
        if self.cache:
            sinks.append(RedisAuditSink(self.cache))
        self.audit = AuditRecorder(sinks, clock=clock)

        counter = (
            RedisAttemptCounter(self.cache, clock=clock)
            if self.cache
            else MemoryAttemptCounter(clock=clock)
        )
        self.guard = RateGuard(
            counter, self.audit, RateGuard.default_policies(self.settings), clock=clock
        )
        self.tokens = TokenCodec.from_settings(self.settings, clock=clock)
        self.sessions = SessionRegistry(
            self.store,
            self.store,
            self.audit,
            ttl_minutes=self.settings.session_ttl_minutes,
            cache=self.cache,
            clock=clock,
        )
        self.rbac = RBACEngine(self.store, self.store, self.audit, clock=clock)
        if not self.store.list_roles():
            self.rbac.apply_role_config(load_role_config(self.settings.role_config_path))
        self.mfa = MFAService(
            self.store,
            self.store,
            self.audit,
            issuer=self.settings.mfa_issuer,
            clock=clock,
        )
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.tokens,
            self.guard,
            self.mfa,
            self.rbac,
            self.audit,
            mfa_enabled=self.settings.enable_mfa,
            lockout_minutes=self.settings.account_lockout_minutes,
            clock=clock,
        )
        self.gate = AccessGate(
            self.tokens, self.sessions, self.rbac, self.guard, self.mfa, self.audit
        )
        logger.info(
            "runtime_init_completed",
            counters="redis" if self.cache else "memory",
            roles=len(self.store.list_roles()),
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime
