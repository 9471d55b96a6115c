from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from muxic.config import Settings, get_settings, reset_settings_cache
from muxic.logging import get_logger
from muxic.service.auth import AuthService
from muxic.service.email import EmailService
from muxic.service.notifications import NotificationDispatcher
from muxic.service.oauth import GoogleOAuthBridge
from muxic.service.rooms import RoomService
from muxic.service.tokens import TokenIssuer
from muxic.storage.memory import MemoryStore
from muxic.storage.postgres import PostgresStore
from muxic.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding a pool to a per-test loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache and self.settings.redis_url:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "REDIS_URL is set but Redis is unreachable; start Redis, unset "
                    "REDIS_URL or set ALLOW_REDIS_FALLBACK_DEV=true for in-process rate limits."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "unreachable",
                message="Rate limits fall back to an in-process token bucket.",
            )

        self.tokens = TokenIssuer(self.store, self.settings)
        self.auth = AuthService(self.store, self.tokens, self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.notifier = NotificationDispatcher(self.email)
        self.oauth = GoogleOAuthBridge(self.auth, self.settings)
        self.rooms = RoomService(self.store)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            google_oauth_configured=self.oauth.is_configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked: the unlocked read is the fast path once the runtime
    exists, the locked re-check keeps two first requests from both building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    scope: str,
    subject: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Consume from the ``scope``/``subject`` bucket.

    Uses the Redis token bucket when a cache is configured, otherwise an
    in-process bucket guarded by an ``asyncio.Lock``. Returns
    ``(allowed, remaining, retry_after_seconds)``.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window", scope=scope, window_seconds=window_seconds
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            scope, subject, limit, window_seconds, cost=cost
        )

    key = f"{scope}:{subject}"
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        retry_after = 0 if allowed else max(1, int((cost - tokens) / refill_rate) + 1)
        remaining = int(tokens)
    return allowed, remaining, retry_after
