from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from procauth.config import get_settings, reset_settings_cache
from procauth.logging import get_logger
from procauth.service.auth import AuthService
from procauth.service.email import EmailService
from procauth.service.events import (
    EmailNotificationSink,
    EventDispatcher,
    LoggingAuditSink,
    LoggingNotificationSink,
)
from procauth.storage.common import normalize_login
from procauth.storage.memory import MemoryStore
from procauth.storage.models import RateLimitScope, utcnow
from procauth.storage.postgres import PostgresStore
from procauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# (tokens, last refill, time the bucket is full again)
LocalBucket = Tuple[float, datetime, datetime]
LocalBucketKey = Tuple[RateLimitScope, str]
LOCAL_BUCKET_PRUNE_INTERVAL = timedelta(seconds=60)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL before logging it.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_secret_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_secret_key
                    or self.settings.jwt_secret,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.storage_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are per-process.",
                mode=fallback_mode,
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.events = EventDispatcher(max_pending=self.settings.event_queue_size)
        self.events.add_audit_sink(LoggingAuditSink())
        self.events.add_notification_sink(LoggingNotificationSink())
        self.events.add_notification_sink(
            EmailNotificationSink(
                self.email,
                reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
                verification_ttl_hours=self.settings.email_verification_ttl_hours,
            )
        )
        self.auth = AuthService(self.store, self.settings, events=self.events)
        self._local_rate_limits: Dict[LocalBucketKey, LocalBucket] = {}
        self._local_rate_limits_prune_at = utcnow() + LOCAL_BUCKET_PRUNE_INTERVAL
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    scope: RateLimitScope,
    subject: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Enforce a token-bucket rate limit for ``subject`` in ``scope``.

    Uses Redis when available, otherwise an in-process bucket. Returns
    ``allowed`` or, with ``return_remaining``, a tuple of
    ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            scope=scope.value,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            scope, subject, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    key = (scope, normalize_login(subject))
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        if now >= runtime._local_rate_limits_prune_at:
            _prune_local_buckets(runtime._local_rate_limits, now)
            runtime._local_rate_limits_prune_at = now + LOCAL_BUCKET_PRUNE_INTERVAL
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            full_at = now + timedelta(seconds=(limit - tokens) / refill_rate)
            runtime._local_rate_limits[key] = (tokens, now, full_at)
        reset_seconds = (
            int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


def _prune_local_buckets(buckets: Dict[LocalBucketKey, LocalBucket], now: datetime) -> int:
    """Drop buckets that have refilled completely; they equal a fresh bucket."""
    full = [key for key, (_, _, full_at) in buckets.items() if full_at <= now]
    for key in full:
        del buckets[key]
    return len(full)
