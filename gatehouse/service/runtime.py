from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatehouse.config import DispatchBackend, Settings, get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthService
from gatehouse.service.dispatch import (
    DispatchConsumer,
    DispatchProducer,
    VerificationEmailHandler,
)
from gatehouse.service.email import EmailService
from gatehouse.service.passwords import Argon2PasswordHasher
from gatehouse.service.rate_limit import LoginRateLimiter
from gatehouse.service.tokens import JWTCodec, TokenIssuer
from gatehouse.service.verification import VerificationFlow
from gatehouse.storage.channel import MemoryChannel, RedisChannel
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import MemoryCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app and the dispatch worker."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env.value,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
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

        self.redis_available = self._init_cache()
        self.channel = self._init_channel()

        codec = JWTCodec(issuer=self.settings.jwt_issuer, audience=self.settings.jwt_audience)
        self.hasher = Argon2PasswordHasher()
        self.producer = DispatchProducer(self.channel, self.settings.dispatch_queue_name)
        self.verification = VerificationFlow(
            self.store,
            self.cache,
            self.producer,
            codec,
            secret=self.settings.verification_secret,
            ttl_seconds=self.settings.verification_ttl_seconds,
        )
        self.limiter = LoginRateLimiter(
            self.cache,
            max_attempts=self.settings.login_rate_limit_max_attempts,
            window_seconds=self.settings.login_rate_limit_window_seconds,
            fail_open=self.settings.rate_limit_fail_open,
        )
        self.tokens = TokenIssuer(self.cache, self.settings, codec=codec)
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.verification,
            self.limiter,
            self.tokens,
            password_check_timeout=self.settings.password_check_timeout_seconds,
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
            verification_ttl_seconds=self.settings.verification_ttl_seconds,
        )
        self.consumer = self.build_consumer()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.redis_available,
            dispatch_backend=self.settings.dispatch_backend.value,
            email_configured=self.email.is_configured,
        )

    def _init_cache(self) -> bool:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to per-test event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
                return True
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for verification tickets, login rate limits and the refresh "
                "registry; start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; tickets, rate limits and "
                "refresh tokens are process-local."
            ),
            mode=fallback_mode,
        )
        self.cache = MemoryCache()
        return False

    def _init_channel(self):
        max_attempts = self.settings.dispatch_max_attempts
        self.channel_fallback = False
        if self.settings.dispatch_backend == DispatchBackend.REDIS:
            if self.redis_available:
                return RedisChannel(self.settings.redis_url, max_attempts=max_attempts)
            self.channel_fallback = True
            logger.warning(
                "dispatch_channel_fallback",
                message=(
                    "Redis unavailable; verification emails queue in process memory and are "
                    "delivered by the in-process consumer, not by a standalone worker."
                ),
            )
        return MemoryChannel(max_attempts=max_attempts)

    @property
    def consumer_in_process(self) -> bool:
        """Whether the API process must run the dispatch consumer itself.

        A fallback memory channel is invisible to the standalone worker, so its
        queue is only drained when the API process consumes it.
        """
        return self.settings.dispatch_consumer_enabled or self.channel_fallback

    def build_consumer(self) -> DispatchConsumer:
        handler = VerificationEmailHandler(
            self.email, timeout_seconds=self.settings.dispatch_delivery_timeout_seconds
        )
        # Consumers get their own channel connection when the backend is shared
        if isinstance(self.channel, RedisChannel):
            channel = RedisChannel(
                self.settings.redis_url, max_attempts=self.settings.dispatch_max_attempts
            )
        else:
            channel = self.channel
        return DispatchConsumer(
            channel,
            handler,
            queue_name=self.settings.dispatch_queue_name,
            poll_timeout=self.settings.dispatch_poll_timeout_seconds,
            retry_backoff=self.settings.dispatch_retry_backoff_seconds,
        )

    async def close(self) -> None:
        if self.consumer.is_running:
            await self.consumer.stop()
        await self.producer.close()
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
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
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            try:
                runtime.cache.client.close()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
