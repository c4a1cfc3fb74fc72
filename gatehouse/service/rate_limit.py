from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from gatehouse.logging import get_logger, redact_email
from gatehouse.service.errors import DependencyUnavailableError

if TYPE_CHECKING:
    from gatehouse.storage.redis_cache import CacheStore

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW_SECONDS = 10 * 60


def normalize_identity(identity: str) -> str:
    return (identity or "").strip().lower()


def rate_bucket_key(identity: str) -> str:
    return f"login:attempts:{normalize_identity(identity)}"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    attempts: Optional[int]
    degraded: bool = False
    retry_after_seconds: Optional[int] = None


class LoginRateLimiter:
    """Fixed-window login attempt counter keyed by normalized email.

    The window starts at the first attempt and is never extended by later
    ones; once more than ``max_attempts`` land inside it, every attempt is
    blocked until the bucket expires.
    """

    def __init__(
        self,
        cache: "CacheStore",
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        fail_open: bool = True,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.fail_open = fail_open

    async def check(self, identity: str) -> RateDecision:
        key = rate_bucket_key(identity)
        try:
            attempts = await self.cache.incr_with_expiry_on_first_write(key, self.window_seconds)
        except Exception as exc:
            if not self.fail_open:
                logger.error(
                    "login_rate_limit_unavailable",
                    identity=redact_email(normalize_identity(identity)),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise DependencyUnavailableError("rate limiter unavailable") from exc
            logger.warning(
                "login_rate_limit_degraded",
                identity=redact_email(normalize_identity(identity)),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RateDecision(allowed=True, attempts=None, degraded=True)
        if attempts > self.max_attempts:
            retry_after = await self._remaining_window(key)
            logger.warning(
                "login_rate_limited",
                identity=redact_email(normalize_identity(identity)),
                attempts=attempts,
                retry_after_seconds=retry_after,
            )
            return RateDecision(allowed=False, attempts=attempts, retry_after_seconds=retry_after)
        return RateDecision(allowed=True, attempts=attempts)

    async def _remaining_window(self, key: str) -> int:
        """Seconds until the bucket expires, falling back to the whole window."""
        try:
            remaining = await self.cache.ttl(key)
        except Exception as exc:
            logger.warning("login_rate_limit_ttl_failed", error=str(exc))
            return self.window_seconds
        if not remaining:
            return self.window_seconds
        return min(remaining, self.window_seconds)

    async def reset(self, identity: str) -> None:
        try:
            await self.cache.delete(rate_bucket_key(identity))
        except Exception as exc:
            logger.warning(
                "login_rate_limit_reset_failed",
                identity=redact_email(normalize_identity(identity)),
                error=str(exc),
            )
