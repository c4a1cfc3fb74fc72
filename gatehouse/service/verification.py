from __future__ import annotations

from typing import TYPE_CHECKING, Union

from gatehouse.logging import get_logger, redact_email
from gatehouse.service.dispatch import VerificationMessage
from gatehouse.service.errors import DependencyUnavailableError, InvalidOrExpiredError
from gatehouse.service.tokens import VERIFY, JWTCodec
from gatehouse.storage.errors import RecordNotFound

if TYPE_CHECKING:
    from gatehouse.service.dispatch import DispatchProducer
    from gatehouse.storage.memory import MemoryStore
    from gatehouse.storage.postgres import PostgresStore
    from gatehouse.storage.redis_cache import CacheStore

logger = get_logger(__name__)


def ticket_key(token: str) -> str:
    return f"verify:{token}"


class VerificationFlow:
    """Issues and redeems single-use email verification tickets.

    A ticket lives in the cache under ``verify:<token>`` and maps to the
    account id embedded in the signed token. Redemption claims the ticket
    with an atomic get-and-delete, so concurrent redemptions of one token
    cannot both succeed.
    """

    def __init__(
        self,
        store: Union["PostgresStore", "MemoryStore"],
        cache: "CacheStore",
        producer: "DispatchProducer",
        codec: JWTCodec,
        *,
        secret: str,
        ttl_seconds: int,
    ) -> None:
        self.store = store
        self.cache = cache
        self.producer = producer
        self.codec = codec
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    async def issue(self, account_id: str, email: str) -> str:
        token, _ = self.codec.encode(
            subject=account_id,
            email=email,
            token_type=VERIFY,
            ttl_seconds=self.ttl_seconds,
            secret=self._secret,
        )
        try:
            await self.cache.set(ticket_key(token), account_id, self.ttl_seconds)
        except Exception as exc:
            logger.error(
                "verification_ticket_write_failed",
                user_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DependencyUnavailableError("verification ticket store unavailable") from exc

        try:
            await self.producer.publish(VerificationMessage(email=email, token=token).to_payload())
        except Exception as exc:
            # The caller still gets the token; only the email may never arrive
            logger.warning(
                "verification_dispatch_failed",
                user_id=account_id,
                recipient=redact_email(email),
                error=str(exc),
            )
        else:
            logger.info("verification_dispatched", user_id=account_id)
        return token

    async def redeem(self, token: str) -> str:
        """Mark the token's account verified and return its id."""
        payload = self.codec.decode(token, secret=self._secret, token_type=VERIFY)
        if not payload:
            raise InvalidOrExpiredError("invalid or expired token")
        account_id = str(payload["sub"])
        try:
            stored = await self.cache.pop(ticket_key(token))
        except Exception as exc:
            logger.error("verification_ticket_read_failed", user_id=account_id, error=str(exc))
            raise DependencyUnavailableError("verification ticket store unavailable") from exc
        if stored is None:
            raise InvalidOrExpiredError("invalid or expired token")
        if stored != account_id:
            logger.warning("verification_ticket_mismatch", user_id=account_id)
            raise InvalidOrExpiredError("invalid or expired token")

        try:
            self.store.update_user(account_id, {"is_verified": True})
        except RecordNotFound:
            logger.warning("verification_account_missing", user_id=account_id)
            raise InvalidOrExpiredError("invalid or expired token")
        except Exception:
            await self._restore_ticket(token, account_id, float(payload["exp"]))
            raise
        logger.info("email_verified", user_id=account_id)
        return account_id

    async def _restore_ticket(self, token: str, account_id: str, expires_at: float) -> None:
        remaining = int(expires_at - self.codec.now())
        if remaining <= 0:
            return
        try:
            await self.cache.set(ticket_key(token), account_id, remaining)
        except Exception as exc:
            logger.warning("verification_ticket_restore_failed", user_id=account_id, error=str(exc))
