from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    DeactivatedError,
    DependencyUnavailableError,
    InvalidTokenError,
    UnverifiedError,
)

if TYPE_CHECKING:
    from gatehouse.config import Settings
    from gatehouse.storage.models import User
    from gatehouse.storage.redis_cache import CacheStore

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
VERIFY = "verify"


def refresh_registry_key(account_id: str) -> str:
    return f"refresh:{account_id}"


@dataclass(frozen=True)
class Identity:
    """Decoded access-token claims attached to an authenticated request."""

    account_id: str
    email: str
    issued_at: float
    expires_at: float


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: float
    ttl_seconds: int

    @property
    def expires_at_utc(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class SessionTokenPair:
    access: IssuedToken
    refresh: IssuedToken


class JWTCodec:
    """HS256 JSON Web Tokens with issuer, audience, expiry and token_type checks.

    Each token class is signed with its own secret and carries a
    ``token_type`` claim, so no token can be replayed as another kind.
    """

    def __init__(
        self,
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], float] = time.time,
        leeway_seconds: float = 0.0,
    ) -> None:
        self.issuer = issuer
        self.audience = audience
        self._clock = clock
        self._leeway = leeway_seconds

    def now(self) -> float:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(
        self,
        *,
        subject: str,
        email: str,
        token_type: str,
        ttl_seconds: float,
        secret: str,
    ) -> tuple[str, float]:
        """Sign a token and return it with its expiry as a unix timestamp."""
        issued_at = self.now()
        expires_at = issued_at + ttl_seconds
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "email": email,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": expires_at,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}", expires_at

    def decode(self, token: str, *, secret: str, token_type: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for anything malformed, forged or expired."""
        if not token or not isinstance(token, str):
            return None
        # Issued tokens are base64url; anything else cannot be signed or compared
        if not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        if payload.get("token_type") != token_type:
            return None
        if not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self.now() - self._leeway:
            return None
        return payload


class TokenIssuer:
    """Sole authority over access/refresh tokens and the refresh registry.

    The registry holds exactly one live refresh token per account under
    ``refresh:<account id>``; a login overwrites it and logout deletes it.
    """

    def __init__(
        self,
        cache: "CacheStore",
        settings: "Settings",
        *,
        codec: Optional[JWTCodec] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.codec = codec or JWTCodec(
            issuer=settings.jwt_issuer, audience=settings.jwt_audience
        )
        self.access_ttl_seconds = settings.access_token_ttl_minutes * 60
        self.refresh_ttl_seconds = settings.refresh_token_ttl_minutes * 60

    def _mint_access(self, account_id: str, email: str) -> IssuedToken:
        token, expires_at = self.codec.encode(
            subject=account_id,
            email=email,
            token_type=ACCESS,
            ttl_seconds=self.access_ttl_seconds,
            secret=self.settings.jwt_secret,
        )
        return IssuedToken(token=token, expires_at=expires_at, ttl_seconds=self.access_ttl_seconds)

    def _mint_refresh(self, account_id: str, email: str) -> IssuedToken:
        token, expires_at = self.codec.encode(
            subject=account_id,
            email=email,
            token_type=REFRESH,
            ttl_seconds=self.refresh_ttl_seconds,
            secret=self.settings.refresh_jwt_secret,
        )
        return IssuedToken(token=token, expires_at=expires_at, ttl_seconds=self.refresh_ttl_seconds)

    def _decode_refresh(self, refresh_token: str) -> Optional[dict[str, Any]]:
        return self.codec.decode(
            refresh_token, secret=self.settings.refresh_jwt_secret, token_type=REFRESH
        )

    async def login(self, user: "User") -> SessionTokenPair:
        """Mint a token pair for an account whose credentials already checked out."""
        if not user.is_verified:
            raise UnverifiedError("email address not verified")
        if not user.is_active:
            raise DeactivatedError("account is deactivated")
        pair = SessionTokenPair(
            access=self._mint_access(user.id, user.email),
            refresh=self._mint_refresh(user.id, user.email),
        )
        try:
            await self.cache.set(
                refresh_registry_key(user.id), pair.refresh.token, self.refresh_ttl_seconds
            )
        except Exception as exc:
            # Login still succeeds; only later refreshes are affected
            logger.warning(
                "refresh_registry_write_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return pair

    async def refresh(self, refresh_token: str) -> IssuedToken:
        """Exchange the live refresh token for a new access token.

        The refresh token itself is not rotated. A presented token that no
        longer matches the registry ends the session.
        """
        payload = self._decode_refresh(refresh_token)
        if not payload:
            raise InvalidTokenError("invalid refresh token")
        account_id = str(payload["sub"])
        key = refresh_registry_key(account_id)
        try:
            stored = await self.cache.get(key)
        except Exception as exc:
            logger.error(
                "refresh_registry_read_failed",
                user_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DependencyUnavailableError("session registry unavailable") from exc
        if stored is None:
            raise InvalidTokenError("invalid refresh token")
        if not hmac.compare_digest(stored.encode(), refresh_token.encode()):
            logger.warning("refresh_token_mismatch", user_id=account_id)
            try:
                await self.cache.delete(key)
            except Exception as exc:
                logger.warning("refresh_registry_delete_failed", user_id=account_id, error=str(exc))
            raise InvalidTokenError("invalid refresh token")
        return self._mint_access(account_id, str(payload.get("email", "")))

    async def logout(self, refresh_token: Optional[str]) -> None:
        """Revoke the registry entry behind ``refresh_token``; never fails."""
        if not refresh_token:
            return
        payload = self._decode_refresh(refresh_token)
        if not payload:
            logger.info("logout_token_unusable")
            return
        account_id = str(payload["sub"])
        try:
            await self.cache.delete(refresh_registry_key(account_id))
        except Exception as exc:
            logger.warning(
                "refresh_registry_delete_failed",
                user_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        logger.info("refresh_token_revoked", user_id=account_id)

    def verify_access(self, token: Optional[str]) -> Optional[Identity]:
        """Verify an access token locally; no registry lookup."""
        if not token:
            return None
        payload = self.codec.decode(token, secret=self.settings.jwt_secret, token_type=ACCESS)
        if not payload:
            return None
        return Identity(
            account_id=str(payload["sub"]),
            email=str(payload.get("email", "")),
            issued_at=float(payload.get("iat", 0.0)),
            expires_at=float(payload["exp"]),
        )
