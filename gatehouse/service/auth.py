from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from gatehouse.logging import get_logger, redact_email
from gatehouse.service.errors import (
    AuthenticationError,
    ConflictError,
    CredentialCheckTimeoutError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
    ValidationError,
)
from gatehouse.storage.errors import ConstraintViolation, RecordNotFound
from gatehouse.storage.models import MUTABLE_PROFILE_FIELDS, utcnow

if TYPE_CHECKING:
    from gatehouse.service.passwords import PasswordHashing
    from gatehouse.service.rate_limit import LoginRateLimiter
    from gatehouse.service.tokens import IssuedToken, SessionTokenPair, TokenIssuer
    from gatehouse.service.verification import VerificationFlow
    from gatehouse.storage.memory import MemoryStore
    from gatehouse.storage.models import User
    from gatehouse.storage.postgres import PostgresStore

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid email or password"


@dataclass
class Registration:
    user: "User"
    verification_token: str


@dataclass
class LoginResult:
    user: "User"
    tokens: "SessionTokenPair"


class AuthService:
    """Registration, verification, login and session endpoints over the core components.

    Store calls are synchronous; password hashing and comparison run in a
    worker thread so they never stall the event loop.
    """

    def __init__(
        self,
        store: Union["PostgresStore", "MemoryStore"],
        hasher: "PasswordHashing",
        verification: "VerificationFlow",
        limiter: "LoginRateLimiter",
        tokens: "TokenIssuer",
        *,
        password_check_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.verification = verification
        self.limiter = limiter
        self.tokens = tokens
        self.password_check_timeout = password_check_timeout
        self.logger = logger

    async def register(
        self,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        phone_number: Optional[str] = None,
    ) -> Registration:
        email = email.strip().lower()
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            user = self.store.create_user(
                email,
                password_hash,
                first_name=first_name,
                last_name=last_name,
                phone_number=phone_number,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same email
            raise ConflictError("email already registered", detail=exc.detail) from exc

        try:
            token = await self.verification.issue(user.id, user.email)
        except ServiceError:
            # Without a ticket the account could never be verified
            self.logger.error("registration_rolled_back", user_id=user.id)
            try:
                self.store.delete_user(user.id)
            except RecordNotFound:
                pass
            raise
        self.logger.info("user_registered", user_id=user.id, email=redact_email(email))
        return Registration(user=user, verification_token=token)

    async def verify_email(self, token: str) -> str:
        return await self.verification.redeem(token)

    async def _password_matches(self, user: Optional["User"], password: str) -> bool:
        if user is None:
            check = asyncio.to_thread(self.hasher.dummy_compare, password)
        else:
            check = asyncio.to_thread(self.hasher.compare, password, user.password_hash)
        try:
            return await asyncio.wait_for(check, self.password_check_timeout)
        except asyncio.TimeoutError as exc:
            self.logger.error("password_check_timeout", timeout_seconds=self.password_check_timeout)
            raise CredentialCheckTimeoutError("credential check timed out") from exc

    async def login(self, email: str, password: str) -> LoginResult:
        """Throttle, check credentials, then mint a token pair.

        The rate limit gate runs before any store lookup or hash comparison.
        Unknown emails and wrong passwords produce the same error.
        """
        email = email.strip().lower()
        decision = await self.limiter.check(email)
        if not decision.allowed:
            raise RateLimitedError(
                "too many login attempts, try again later",
                detail={"retry_after_seconds": decision.retry_after_seconds},
            )

        user = self.store.get_user_by_email(email)
        if not await self._password_matches(user, password) or user is None:
            self.logger.warning(
                "login_failed", email=redact_email(email), attempts=decision.attempts
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        pair = await self.tokens.login(user)
        user = self.store.update_user(user.id, {"last_login_at": utcnow()})
        await self.limiter.reset(email)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, tokens=pair)

    async def refresh(self, refresh_token: str) -> "IssuedToken":
        return await self.tokens.refresh(refresh_token)

    async def logout(self, refresh_token: Optional[str]) -> None:
        await self.tokens.logout(refresh_token)

    def list_users(self, limit: int = 100) -> List["User"]:
        return self.store.list_users(limit=limit)

    def get_user(self, user_id: str) -> "User":
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> "User":
        if "email" in changes:
            raise ValidationError("email cannot be changed", detail={"field": "email"})
        unknown = set(changes) - MUTABLE_PROFILE_FIELDS
        if unknown:
            raise ValidationError("fields cannot be updated", detail={"fields": sorted(unknown)})
        fields = dict(changes)
        try:
            user = self.store.update_user(user_id, fields)
        except RecordNotFound as exc:
            raise NotFoundError("user not found", detail={"user_id": user_id}) from exc
        self.logger.info("user_updated", user_id=user_id, fields=sorted(fields))
        return user

    def delete_user(self, user_id: str) -> None:
        try:
            self.store.delete_user(user_id)
        except RecordNotFound as exc:
            raise NotFoundError("user not found", detail={"user_id": user_id}) from exc
        self.logger.info("user_deleted", user_id=user_id)
