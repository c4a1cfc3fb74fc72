"""Unit tests for AuthService orchestration."""

import time
from datetime import timedelta

import pytest

from gatehouse.config import Settings
from gatehouse.service.auth import INVALID_CREDENTIALS, AuthService
from gatehouse.service.dispatch import DispatchProducer
from gatehouse.service.errors import (
    AuthenticationError,
    ConflictError,
    CredentialCheckTimeoutError,
    DependencyUnavailableError,
    NotFoundError,
    RateLimitedError,
    UnverifiedError,
    ValidationError,
)
from gatehouse.service.rate_limit import LoginRateLimiter
from gatehouse.service.tokens import JWTCodec, TokenIssuer
from gatehouse.service.verification import VerificationFlow
from gatehouse.storage.channel import MemoryChannel
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.redis_cache import MemoryCache


class PlainHasher:
    """Fast reversible stand-in for argon2 that records how it was used."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.dummy_calls = 0

    def hash(self, plaintext):
        return f"plain${plaintext}"

    def compare(self, plaintext, hashed):
        if self.delay:
            time.sleep(self.delay)
        return hashed == f"plain${plaintext}"

    def dummy_compare(self, plaintext):
        self.dummy_calls += 1
        return False


class TicketlessCache(MemoryCache):
    async def set(self, key, value, ttl_seconds):
        if key.startswith("verify:"):
            raise ConnectionError("cache down")
        await super().set(key, value, ttl_seconds)


def _service(*, hasher=None, cache=None, timeout=5.0):
    settings = Settings(jwt_secret="access-secret", refresh_jwt_secret="refresh-secret")
    store = MemoryStore()
    cache = cache or MemoryCache()
    codec = JWTCodec(issuer=settings.jwt_issuer, audience=settings.jwt_audience)
    channel = MemoryChannel()
    verification = VerificationFlow(
        store,
        cache,
        DispatchProducer(channel, "email_verification"),
        codec,
        secret="verification-secret",
        ttl_seconds=3600,
    )
    service = AuthService(
        store,
        hasher or PlainHasher(),
        verification,
        LoginRateLimiter(cache, max_attempts=5, window_seconds=600),
        TokenIssuer(cache, settings, codec=codec),
        password_check_timeout=timeout,
    )
    return service, store, channel


async def _registered(service, email="a@test.com", password="pw123456", verify=True):
    registration = await service.register(
        email=email, password=password, first_name="Ada", last_name="Lovelace"
    )
    if verify:
        await service.verify_email(registration.verification_token)
    return registration


class TestRegister:
    async def test_creates_unverified_account_and_queues_email(self):
        service, store, channel = _service()
        registration = await _registered(service, verify=False)

        user = store.get_user(registration.user.id)
        assert user.is_verified is False
        assert user.password_hash == "plain$pw123456"
        assert channel.pending("email_verification") == [
            {"email": "a@test.com", "token": registration.verification_token}
        ]

    async def test_email_is_normalized(self):
        service, store, _ = _service()
        await _registered(service, email="  A@Test.com ", verify=False)
        assert store.get_user_by_email("a@test.com") is not None

    async def test_duplicate_email_conflicts(self):
        service, _, _ = _service()
        await _registered(service, verify=False)
        with pytest.raises(ConflictError):
            await _registered(service, verify=False)

    async def test_ticket_failure_rolls_back_account(self):
        service, store, _ = _service(cache=TicketlessCache())
        with pytest.raises(DependencyUnavailableError):
            await _registered(service, verify=False)
        assert store.get_user_by_email("a@test.com") is None


class TestLogin:
    async def test_success_records_login_and_resets_counter(self):
        service, store, _ = _service()
        await _registered(service)
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await service.login("a@test.com", "wrong-password")

        result = await service.login("a@test.com", "pw123456")

        assert result.tokens.access.token
        last_login_at = store.get_user(result.user.id).last_login_at
        assert last_login_at is not None
        assert last_login_at.utcoffset() == timedelta(0)
        # Counter was reset, so five more failures are allowed before blocking
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await service.login("a@test.com", "wrong-password")
        with pytest.raises(RateLimitedError):
            await service.login("a@test.com", "pw123456")

    async def test_unknown_email_matches_wrong_password(self):
        hasher = PlainHasher()
        service, _, _ = _service(hasher=hasher)
        await _registered(service)

        with pytest.raises(AuthenticationError) as unknown:
            await service.login("nobody@test.com", "pw123456")
        with pytest.raises(AuthenticationError) as wrong:
            await service.login("a@test.com", "nope-nope")

        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS
        assert hasher.dummy_calls == 1

    async def test_unverified_account_rejected_after_password_check(self):
        service, _, _ = _service()
        await _registered(service, verify=False)
        with pytest.raises(UnverifiedError):
            await service.login("a@test.com", "pw123456")

    async def test_rate_limit_applies_before_credentials(self):
        service, _, _ = _service()
        await _registered(service)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await service.login("a@test.com", "wrong-password")

        with pytest.raises(RateLimitedError) as exc_info:
            await service.login("a@test.com", "pw123456")
        assert exc_info.value.detail["retry_after_seconds"] == 600

    async def test_slow_password_check_times_out(self):
        service, _, _ = _service(hasher=PlainHasher(delay=0.3), timeout=0.05)
        await _registered(service)
        with pytest.raises(CredentialCheckTimeoutError):
            await service.login("a@test.com", "pw123456")


class TestUserManagement:
    async def test_update_allow_listed_fields(self):
        service, _, _ = _service()
        registration = await _registered(service)
        user = service.update_user(registration.user.id, {"first_name": "Grace"})
        assert user.first_name == "Grace"

    async def test_update_rejects_email(self):
        service, _, _ = _service()
        registration = await _registered(service)
        with pytest.raises(ValidationError):
            service.update_user(registration.user.id, {"email": "b@test.com"})

    async def test_update_rejects_privileged_fields(self):
        service, store, _ = _service()
        registration = await _registered(service, verify=False)
        with pytest.raises(ValidationError):
            service.update_user(registration.user.id, {"is_verified": True})
        assert store.get_user(registration.user.id).is_verified is False

    def test_missing_user(self):
        service, _, _ = _service()
        with pytest.raises(NotFoundError):
            service.get_user("missing")
        with pytest.raises(NotFoundError):
            service.update_user("missing", {"first_name": "x"})
        with pytest.raises(NotFoundError):
            service.delete_user("missing")
