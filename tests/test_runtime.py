"""Tests for runtime wiring of the dispatch channel."""

from fastapi.testclient import TestClient

from gatehouse import app as app_module
from gatehouse.config import DispatchBackend, Settings
from gatehouse.service import runtime as runtime_module
from gatehouse.service.runtime import Runtime
from gatehouse.storage.channel import MemoryChannel


def _settings(**overrides):
    options = dict(
        test_mode=True,
        use_memory_store=True,
        redis_url="",
        dispatch_consumer_enabled=False,
    )
    options.update(overrides)
    return Settings(**options)


def test_configured_memory_backend_leaves_consumer_to_settings():
    runtime = Runtime(_settings(dispatch_backend=DispatchBackend.MEMORY))
    assert isinstance(runtime.channel, MemoryChannel)
    assert runtime.channel_fallback is False
    assert runtime.consumer_in_process is False


def test_redis_fallback_requires_in_process_consumer():
    runtime = Runtime(_settings(dispatch_backend=DispatchBackend.REDIS))
    assert isinstance(runtime.channel, MemoryChannel)
    assert runtime.channel_fallback is True
    assert runtime.consumer_in_process is True


def test_startup_runs_consumer_for_fallback_channel(monkeypatch):
    runtime = Runtime(_settings(dispatch_backend=DispatchBackend.REDIS))
    monkeypatch.setattr(runtime_module, "runtime", runtime)

    with TestClient(app_module.app, base_url="https://testserver"):
        assert runtime.consumer.is_running

    assert not runtime.consumer.is_running
