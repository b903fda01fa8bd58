"""
Tests for connection settings, reconnect policy and timers.
"""

import asyncio

import pytest

from memphis_client import ConnectionConfig, ReconnectPolicy
from memphis_client.models import MAX_RECONNECT_LIMIT, normalize_host
from memphis_client.timers import IntervalTimer, Timer


class TestConnectionConfig:
    """Test connection settings."""

    def test_defaults(self):
        config = ConnectionConfig(
            host="localhost", username="app", connection_token="secret", broker_host="localhost",
        )

        assert config.port == 9000
        assert config.broker_port == 7766
        assert config.reconnect is True
        assert config.max_reconnect == 3
        assert config.reconnect_interval_ms == 200
        assert config.timeout_ms == 15000

    @pytest.mark.parametrize("host,expected", [
        ("http://memphis.local", "memphis.local"),
        ("https://memphis.local", "memphis.local"),
        ("memphis.local", "memphis.local"),
    ])
    def test_normalize_host(self, host, expected):
        assert normalize_host(host) == expected

    def test_hosts_are_normalized(self):
        config = ConnectionConfig(
            host="https://cp.local", username="app", connection_token="secret",
            broker_host="http://broker.local",
        )

        assert config.host == "cp.local"
        assert config.broker_host == "broker.local"

    def test_max_reconnect_is_capped(self):
        config = ConnectionConfig(
            host="localhost", username="app", connection_token="secret",
            broker_host="localhost", max_reconnect=50,
        )

        assert config.max_reconnect == MAX_RECONNECT_LIMIT
        assert config.reconnect_policy().max_attempts == MAX_RECONNECT_LIMIT

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MEMPHIS_HOST", "http://cp.local")
        monkeypatch.setenv("MEMPHIS_USERNAME", "app")
        monkeypatch.setenv("MEMPHIS_CONNECTION_TOKEN", "secret")
        monkeypatch.setenv("MEMPHIS_BROKER_HOST", "broker.local")
        monkeypatch.setenv("MEMPHIS_PORT", "9100")
        monkeypatch.setenv("MEMPHIS_RECONNECT", "off")

        config = ConnectionConfig.from_env(max_reconnect=5)

        assert config.host == "cp.local"
        assert config.port == 9100
        assert config.reconnect is False
        assert config.max_reconnect == 5

    def test_from_env_missing_settings(self, monkeypatch):
        for key in ("HOST", "USERNAME", "CONNECTION_TOKEN", "BROKER_HOST"):
            monkeypatch.delenv(f"MEMPHIS_{key}", raising=False)

        with pytest.raises(ValueError, match="connection_token"):
            ConnectionConfig.from_env(host="cp.local", username="app", broker_host="cp.local")


class TestReconnectPolicy:
    """Test reconnect attempt bookkeeping."""

    def test_exhausted_when_disabled(self):
        assert ReconnectPolicy(enabled=False, max_attempts=3).exhausted

    def test_exhausted_after_max_attempts(self):
        policy = ReconnectPolicy(max_attempts=2)
        assert not policy.exhausted

        policy.attempts = 2
        assert policy.exhausted

        policy.reset()
        assert policy.attempts == 0
        assert not policy.exhausted

    def test_zero_attempts_is_exhausted(self):
        assert ReconnectPolicy(max_attempts=0).exhausted

    def test_max_attempts_capped(self):
        assert ReconnectPolicy(max_attempts=100).max_attempts == MAX_RECONNECT_LIMIT


class TestTimers:
    """Test the asyncio timers."""

    @pytest.mark.asyncio
    async def test_timer_fires_once(self):
        fired = []
        timer = Timer(10, lambda: fired.append(True)).start()

        await asyncio.sleep(0.05)

        assert fired == [True]
        assert not timer.active

    @pytest.mark.asyncio
    async def test_cancelled_timer_does_not_fire(self):
        fired = []
        timer = Timer(20, lambda: fired.append(True)).start()
        timer.cancel()

        await asyncio.sleep(0.05)

        assert fired == []
        assert not timer.active

    @pytest.mark.asyncio
    async def test_interval_timer_awaits_coroutine_callbacks(self):
        runs = []

        async def tick():
            runs.append(asyncio.get_running_loop().time())

        timer = IntervalTimer(10, tick).start()
        await asyncio.sleep(0.08)
        timer.cancel()
        count = len(runs)
        await asyncio.sleep(0.03)

        assert count >= 2
        assert len(runs) == count

    @pytest.mark.asyncio
    async def test_interval_timer_survives_callback_errors(self):
        runs = []

        def tick():
            runs.append(True)
            raise RuntimeError("boom")

        timer = IntervalTimer(10, tick).start()
        await asyncio.sleep(0.06)
        timer.cancel()

        assert len(runs) >= 2
