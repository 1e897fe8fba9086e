"""
Tests for best-effort notification delivery.
"""
from types import SimpleNamespace
from unittest.mock import patch

import aiohttp
import pytest

from position_ladder.monitoring.alerting import Notifier


class FakeResponse:
    def __init__(self, status=200, text=""):
        self.status = status
        self._text = text

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, status=200, error=None):
        self.calls = []
        self.status = status
        self.error = error

    def _respond(self, method, url, **kwargs):
        if self.error:
            raise self.error
        self.calls.append((method, url, kwargs))
        return FakeResponse(self.status)

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, **kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def _patched(session):
    return patch.object(aiohttp, "ClientSession", lambda *args, **kwargs: session)


class TestNotifier:
    @pytest.mark.asyncio
    async def test_unconfigured_sends_nothing(self):
        session = FakeSession()
        with _patched(session):
            await Notifier().notify("Trade Closed: BTCUSDT", "done")

        assert session.calls == []

    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self):
        session = FakeSession()
        with _patched(session):
            await Notifier(webhook_url="https://example.test/hook", enabled=False).notify("t", "x")

        assert session.calls == []

    @pytest.mark.asyncio
    async def test_join_push(self):
        session = FakeSession()
        with _patched(session):
            await Notifier(join_api_key="k", join_device_id="d").notify("Stop Loss Hit: BTCUSDT", "closed")

        method, _, kwargs = session.calls[0]
        assert method == "GET"
        assert kwargs["params"]["apikey"] == "k"
        assert kwargs["params"]["deviceId"] == "d"
        assert kwargs["params"]["title"] == "Stop Loss Hit: BTCUSDT"

    @pytest.mark.asyncio
    async def test_telegram_payload(self):
        session = FakeSession()
        notifier = Notifier(webhook_url="https://api.telegram.org/botX/sendMessage", chat_id="42")
        with _patched(session):
            await notifier.notify("Trade Closed: BTCUSDT", "body")

        payload = session.calls[0][2]["json"]
        assert payload["chat_id"] == "42"
        assert payload["text"].startswith("[Trade Closed: BTCUSDT]")
        assert payload["text"].endswith("body")

    @pytest.mark.asyncio
    async def test_generic_webhook_payload(self):
        session = FakeSession(status=500)
        with _patched(session):
            await Notifier(webhook_url="https://example.test/hook").notify("t", "x")

        payload = session.calls[0][2]["json"]
        assert payload["title"] == "t"
        assert payload["text"] == "x"

    @pytest.mark.asyncio
    async def test_transport_failure_swallowed(self):
        session = FakeSession(error=aiohttp.ClientConnectionError("refused"))
        with _patched(session):
            await Notifier(webhook_url="https://example.test/hook").notify("t", "x")

    @pytest.mark.asyncio
    async def test_repeated_title_rate_limited(self):
        session = FakeSession()
        notifier = Notifier(webhook_url="https://example.test/hook", min_interval_seconds=60)
        with _patched(session):
            await notifier.notify("Ladder Rebuilt: BTCUSDT", "a")
            await notifier.notify("Ladder Rebuilt: BTCUSDT", "b")
            await notifier.notify("Ladder Rebuilt: ETHUSDT", "c")

        assert len(session.calls) == 2

    def test_from_config(self):
        config = SimpleNamespace(
            notifications=SimpleNamespace(
                join_api_key=None,
                join_device_id=None,
                webhook_url="https://discord.com/api/webhooks/1/abc",
                chat_id=None,
                enabled=True,
                timeout_seconds=5,
            )
        )

        notifier = Notifier.from_config(config)

        assert notifier.configured is True
        assert notifier.timeout_seconds == 5
