import asyncio

import httpx
import pytest

from taigabridge.services import telegram_bot


def _flaky_call(monkeypatch, first_error):
    """Replace the Bot API call with one that fails once, then succeeds."""
    calls = []

    async def _call(method, payload, timeout=30.0):
        calls.append((method, payload["text"]))
        if len(calls) == 1:
            raise first_error
        return {"ok": True}

    monkeypatch.setattr(telegram_bot, "_call", _call)
    return calls


def test_read_timeout_is_not_resent(monkeypatch):
    calls = _flaky_call(monkeypatch, httpx.ReadTimeout("read timed out"))

    with pytest.raises(httpx.ReadTimeout):
        asyncio.run(telegram_bot.send_text(1, "Story status changed: #1 Login (New -> Done)"))

    assert calls == [("sendMessage", "Story status changed: #1 Login (New -> Done)")]


def test_remote_protocol_error_is_not_resent(monkeypatch):
    calls = _flaky_call(monkeypatch, httpx.RemoteProtocolError("server disconnected"))

    with pytest.raises(httpx.RemoteProtocolError):
        asyncio.run(telegram_bot.send_message(1, "hello"))

    assert len(calls) == 1


def test_connect_error_is_retried(monkeypatch):
    calls = _flaky_call(monkeypatch, httpx.ConnectError("connection refused"))

    result = asyncio.run(telegram_bot.send_message(1, "hello"))

    assert result == {"ok": True}
    assert len(calls) == 2
