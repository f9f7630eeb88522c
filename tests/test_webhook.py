from fastapi.testclient import TestClient

from taigabridge.config import get_settings
from taigabridge.main import app
from taigabridge.services.telegram_formatter import HELP_TEXT


class _RecordingTransport:
    def __init__(self):
        self.texts = []

    async def send_text(self, chat_id, text):
        self.texts.append((chat_id, text))

    async def send_keyboard(self, chat_id, text, markup):
        self.texts.append((chat_id, text))

    async def answer_callback(self, callback_query_id, text=None):
        pass

    async def delete_message(self, chat_id, message_id):
        pass


START_UPDATE = {
    "update_id": 1,
    "message": {
        "message_id": 1,
        "chat": {"id": 100, "type": "private"},
        "from": {"id": 100, "first_name": "Ana", "username": "ana"},
        "text": "/start",
    },
}


def test_health():
    with TestClient(app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_webhook_dispatches_update():
    with TestClient(app) as client:
        transport = _RecordingTransport()
        app.state.bot.transport = transport

        response = client.post("/telegram/webhook", json=START_UPDATE)

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert transport.texts == [(100, HELP_TEXT)]
        assert app.state.store.resolve_handle("ana") == 100


def test_webhook_rejects_unparsable_update():
    with TestClient(app) as client:
        response = client.post("/telegram/webhook", json={"message": "nope"})
    assert response.status_code == 400


def test_webhook_secret(monkeypatch):
    monkeypatch.setenv("TELEGRAM_WEBHOOK_SECRET", "s3cret")
    get_settings.cache_clear()

    with TestClient(app) as client:
        app.state.bot.transport = _RecordingTransport()
        denied = client.post("/telegram/webhook", json=START_UPDATE)
        wrong = client.post(
            "/telegram/webhook", json=START_UPDATE, headers={"X-Telegram-Bot-Api-Secret-Token": "nope"}
        )
        allowed = client.post(
            "/telegram/webhook", json=START_UPDATE, headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"}
        )

    assert denied.status_code == 403
    assert wrong.status_code == 403
    assert allowed.status_code == 200


def test_handler_failure_still_answers_ok(monkeypatch):
    with TestClient(app) as client:
        async def _boom(update):
            raise RuntimeError("telegram unreachable")

        monkeypatch.setattr(app.state.bot, "handle_update", _boom)
        response = client.post("/telegram/webhook", json=START_UPDATE)

    assert response.status_code == 200
    assert response.json() == {"ok": True}
