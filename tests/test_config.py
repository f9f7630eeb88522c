import pytest
from pydantic import ValidationError

from taigabridge.config import DEFAULT_TAIGA_BASE_URL, Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("LINK_STORAGE_PATH")
    monkeypatch.delenv("NOTIFICATIONS_ENABLED")

    settings = Settings(_env_file=None)

    assert settings.taiga_base_url == DEFAULT_TAIGA_BASE_URL
    assert settings.link_storage_path == "taiga_links.json"
    assert settings.poll_interval_seconds == 30
    assert settings.telegram_message_limit == 3500
    assert settings.notifications_enabled is True


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("TAIGA_BASE_URL", "http://localhost:9000/api/v1")

    settings = Settings(_env_file=None)

    assert settings.poll_interval_seconds == 5
    assert settings.taiga_base_url == "http://localhost:9000/api/v1"


def test_token_is_required(monkeypatch):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


@pytest.mark.parametrize(
    "name, value",
    [
        ("POLL_INTERVAL_SECONDS", "0"),
        ("POLL_INTERVAL_SECONDS", "-5"),
        ("TAIGA_BASE_URL", "taiga.local"),
        ("TELEGRAM_MESSAGE_LIMIT", "5000"),
    ],
)
def test_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
