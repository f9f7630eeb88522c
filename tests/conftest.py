import pytest

from taigabridge.config import get_settings
from taigabridge.schemas.taiga import StatusExtraInfo, UserStory
from taigabridge.services.link_store import LinkStore


@pytest.fixture(autouse=True)
def settings_env(monkeypatch, tmp_path):
    """Minimal environment for Settings; every test starts from a fresh cache."""
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:test-token")
    monkeypatch.setenv("LINK_STORAGE_PATH", str(tmp_path / "app-links.json"))
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "false")
    monkeypatch.delenv("TELEGRAM_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("TELEGRAM_WEBHOOK_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "links.json"


@pytest.fixture
def store(store_path):
    return LinkStore(store_path)


def make_story(story_id, status="New", assigned_to=None, ref=None, subject=None):
    return UserStory(
        id=story_id,
        ref=ref if ref is not None else story_id,
        subject=subject or f"Story {story_id}",
        assigned_to=assigned_to,
        status_extra_info=StatusExtraInfo(name=status),
    )
