"""Link store schemas.

These models are the on-disk shape of the storage file as well as the
in-memory records handed out by the store.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class TaskDigest(BaseModel):
    """Fingerprint of the story fields that trigger notifications."""

    status: str = ""
    assigned_to: int = 0

    model_config = ConfigDict(frozen=True)


class UserLink(BaseModel):
    """Taiga credentials and notification settings tied to a Telegram user."""

    telegram_id: int
    taiga_token: str
    taiga_refresh_token: str | None = None
    taiga_user_id: int = 0
    taiga_user_name: str = ""
    notify_chat_id: int | None = None
    watched_projects: list[int] = Field(default_factory=list)
    last_task_states: dict[int, TaskDigest] = Field(default_factory=dict)

    @field_validator("last_task_states", "watched_projects", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return {} if info.field_name == "last_task_states" else []
        return value

    @property
    def notify_destination(self) -> int:
        """Chat that receives notifications: the override, else the private chat."""
        if self.notify_chat_id is not None:
            return self.notify_chat_id
        return self.telegram_id


class StoreSnapshot(BaseModel):
    """Top-level layout of the storage file."""

    links: dict[int, UserLink]
    project_user_mappings: dict[int, dict[int, int]] = Field(default_factory=dict)
    telegram_usernames: dict[str, int] = Field(default_factory=dict)

    @field_validator("project_user_mappings", "telegram_usernames", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value
