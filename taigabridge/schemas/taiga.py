"""Taiga API schemas (subset of fields the bridge uses)."""

from pydantic import BaseModel, ConfigDict, Field


class _TaigaModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TaigaUser(_TaigaModel):
    """Taiga user, as returned by users/me and users/<id>."""

    id: int
    full_name: str = Field(default="", alias="full_name_display")


class Project(_TaigaModel):
    """Taiga project."""

    id: int
    name: str = ""
    slug: str = ""


class Membership(_TaigaModel):
    """Membership of a user in a project."""

    id: int
    project: int
    user_id: int | None = Field(default=None, alias="user")
    full_name: str = ""
    is_admin: bool = False
    is_owner: bool = False

    @property
    def can_administer(self) -> bool:
        return self.is_admin or self.is_owner


class StatusExtraInfo(_TaigaModel):
    name: str = ""


class UserStory(_TaigaModel):
    """Taiga user story - the work item the bridge tracks."""

    id: int
    ref: int = 0
    subject: str = ""
    assigned_to: int | None = None
    status_extra_info: StatusExtraInfo = Field(default_factory=StatusExtraInfo)

    @property
    def status_name(self) -> str:
        return self.status_extra_info.name


class UserStoryCreate(_TaigaModel):
    """Payload accepted by POST userstories."""

    project: int
    subject: str
    description: str | None = None
    assigned_to: int | None = None
    status: int | None = None
    tags: list[str] | None = None


class AuthTokens(_TaigaModel):
    """Credential pair returned by auth/refresh."""

    auth_token: str
    refresh: str
