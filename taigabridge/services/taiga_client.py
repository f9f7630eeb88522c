"""Taiga REST API client.

Covers what the bridge needs: identity, projects, memberships, and user
stories (list and create). One client is bound to one base URL and one
credential. Setup:

1. Obtain an auth token (and optionally a refresh token) from Taiga
2. Link it in Telegram: /link <auth_token> [refresh_token]

On a 401 the client refreshes the credential once via auth/refresh,
replays the request once, and reports the new pair through ``on_refresh``
so the caller can persist it.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from taigabridge.errors import (
    ClientConfigError,
    RemoteAPIError,
    ResponseDecodeError,
    UnexpectedContentTypeError,
    ValidationError,
    truncate_for_log,
)
from taigabridge.schemas.taiga import (
    AuthTokens,
    Membership,
    Project,
    TaigaUser,
    UserStory,
    UserStoryCreate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RefreshCallback = Callable[[str, str], Awaitable[None] | None]

_PROJECTS = TypeAdapter(list[Project])
_MEMBERSHIPS = TypeAdapter(list[Membership])
_USER_STORIES = TypeAdapter(list[UserStory])


class TaigaClient:
    """Async accessor for one Taiga account."""

    def __init__(
        self,
        base_url: str,
        auth_token: str,
        refresh_token: str | None = None,
        on_refresh: RefreshCallback | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Args:
            base_url: Taiga API root, e.g. https://api.taiga.io/api/v1
            auth_token: Bearer token
            refresh_token: Enables transparent refresh on 401 when set
            on_refresh: Called with (auth_token, refresh_token) after a refresh
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)

        Raises:
            ClientConfigError: If the base URL or token is unusable
        """
        parsed = urlparse(base_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ClientConfigError(f"invalid Taiga base URL: {base_url!r}")
        if not (auth_token or "").strip():
            raise ClientConfigError("Taiga token is required")

        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.auth_token = auth_token
        self.refresh_token = refresh_token
        self.timeout = timeout
        self._on_refresh = on_refresh
        self._transport = transport

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_me(self) -> TaigaUser:
        return await self._get_model("users/me", TaigaUser)

    async def get_user(self, user_id: int) -> TaigaUser:
        return await self._get_model(f"users/{user_id}", TaigaUser)

    async def list_projects(self) -> list[Project]:
        data = await self._request("GET", "projects", paginated=True)
        return self._decode(_PROJECTS, data, "projects")

    async def list_memberships(self, project_id: int) -> list[Membership]:
        if project_id <= 0:
            raise ValidationError("invalid project id")
        data = await self._request(
            "GET", "memberships", params={"project": project_id}, paginated=True
        )
        return self._decode(_MEMBERSHIPS, data, "memberships")

    async def list_user_stories(
        self,
        project_id: int | None = None,
        assigned_to: int | None = None,
        status_id: int | None = None,
    ) -> list[UserStory]:
        """List user stories; only the filters that are set are sent."""
        params: dict[str, int] = {}
        if project_id:
            params["project"] = project_id
        if assigned_to is not None:
            params["assigned_to"] = assigned_to
        if status_id is not None:
            params["status"] = status_id
        data = await self._request("GET", "userstories", params=params, paginated=True)
        return self._decode(_USER_STORIES, data, "userstories")

    async def create_user_story(
        self,
        project_id: int,
        subject: str,
        description: str | None = None,
        assigned_to: int | None = None,
    ) -> UserStory:
        subject = (subject or "").strip()
        if project_id <= 0 or not subject:
            raise ValidationError("project and subject are required")
        payload = UserStoryCreate(
            project=project_id,
            subject=subject,
            description=description or None,
            assigned_to=assigned_to,
        )
        data = await self._request(
            "POST", "userstories", json_body=payload.model_dump(exclude_none=True)
        )
        return self._decode(TypeAdapter(UserStory), data, "userstories")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get_model(self, path: str, model: type[BaseModel]) -> Any:
        data = await self._request("GET", path)
        return self._decode(TypeAdapter(model), data, path)

    def _decode(self, adapter: TypeAdapter[T], data: Any, path: str) -> T:
        try:
            return adapter.validate_python(data)
        except PydanticValidationError as e:
            raise ResponseDecodeError(
                f"unexpected response shape from {path}: {e.error_count()} errors",
                url=urljoin(self.base_url, path),
            ) from e

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        paginated: bool = False,
    ) -> Any:
        try:
            return await self._send(method, path, params, json_body, paginated)
        except RemoteAPIError as original:
            if not original.is_unauthorized or not self.refresh_token:
                raise
            try:
                await self._refresh()
            except RemoteAPIError as refresh_error:
                logger.warning("Taiga token refresh failed: %s", refresh_error)
                raise original from refresh_error
            try:
                return await self._send(method, path, params, json_body, paginated)
            except RemoteAPIError as replay_error:
                raise original from replay_error

    async def _refresh(self) -> None:
        data = await self._send(
            "POST", "auth/refresh", None, {"refresh": self.refresh_token}, False, with_auth=False
        )
        tokens = self._decode(TypeAdapter(AuthTokens), data, "auth/refresh")
        self.auth_token = tokens.auth_token
        self.refresh_token = tokens.refresh
        logger.info("Refreshed Taiga credentials")
        if self._on_refresh is not None:
            result = self._on_refresh(tokens.auth_token, tokens.refresh)
            if result is not None:
                await result

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        paginated: bool,
        with_auth: bool = True,
    ) -> Any:
        url = urljoin(self.base_url, path)
        headers = {"Content-Type": "application/json"}
        if with_auth and self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        if paginated:
            headers["x-disable-pagination"] = "True"

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.request(
                    method, url, params=params, json=json_body, headers=headers
                )
        except httpx.HTTPError as e:
            raise RemoteAPIError(f"Taiga request to {url} failed: {e}", url=url) from e

        final_url = str(response.url)
        if response.status_code >= 300:
            raise RemoteAPIError(
                f"Taiga API error ({response.status_code}) from {final_url}: "
                f"{truncate_for_log(response.text)}",
                status_code=response.status_code,
                url=final_url,
                body=response.text,
            )

        if not response.content:
            return None

        content_type = response.headers.get("content-type", "")
        if content_type and "json" not in content_type:
            raise UnexpectedContentTypeError(
                f"Taiga API returned non-JSON content-type {content_type!r} from {final_url}",
                status_code=response.status_code,
                url=final_url,
                body=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ResponseDecodeError(
                f"failed to decode response from {final_url} (content-type {content_type!r})",
                status_code=response.status_code,
                url=final_url,
                body=response.text,
            ) from e
