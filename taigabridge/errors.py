"""Typed domain exceptions for the Taiga bridge.

Service code raises these; the command layer turns them into chat replies
and the reconciler decides per type whether a failure skips a project,
a user, or nothing at all.

Usage:
    # In service layer
    raise NotFoundError("Link", telegram_id)

    # In command handler
    try:
        store.add_watched_project(telegram_id, project_id)
    except NotFoundError:
        return NOT_LINKED_REPLY
"""

from __future__ import annotations

BODY_PREVIEW_LIMIT = 1024


def truncate_for_log(body: str, limit: int = BODY_PREVIEW_LIMIT) -> str:
    """Strip and cap a response body so it can be logged or shown safely."""
    body = (body or "").strip()
    if limit <= 0:
        return ""
    if len(body) <= limit:
        return body
    return body[:limit] + "..."


class BridgeError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BridgeError):
    """Malformed or missing input. Reported to the caller, never retried."""


class ClientConfigError(ValidationError):
    """A Taiga client could not be constructed (bad base URL, empty token)."""


class NotFoundError(BridgeError):
    """Operation on an unlinked or unmapped identity."""

    def __init__(self, resource_type: str, identifier: object) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class PersistenceError(BridgeError):
    """The link store could not be written or read."""


class StorageCorruptError(PersistenceError):
    """The storage file matches neither the current nor the legacy layout."""


class RemoteAPIError(BridgeError):
    """Taiga answered with an error, or could not be reached at all.

    Attributes:
        status_code: HTTP status, or None for transport failures
        url: Effective request URL
        body: Truncated response body for diagnostics
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        url: str = "",
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url
        self.body = truncate_for_log(body)

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class UnexpectedContentTypeError(RemoteAPIError):
    """A JSON answer was expected but the content type says otherwise."""


class ResponseDecodeError(RemoteAPIError):
    """The answer claimed to be JSON but did not decode into the expected shape."""


class AuthorizationError(BridgeError):
    """An admin-only command was invoked by a non-admin."""


class PermissionCheckError(BridgeError):
    """The admin check itself failed (Taiga unreachable, caller unlinked)."""
