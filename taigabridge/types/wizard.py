"""In-memory types for the /new story wizard."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from taigabridge.schemas.telegram import ParsedCallback

WIZARD_PREFIX = "new"


@dataclass
class WizardState:
    """Progress of one user through /new."""

    project_id: int | None = None
    assignee_id: int | None = None
    awaiting_text: bool = False
    last_active: float = 0.0


# Callback actions, decoded once from the button payload.


@dataclass(frozen=True)
class ChooseProject:
    project_id: int


@dataclass(frozen=True)
class ChooseAssignee:
    project_id: int
    assignee_id: int | None  # None means "no assignee"


@dataclass(frozen=True)
class CancelWizard:
    pass


@dataclass(frozen=True)
class InvalidCallback:
    reason: str


CallbackAction = Union[ChooseProject, ChooseAssignee, CancelWizard, InvalidCallback]


def project_button_data(project_id: int) -> str:
    return f"{WIZARD_PREFIX}:proj:{project_id}"


def assignee_button_data(project_id: int, assignee_id: int | None) -> str:
    return f"{WIZARD_PREFIX}:assignee:{project_id}:{assignee_id or 0}"


def cancel_button_data() -> str:
    return f"{WIZARD_PREFIX}:cancel"


def decode_callback(data: str | None) -> CallbackAction | None:
    """Decode button data into an action. Foreign prefixes decode to None."""
    parsed = ParsedCallback.parse(data or "")
    if parsed.action != WIZARD_PREFIX:
        return None

    if parsed.params == ["cancel"]:
        return CancelWizard()
    if len(parsed.params) < 2:
        return InvalidCallback("Invalid data")

    kind, args = parsed.params[0], parsed.params[1:]
    if kind == "proj":
        project_id = _parse_int(args[0])
        if project_id is None or project_id <= 0:
            return InvalidCallback("Invalid project")
        return ChooseProject(project_id)

    if kind == "assignee":
        if len(args) < 2:
            return InvalidCallback("Invalid data")
        project_id = _parse_int(args[0])
        if project_id is None or project_id <= 0:
            return InvalidCallback("Invalid project")
        assignee = _parse_int(args[1])
        if assignee is None or assignee < 0:
            return InvalidCallback("Invalid assignee")
        return ChooseAssignee(project_id, assignee or None)

    return InvalidCallback("Unknown action")


def _parse_int(raw: str) -> int | None:
    try:
        return int(raw)
    except ValueError:
        return None
