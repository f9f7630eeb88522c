"""Argument parsing for bot commands.

Every parser raises ``ValidationError`` with a message that can be shown to
the user as-is.
"""

from __future__ import annotations

from dataclasses import dataclass

from taigabridge.errors import ValidationError

TASK_USAGE = "Usage: /task <project_id> [taiga_user_id] <subject> [| description]"
TASKTO_USAGE = "Usage: /taskto <project_id> <taiga_user_id> <subject> [| description]"


@dataclass(frozen=True)
class StoryRequest:
    project_id: int
    subject: str
    description: str = ""
    assignee_id: int | None = None


def split_command(text: str) -> tuple[str, str]:
    """Split '/cmd@bot args' into ('cmd', 'args'). Non-commands give ('', text)."""
    text = (text or "").strip()
    if not text.startswith("/"):
        return "", text
    head, _, args = text.partition(" ")
    name = head[1:].split("@", 1)[0].lower()
    return name, args.strip()


def split_subject_description(raw: str) -> tuple[str, str]:
    """'Subject | description' -> ('Subject', 'description')."""
    subject, _, description = (raw or "").partition("|")
    return subject.strip(), description.strip()


def parse_int(raw: str, error: str) -> int:
    try:
        return int((raw or "").strip())
    except ValueError:
        raise ValidationError(error) from None


def parse_positive_int(raw: str, error: str) -> int:
    value = parse_int(raw, error)
    if value <= 0:
        raise ValidationError(error)
    return value


def parse_required_project_id(raw: str) -> int:
    if not (raw or "").strip():
        raise ValidationError("Project id is required")
    return parse_positive_int(raw, "Invalid project id")


def parse_optional_project_id(raw: str) -> int | None:
    """Empty or 0 means 'all projects'."""
    if not (raw or "").strip():
        return None
    project_id = parse_int(raw, "Invalid project id")
    if project_id < 0:
        raise ValidationError("Invalid project id")
    return project_id or None


def parse_chat_id(raw: str) -> int:
    """Chat ids may be negative (groups, channels) but never zero."""
    if not (raw or "").strip():
        raise ValidationError("Chat id is required")
    chat_id = parse_int(raw, "Invalid chat id")
    if chat_id == 0:
        raise ValidationError("Invalid chat id")
    return chat_id


def parse_task_with_optional_assignee(raw: str) -> StoryRequest:
    """
    Parse '/task <project_id> [taiga_user_id] <subject> [| description]'.

    The second word is taken as an assignee when it is numeric and a subject
    still follows it. A numeric assignee must be a positive Taiga user id.
    """
    raw = (raw or "").strip()
    fields = raw.split()
    if len(fields) < 2:
        raise ValidationError(TASK_USAGE)

    project_id = parse_positive_int(fields[0], "Invalid project id")
    remaining = raw[len(fields[0]):].strip()

    assignee_id = None
    if len(fields) >= 3:
        try:
            assignee_id = int(fields[1])
        except ValueError:
            assignee_id = None
        else:
            if assignee_id <= 0:
                raise ValidationError("Invalid Taiga user id")
            remaining = remaining[len(fields[1]):].strip()

    subject, description = split_subject_description(remaining)
    if not subject:
        raise ValidationError("Subject is required")
    return StoryRequest(project_id, subject, description, assignee_id)


def parse_task_to(raw: str) -> StoryRequest:
    """Parse '/taskto <project_id> <taiga_user_id> <subject> [| description]'."""
    raw = (raw or "").strip()
    fields = raw.split()
    if len(fields) < 3:
        raise ValidationError(TASKTO_USAGE)

    project_id = parse_positive_int(fields[0], "Invalid project id")
    assignee_id = parse_positive_int(fields[1], "Invalid Taiga user id")

    rest = raw[len(fields[0]):].strip()
    rest = rest[len(fields[1]):].strip()
    subject, description = split_subject_description(rest)
    if not subject:
        raise ValidationError("Subject is required")
    return StoryRequest(project_id, subject, description, assignee_id)
