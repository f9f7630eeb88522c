"""Telegram message formatting utilities.

Plain-text only: Taiga subjects are user-written and would need escaping
under any parse mode.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from taigabridge.schemas.taiga import Project, UserStory

DEFAULT_MESSAGE_LIMIT = 3500

HELP_TEXT = "\n".join(
    [
        "Commands:",
        "/link <taiga_token> [refresh_token]",
        "/me",
        "/unlink",
        "/projects",
        "/new",
        "/cancel",
        "/notifyhere",
        "/notifychat <chat_id>",
        "/notifypm",
        "/watch <project_id>",
        "/unwatch <project_id>",
        "/watches",
        "/map <project_id> <taiga_user_id>  (as a reply)",
        "/mapid <project_id> <telegram_user_id|@username> <taiga_user_id>",
        "/mappings <project_id>",
        "/adminlinkid <project_id> <telegram_user_id|@username> <taiga_token>",
        "/task <project_id> [taiga_user_id] <subject> [| description]",
        "/taskto <project_id> <taiga_user_id> <subject> [| description]",
        "/my [project_id]  (your user stories)",
    ]
)


def split_message(text: str, limit: int = DEFAULT_MESSAGE_LIMIT) -> list[str]:
    """
    Split a long message into chunks of at most ``limit`` characters.

    Each chunk ends at the last newline inside the window; a window with no
    newline is cut hard at the limit. Chunks are stripped and empty ones
    dropped. Text that already fits is returned untouched.
    """
    if limit <= 0 or len(text) <= limit:
        return [text]

    parts: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            tail = remaining.strip()
            if tail:
                parts.append(tail)
            break

        window = remaining[:limit]
        newline = window.rfind("\n")
        cut = newline + 1 if newline != -1 else limit

        chunk = remaining[:cut].strip()
        if chunk:
            parts.append(chunk)
        remaining = remaining[cut:]

    return parts


def format_status_changed(story: UserStory, old_status: str, new_status: str) -> str:
    return f"Story status changed: #{story.ref} {story.subject} ({old_status} -> {new_status})"


def format_assignee_changed(story: UserStory) -> str:
    return f"Story assignee changed: #{story.ref} {story.subject}"


def format_projects(projects: Iterable[Project]) -> str:
    return "\n".join(f"{p.id} {p.name} ({p.slug})" for p in projects)


def format_stories(stories: Iterable[UserStory]) -> str:
    return "\n".join(f"#{us.ref} {us.subject} [{us.status_name}]" for us in stories)


def format_mappings(project_id: int, mappings: Mapping[int, int]) -> str:
    lines = [f"Mappings for project {project_id}:"]
    for telegram_id in sorted(mappings):
        lines.append(f"Telegram {telegram_id} -> Taiga {mappings[telegram_id]}")
    return "\n".join(lines)


def format_watches(project_ids: Iterable[int]) -> str:
    return "\n".join(["Watched projects:", *(str(pid) for pid in project_ids)])
