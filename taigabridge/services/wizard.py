"""Session table for the /new story wizard.

A session is created when the user picks a project, advances when an
assignee is picked, and is cleared on completion, /cancel, or after
``timeout`` seconds without activity. It lives only in memory and is owned
by the command layer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from taigabridge.types.wizard import WizardState

logger = logging.getLogger(__name__)


class WizardSessions:
    """Per-user wizard progress keyed by Telegram user id."""

    def __init__(self, timeout: float = 900.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._sessions: dict[int, WizardState] = {}
        self._timeout = timeout
        self._clock = clock

    def choose_project(self, telegram_id: int, project_id: int) -> WizardState:
        state = WizardState(project_id=project_id, last_active=self._clock())
        self._sessions[telegram_id] = state
        return state

    def choose_assignee(self, telegram_id: int, project_id: int, assignee_id: int | None) -> WizardState:
        state = WizardState(
            project_id=project_id,
            assignee_id=assignee_id,
            awaiting_text=True,
            last_active=self._clock(),
        )
        self._sessions[telegram_id] = state
        return state

    def get(self, telegram_id: int) -> WizardState | None:
        state = self._sessions.get(telegram_id)
        if state is None:
            return None
        if self._expired(state):
            logger.debug("Wizard session for %s expired", telegram_id)
            del self._sessions[telegram_id]
            return None
        return state

    def awaiting_text(self, telegram_id: int) -> WizardState | None:
        """The session, if it is waiting for the story subject."""
        state = self.get(telegram_id)
        if state is None or not state.awaiting_text:
            return None
        return state

    def clear(self, telegram_id: int) -> bool:
        """Drop a session. Returns whether one existed."""
        return self._sessions.pop(telegram_id, None) is not None

    def prune(self) -> int:
        expired = [tid for tid, state in self._sessions.items() if self._expired(state)]
        for telegram_id in expired:
            del self._sessions[telegram_id]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, state: WizardState) -> bool:
        return self._clock() - state.last_active > self._timeout
