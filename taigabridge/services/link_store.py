"""Durable JSON-file store for Telegram to Taiga links.

Holds three tables: user links (with their notification digests),
per-project Telegram → Taiga user mappings, and the @username index.

Every mutation builds the new state next to the current one, writes it to
``<path>.tmp``, fsyncs, and renames it over the storage file. Only after the
rename succeeds does the in-memory state switch over, so a failed write
leaves both disk and memory at the previous snapshot.

A single lock serialises all operations. The reconciler and the webhook
handlers share one instance.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
from collections.abc import Mapping
from pathlib import Path

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from taigabridge.errors import NotFoundError, PersistenceError, StorageCorruptError, ValidationError
from taigabridge.schemas.link import StoreSnapshot, TaskDigest, UserLink

logger = logging.getLogger(__name__)

_LEGACY_LAYOUT = TypeAdapter(dict[int, UserLink])


def normalize_handle(handle: str) -> str:
    """Lowercase a Telegram handle and drop one leading '@'."""
    handle = (handle or "").strip()
    if handle.startswith("@"):
        handle = handle[1:]
    return handle.lower()


class LinkStore:
    """Mutex-guarded, atomically persisted link repository."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._links: dict[int, UserLink] = {}
        self._mappings: dict[int, dict[int, int]] = {}
        self._usernames: dict[str, int] = {}
        self._load()

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def get(self, telegram_id: int) -> UserLink | None:
        with self._lock:
            link = self._links.get(telegram_id)
            return link.model_copy(deep=True) if link else None

    def save(self, link: UserLink) -> None:
        """Insert or replace a link keyed by its Telegram id."""
        stored = link.model_copy(deep=True)
        if stored.last_task_states is None:
            stored.last_task_states = {}
        with self._lock:
            links = {**self._links, stored.telegram_id: stored}
            self._commit(links=links)

    def delete(self, telegram_id: int) -> None:
        """Remove a link together with its digests. Unknown ids are a no-op."""
        with self._lock:
            if telegram_id not in self._links:
                return
            links = {k: v for k, v in self._links.items() if k != telegram_id}
            self._commit(links=links)

    def list_all(self) -> list[UserLink]:
        """Snapshot of every link; callers may mutate the copies freely."""
        with self._lock:
            return [link.model_copy(deep=True) for link in self._links.values()]

    def update_digests(self, telegram_id: int, digests: Mapping[int, TaskDigest]) -> None:
        """Replace the whole digest map of a user."""
        with self._lock:
            link = self._require(telegram_id)
            updated = link.model_copy(update={"last_task_states": dict(digests)})
            self._commit(links={**self._links, telegram_id: updated})

    def update_credentials(
        self,
        telegram_id: int,
        taiga_token: str,
        taiga_refresh_token: str | None,
    ) -> None:
        """Persist a refreshed Taiga credential pair."""
        with self._lock:
            link = self._require(telegram_id)
            updated = link.model_copy(
                update={"taiga_token": taiga_token, "taiga_refresh_token": taiga_refresh_token}
            )
            self._commit(links={**self._links, telegram_id: updated})

    def set_notify_destination(self, telegram_id: int, chat_id: int | None) -> None:
        """Route notifications to ``chat_id``; None restores the private chat."""
        with self._lock:
            link = self._require(telegram_id)
            updated = link.model_copy(update={"notify_chat_id": chat_id})
            self._commit(links={**self._links, telegram_id: updated})

    def add_watched_project(self, telegram_id: int, project_id: int) -> None:
        _check_positive(project_id, "project id")
        with self._lock:
            link = self._require(telegram_id)
            if project_id in link.watched_projects:
                return
            updated = link.model_copy(
                update={"watched_projects": [*link.watched_projects, project_id]}
            )
            self._commit(links={**self._links, telegram_id: updated})

    def remove_watched_project(self, telegram_id: int, project_id: int) -> None:
        with self._lock:
            link = self._require(telegram_id)
            if project_id not in link.watched_projects:
                return
            remaining = [pid for pid in link.watched_projects if pid != project_id]
            updated = link.model_copy(update={"watched_projects": remaining})
            self._commit(links={**self._links, telegram_id: updated})

    # ------------------------------------------------------------------
    # Project user mappings
    # ------------------------------------------------------------------

    def set_mapping(self, project_id: int, telegram_id: int, taiga_user_id: int) -> None:
        _check_positive(project_id, "project id")
        if telegram_id == 0:
            raise ValidationError("invalid Telegram user id")
        _check_positive(taiga_user_id, "Taiga user id")
        with self._lock:
            mappings = {pid: dict(m) for pid, m in self._mappings.items()}
            mappings.setdefault(project_id, {})[telegram_id] = taiga_user_id
            self._commit(mappings=mappings)

    def remove_mapping(self, project_id: int, telegram_id: int) -> None:
        """Drop a mapping; the project bucket goes away with its last entry."""
        _check_positive(project_id, "project id")
        if telegram_id == 0:
            raise ValidationError("invalid Telegram user id")
        with self._lock:
            bucket = self._mappings.get(project_id)
            if not bucket or telegram_id not in bucket:
                return
            mappings = {pid: dict(m) for pid, m in self._mappings.items()}
            del mappings[project_id][telegram_id]
            if not mappings[project_id]:
                del mappings[project_id]
            self._commit(mappings=mappings)

    def get_mapping(self, project_id: int, telegram_id: int) -> int | None:
        _check_positive(project_id, "project id")
        with self._lock:
            return self._mappings.get(project_id, {}).get(telegram_id)

    def list_mappings(self, project_id: int) -> dict[int, int]:
        _check_positive(project_id, "project id")
        with self._lock:
            return dict(self._mappings.get(project_id, {}))

    # ------------------------------------------------------------------
    # Username index
    # ------------------------------------------------------------------

    def upsert_username(self, handle: str | None, telegram_id: int) -> None:
        """Remember who owns a handle. Skips the write when nothing changes."""
        key = normalize_handle(handle or "")
        if not key or telegram_id == 0:
            return
        with self._lock:
            if self._usernames.get(key) == telegram_id:
                return
            self._commit(usernames={**self._usernames, key: telegram_id})

    def resolve_handle(self, handle: str) -> int | None:
        key = normalize_handle(handle)
        if not key:
            return None
        with self._lock:
            return self._usernames.get(key)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _require(self, telegram_id: int) -> UserLink:
        link = self._links.get(telegram_id)
        if link is None:
            raise NotFoundError("Link", telegram_id)
        return link

    def _commit(
        self,
        links: dict[int, UserLink] | None = None,
        mappings: dict[int, dict[int, int]] | None = None,
        usernames: dict[str, int] | None = None,
    ) -> None:
        links = self._links if links is None else links
        mappings = self._mappings if mappings is None else mappings
        usernames = self._usernames if usernames is None else usernames

        self._write(StoreSnapshot(links=links, project_user_mappings=mappings, telegram_usernames=usernames))

        self._links = links
        self._mappings = mappings
        self._usernames = usernames

    def _write(self, snapshot: StoreSnapshot) -> None:
        data = snapshot.model_dump(mode="json", exclude_none=True)
        if not data.get("project_user_mappings"):
            data.pop("project_user_mappings", None)
        if not data.get("telegram_usernames"):
            data.pop("telegram_usernames", None)

        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._path)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            logger.error("Failed to persist link store to %s: %s", self._path, e)
            raise PersistenceError(f"failed to write link store: {e}") from e

    def _load(self) -> None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("Link store %s does not exist yet, starting empty", self._path)
            return
        except OSError as e:
            raise PersistenceError(f"failed to read link store: {e}") from e

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageCorruptError(f"link store {self._path} is not valid JSON: {e}") from e

        if isinstance(payload, dict) and isinstance(payload.get("links"), dict):
            try:
                snapshot = StoreSnapshot.model_validate(payload)
            except PydanticValidationError:
                logger.warning("Link store %s does not match the current layout, trying legacy", self._path)
            else:
                self._links = dict(snapshot.links)
                self._mappings = {pid: dict(m) for pid, m in snapshot.project_user_mappings.items()}
                self._usernames = dict(snapshot.telegram_usernames)
                logger.info("Loaded %d links from %s", len(self._links), self._path)
                return

        try:
            links = _LEGACY_LAYOUT.validate_python(payload)
        except PydanticValidationError as e:
            raise StorageCorruptError(f"link store {self._path} has an unknown layout") from e

        self._links = dict(links)
        logger.info("Loaded %d links from legacy layout in %s", len(self._links), self._path)


def _check_positive(value: int, what: str) -> None:
    if value <= 0:
        raise ValidationError(f"invalid {what}")
