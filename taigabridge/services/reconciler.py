"""Change-detection notifications for linked Taiga users.

Every ``poll_interval_seconds`` the reconciler walks all links, one user at
a time:

1. Fetch the user's assigned stories plus every story of each watched project
2. Union them by story id and compute a digest (status name, assignee)
3. Compare against the digests stored on the previous cycle
4. Persist the new digest map (a full replacement)
5. Send one message per detected transition

A user whose previous digest map is empty is on a baseline cycle: digests
are stored but nothing is sent. A status change wins over an assignee change
for the same story in the same cycle. Stories that appear or disappear are
not transitions.

The digest write happens before any message is sent. If the write fails the
user is skipped without notifications, and the next cycle re-detects the same
transitions against the unchanged baseline.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from taigabridge.errors import BridgeError, ClientConfigError, NotFoundError, PersistenceError
from taigabridge.schemas.link import TaskDigest, UserLink
from taigabridge.schemas.taiga import UserStory
from taigabridge.services.link_store import LinkStore
from taigabridge.services.taiga_client import TaigaClient
from taigabridge.services.telegram_formatter import format_assignee_changed, format_status_changed

logger = logging.getLogger(__name__)

Notifier = Callable[[int, str], Awaitable[None]]
ClientFactory = Callable[[UserLink], TaigaClient]


class ChangeKind(str, Enum):
    STATUS = "status"
    ASSIGNEE = "assignee"


@dataclass(frozen=True)
class StoryChange:
    """One detected transition of one story."""

    story: UserStory
    kind: ChangeKind
    old: TaskDigest
    new: TaskDigest

    def render(self) -> str:
        if self.kind is ChangeKind.STATUS:
            return format_status_changed(self.story, self.old.status, self.new.status)
        return format_assignee_changed(self.story)


@dataclass
class UserCycleResult:
    telegram_id: int
    baseline: bool = False
    stories: int = 0
    changes: int = 0
    sent: int = 0
    failed_projects: list[int] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CycleReport:
    users: list[UserCycleResult] = field(default_factory=list)

    @property
    def notifications_sent(self) -> int:
        return sum(u.sent for u in self.users)

    @property
    def failed_users(self) -> int:
        return sum(1 for u in self.users if not u.ok)


def compute_digest(story: UserStory) -> TaskDigest:
    return TaskDigest(status=story.status_name, assigned_to=story.assigned_to or 0)


def detect_changes(
    previous: Mapping[int, TaskDigest],
    stories: Mapping[int, UserStory],
) -> list[StoryChange]:
    """Compare stored digests with the current stories.

    Only stories present on both sides are compared. At most one change is
    reported per story, status first. Results are ordered by story id.
    """
    changes: list[StoryChange] = []
    for story_id in sorted(stories):
        old = previous.get(story_id)
        if old is None:
            continue
        story = stories[story_id]
        new = compute_digest(story)
        if old.status != new.status:
            changes.append(StoryChange(story, ChangeKind.STATUS, old, new))
        elif old.assigned_to != new.assigned_to:
            changes.append(StoryChange(story, ChangeKind.ASSIGNEE, old, new))
    return changes


class NotificationReconciler:
    """Periodic diff-and-notify loop over every linked user."""

    def __init__(
        self,
        store: LinkStore,
        notify: Notifier,
        client_factory: ClientFactory,
        interval: float = 30.0,
    ) -> None:
        self.store = store
        self.notify = notify
        self.client_factory = client_factory
        self.interval = interval

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick every ``interval`` seconds until ``stop_event`` is set.

        A tick that has started runs to completion; no tick starts after the
        event is set.
        """
        logger.info("Notification reconciler started: interval=%ss", self.interval)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Notification cycle failed")
        logger.info("Notification reconciler stopped")

    async def run_cycle(self) -> CycleReport:
        """Reconcile every linked user once."""
        report = CycleReport()
        links = self.store.list_all()
        logger.debug("Notification cycle: %d linked users", len(links))

        for link in links:
            try:
                result = await self.reconcile_user(link)
            except Exception as e:
                logger.exception("Unexpected failure reconciling user %s", link.telegram_id)
                result = UserCycleResult(telegram_id=link.telegram_id, error=str(e))
            report.users.append(result)

        if report.users:
            logger.info(
                "Notification cycle complete: %d users, %d notifications, %d failed",
                len(report.users),
                report.notifications_sent,
                report.failed_users,
            )
        return report

    async def reconcile_user(self, link: UserLink) -> UserCycleResult:
        """Run one cycle for one user. Failures are reported, not raised.

        ``link`` may come from a snapshot taken at the start of the cycle; the
        current stored link is used instead, and the digest write is skipped
        if the link was replaced while its stories were being fetched.
        """
        result = UserCycleResult(telegram_id=link.telegram_id)
        current = self.store.get(link.telegram_id)
        if current is None:
            result.error = "unlinked"
            logger.info("Skipping user %s: unlinked since the cycle started", link.telegram_id)
            return result
        link = current
        previous = dict(link.last_task_states or {})
        result.baseline = not previous
        destination = link.notify_destination

        try:
            client = self.client_factory(link)
        except ClientConfigError as e:
            logger.warning("Skipping user %s: cannot build Taiga client: %s", link.telegram_id, e)
            result.error = str(e)
            return result

        stories, any_fetched = await self._fetch_stories(client, link, result)
        if not any_fetched:
            result.error = "all Taiga fetches failed"
            logger.warning("Skipping user %s: no Taiga fetch succeeded", link.telegram_id)
            return result

        result.stories = len(stories)
        digests = {story_id: compute_digest(story) for story_id, story in stories.items()}
        changes = [] if result.baseline else detect_changes(previous, stories)
        result.changes = len(changes)

        if not self._link_unchanged(link):
            result.error = "link replaced during cycle"
            logger.info("Skipping digest write for user %s: link replaced during cycle", link.telegram_id)
            return result

        try:
            self.store.update_digests(link.telegram_id, digests)
        except (PersistenceError, NotFoundError) as e:
            logger.warning("Skipping notifications for user %s: digest write failed: %s", link.telegram_id, e)
            result.error = str(e)
            return result

        for change in changes:
            try:
                await self.notify(destination, change.render())
                result.sent += 1
            except Exception:
                logger.exception(
                    "Failed to deliver %s change for story %s to chat %s",
                    change.kind.value,
                    change.story.id,
                    destination,
                )

        return result

    def _link_unchanged(self, link: UserLink) -> bool:
        """Same Taiga identity and baseline as when the user's cycle began."""
        stored = self.store.get(link.telegram_id)
        return (
            stored is not None
            and stored.taiga_user_id == link.taiga_user_id
            and stored.last_task_states == link.last_task_states
        )

    async def _fetch_stories(
        self,
        client: TaigaClient,
        link: UserLink,
        result: UserCycleResult,
    ) -> tuple[dict[int, UserStory], bool]:
        """Union of assigned and watched-project stories, keyed by id."""
        stories: dict[int, UserStory] = {}
        any_fetched = False

        try:
            for story in await client.list_user_stories(assigned_to=link.taiga_user_id):
                stories[story.id] = story
            any_fetched = True
        except BridgeError as e:
            logger.warning("Assigned stories fetch failed for user %s: %s", link.telegram_id, e)

        for project_id in link.watched_projects:
            try:
                project_stories = await client.list_user_stories(project_id=project_id)
            except BridgeError as e:
                logger.warning(
                    "Project %s stories fetch failed for user %s: %s",
                    project_id,
                    link.telegram_id,
                    e,
                )
                result.failed_projects.append(project_id)
                continue
            for story in project_stories:
                stories[story.id] = story
            any_fetched = True

        return stories, any_fetched
