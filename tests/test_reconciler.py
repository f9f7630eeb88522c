import asyncio

from conftest import make_story

from taigabridge.errors import ClientConfigError, PersistenceError, RemoteAPIError
from taigabridge.schemas.link import TaskDigest, UserLink
from taigabridge.services.reconciler import (
    ChangeKind,
    NotificationReconciler,
    compute_digest,
    detect_changes,
)


class _FakeClient:
    def __init__(self, assigned=(), projects=None, fail_assigned=False, fail_projects=()):
        self.assigned = list(assigned)
        self.projects = projects or {}
        self.fail_assigned = fail_assigned
        self.fail_projects = set(fail_projects)
        self.calls = []

    async def list_user_stories(self, project_id=None, assigned_to=None, status_id=None):
        self.calls.append((project_id, assigned_to))
        if project_id is None:
            if self.fail_assigned:
                raise RemoteAPIError("Taiga API error (502)", status_code=502)
            return list(self.assigned)
        if project_id in self.fail_projects:
            raise RemoteAPIError("Taiga API error (500)", status_code=500)
        return list(self.projects.get(project_id, []))


class _Outbox:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def __call__(self, chat_id, text):
        if self.fail:
            raise RuntimeError("telegram down")
        self.sent.append((chat_id, text))


def _link(telegram_id=5, digests=None, **kwargs):
    return UserLink(
        telegram_id=telegram_id,
        taiga_token="tok",
        taiga_user_id=42,
        last_task_states=digests or {},
        **kwargs,
    )


def _reconciler(store, clients, outbox=None):
    """Reconciler whose client factory hands out the fake for each Telegram id."""
    outbox = outbox or _Outbox()

    def factory(link):
        client = clients[link.telegram_id]
        if isinstance(client, Exception):
            raise client
        return client

    return NotificationReconciler(store, notify=outbox, client_factory=factory, interval=0.01), outbox


def test_detect_changes_is_ordered_and_status_wins():
    previous = {
        3: TaskDigest(status="New", assigned_to=1),
        1: TaskDigest(status="New", assigned_to=1),
        2: TaskDigest(status="New", assigned_to=1),
    }
    stories = {
        3: make_story(3, status="Done", assigned_to=2),
        1: make_story(1, status="New", assigned_to=2),
        2: make_story(2, status="New", assigned_to=1),
        4: make_story(4, status="Done"),
    }

    changes = detect_changes(previous, stories)

    assert [(c.story.id, c.kind) for c in changes] == [(1, ChangeKind.ASSIGNEE), (3, ChangeKind.STATUS)]


def test_unassigned_digest_uses_zero():
    assert compute_digest(make_story(1, status="New")) == TaskDigest(status="New", assigned_to=0)


def test_baseline_cycle_stores_digests_without_notifying(store):
    store.save(_link())
    reconciler, outbox = _reconciler(store, {5: _FakeClient(assigned=[make_story(1), make_story(2)])})

    report = asyncio.run(reconciler.run_cycle())

    assert outbox.sent == []
    assert report.users[0].baseline
    assert set(store.get(5).last_task_states) == {1, 2}


def test_status_change_is_notified_once(store):
    store.save(_link(digests={1: TaskDigest(status="New", assigned_to=42)}))
    client = _FakeClient(assigned=[make_story(1, status="In progress", assigned_to=42, ref=17)])
    reconciler, outbox = _reconciler(store, {5: client})

    asyncio.run(reconciler.run_cycle())
    asyncio.run(reconciler.run_cycle())

    assert outbox.sent == [(5, "Story status changed: #17 Story 1 (New -> In progress)")]
    assert store.get(5).last_task_states[1] == TaskDigest(status="In progress", assigned_to=42)


def test_assignee_change(store):
    store.save(_link(digests={1: TaskDigest(status="New", assigned_to=42)}))
    reconciler, outbox = _reconciler(store, {5: _FakeClient(assigned=[make_story(1, assigned_to=7)])})

    asyncio.run(reconciler.run_cycle())

    assert outbox.sent == [(5, "Story assignee changed: #1 Story 1")]


def test_status_and_assignee_change_sends_status_only(store):
    store.save(_link(digests={1: TaskDigest(status="New", assigned_to=42)}))
    reconciler, outbox = _reconciler(
        store, {5: _FakeClient(assigned=[make_story(1, status="Done", assigned_to=7)])}
    )

    asyncio.run(reconciler.run_cycle())

    assert len(outbox.sent) == 1
    assert outbox.sent[0][1].startswith("Story status changed:")


def test_notifications_go_to_override_chat(store):
    store.save(_link(digests={1: TaskDigest(status="New")}, notify_chat_id=-100200))
    reconciler, outbox = _reconciler(store, {5: _FakeClient(assigned=[make_story(1, status="Done")])})

    asyncio.run(reconciler.run_cycle())

    assert outbox.sent[0][0] == -100200


def test_appearing_and_disappearing_stories_are_silent(store):
    store.save(_link(digests={1: TaskDigest(status="New"), 2: TaskDigest(status="New")}))
    reconciler, outbox = _reconciler(
        store, {5: _FakeClient(assigned=[make_story(2, status="New"), make_story(3, status="Done")])}
    )

    asyncio.run(reconciler.run_cycle())

    assert outbox.sent == []
    assert set(store.get(5).last_task_states) == {2, 3}


def test_watched_projects_are_unioned(store):
    store.save(_link(digests={1: TaskDigest(status="New"), 8: TaskDigest(status="New")}, watched_projects=[10]))
    client = _FakeClient(
        assigned=[make_story(1, status="New")],
        projects={10: [make_story(1, status="New"), make_story(8, status="Ready")]},
    )
    reconciler, outbox = _reconciler(store, {5: client})

    asyncio.run(reconciler.run_cycle())

    assert client.calls == [(None, 42), (10, None)]
    assert outbox.sent == [(5, "Story status changed: #8 Story 8 (New -> Ready)")]


def test_failed_project_fetch_drops_its_stories(store):
    store.save(_link(digests={1: TaskDigest(status="New"), 8: TaskDigest(status="New")}, watched_projects=[10]))
    client = _FakeClient(assigned=[make_story(1, status="New")], fail_projects=[10])
    reconciler, outbox = _reconciler(store, {5: client})

    report = asyncio.run(reconciler.run_cycle())

    assert report.users[0].failed_projects == [10]
    assert outbox.sent == []
    assert set(store.get(5).last_task_states) == {1}


def test_all_fetches_failing_leaves_digests_alone(store):
    digests = {1: TaskDigest(status="New")}
    store.save(_link(digests=digests, watched_projects=[10]))
    client = _FakeClient(fail_assigned=True, fail_projects=[10])
    reconciler, outbox = _reconciler(store, {5: client})

    report = asyncio.run(reconciler.run_cycle())

    assert not report.users[0].ok
    assert store.get(5).last_task_states == digests


def test_failure_for_one_user_does_not_affect_another(store):
    store.save(_link(telegram_id=5, digests={1: TaskDigest(status="New")}))
    store.save(_link(telegram_id=6, digests={2: TaskDigest(status="New")}))
    reconciler, outbox = _reconciler(
        store,
        {
            5: RuntimeError("boom"),
            6: _FakeClient(assigned=[make_story(2, status="Done")]),
        },
    )

    report = asyncio.run(reconciler.run_cycle())

    assert report.failed_users == 1
    assert outbox.sent == [(6, "Story status changed: #2 Story 2 (New -> Done)")]
    assert store.get(5).last_task_states == {1: TaskDigest(status="New")}


def test_bad_client_configuration_skips_user(store):
    store.save(_link(digests={1: TaskDigest(status="New")}))
    reconciler, outbox = _reconciler(store, {5: ClientConfigError("Taiga token is required")})

    report = asyncio.run(reconciler.run_cycle())

    assert report.users[0].error == "Taiga token is required"
    assert outbox.sent == []


def test_digest_write_failure_suppresses_notifications(store, monkeypatch):
    store.save(_link(digests={1: TaskDigest(status="New")}))
    reconciler, outbox = _reconciler(store, {5: _FakeClient(assigned=[make_story(1, status="Done")])})

    real_update = store.update_digests
    disk_full = True

    def _update(telegram_id, digests):
        if disk_full:
            raise PersistenceError("failed to write link store: disk full")
        real_update(telegram_id, digests)

    monkeypatch.setattr(store, "update_digests", _update)
    asyncio.run(reconciler.run_cycle())
    assert outbox.sent == []
    assert store.get(5).last_task_states == {1: TaskDigest(status="New")}

    disk_full = False
    asyncio.run(reconciler.run_cycle())
    assert outbox.sent == [(5, "Story status changed: #1 Story 1 (New -> Done)")]


def test_send_failure_still_advances_digests(store):
    store.save(_link(digests={1: TaskDigest(status="New")}))
    reconciler, _ = _reconciler(
        store, {5: _FakeClient(assigned=[make_story(1, status="Done")])}, outbox=_Outbox(fail=True)
    )

    report = asyncio.run(reconciler.run_cycle())

    assert report.users[0].changes == 1
    assert report.users[0].sent == 0
    assert store.get(5).last_task_states[1].status == "Done"


def test_unlinked_during_cycle_is_skipped(store):
    link = _link(digests={1: TaskDigest(status="New")})
    store.save(link)
    reconciler, outbox = _reconciler(store, {5: _FakeClient(assigned=[make_story(1, status="Done")])})
    store.delete(5)

    result = asyncio.run(reconciler.reconcile_user(link))

    assert not result.ok
    assert outbox.sent == []
    assert store.get(5) is None


class TestRunLoop:
    def test_stops_between_ticks(self, store):
        reconciler, _ = _reconciler(store, {})
        ticks = []

        async def _main():
            stop = asyncio.Event()

            async def _cycle():
                ticks.append(1)
                if len(ticks) == 2:
                    stop.set()

            reconciler.run_cycle = _cycle
            await asyncio.wait_for(reconciler.run(stop), timeout=5)

        asyncio.run(_main())
        assert len(ticks) == 2

    def test_no_tick_after_stop(self, store):
        reconciler, _ = _reconciler(store, {})
        ticks = []

        async def _main():
            stop = asyncio.Event()
            stop.set()

            async def _cycle():
                ticks.append(1)

            reconciler.run_cycle = _cycle
            await asyncio.wait_for(reconciler.run(stop), timeout=5)

        asyncio.run(_main())
        assert ticks == []

    def test_cycle_errors_do_not_stop_the_loop(self, store):
        reconciler, _ = _reconciler(store, {})
        ticks = []

        async def _main():
            stop = asyncio.Event()

            async def _cycle():
                ticks.append(1)
                if len(ticks) == 3:
                    stop.set()
                raise RuntimeError("cycle failed")

            reconciler.run_cycle = _cycle
            await asyncio.wait_for(reconciler.run(stop), timeout=5)

        asyncio.run(_main())
        assert len(ticks) == 3


def test_stale_snapshot_uses_current_link(store):
    stale = _link(digests={1: TaskDigest(status="New")})
    store.save(UserLink(telegram_id=5, taiga_token="fresh-token", taiga_user_id=42))
    seen = []
    client = _FakeClient(assigned=[make_story(1, status="Done")])

    def factory(link):
        seen.append(link.taiga_token)
        return client

    outbox = _Outbox()
    reconciler = NotificationReconciler(store, notify=outbox, client_factory=factory)

    result = asyncio.run(reconciler.reconcile_user(stale))

    assert seen == ["fresh-token"]
    assert result.baseline
    assert outbox.sent == []
    assert set(store.get(5).last_task_states) == {1}


def test_relink_during_fetch_keeps_new_baseline(store):
    store.save(_link(digests={1: TaskDigest(status="New")}))

    class _RelinkingClient(_FakeClient):
        async def list_user_stories(self, project_id=None, assigned_to=None, status_id=None):
            store.save(UserLink(telegram_id=5, taiga_token="new-token", taiga_user_id=77))
            return await super().list_user_stories(project_id, assigned_to, status_id)

    reconciler, outbox = _reconciler(store, {5: _RelinkingClient(assigned=[make_story(1, status="Done")])})

    report = asyncio.run(reconciler.run_cycle())

    assert not report.users[0].ok
    assert outbox.sent == []
    link = store.get(5)
    assert link.taiga_token == "new-token"
    assert link.last_task_states == {}
