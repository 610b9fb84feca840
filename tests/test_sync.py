import asyncio
import threading
from dataclasses import replace

import pytest

from errors import SyncAlreadyRunning
from forum_adapter import ForumAdapter
from models import Invoker, SyncMode

from fakes import MEMBER_SGID, OFFICER_SGID, FakeDirectory, FakeStore


def group_detail(report, name):
    return next(g for g in report.groups if g.group_name == name)


def seed_members(store, directory):
    store.add_account(1, "alice", groups={1}, identity="a=")
    store.add_account(2, "bob", groups={1}, identity="b=")
    directory.add_account(101, "a=", "Alice", groups={MEMBER_SGID})
    directory.add_account(102, "b=", "Bob")
    directory.add_account(103, "c=", "Carol", groups={MEMBER_SGID})


def test_sync_adds_and_removes_to_match_forum(reconciler, store, directory):
    seed_members(store, directory)

    report = asyncio.run(reconciler.run_sync())

    assert directory.members_of(MEMBER_SGID) == {"a=", "b="}
    detail = group_detail(report, "Member")
    assert detail.added == ["b= (bob)"]
    assert detail.removed == ["c= (Carol)"]
    assert report.added_count == 1
    assert report.removed_count == 1
    assert report.completed


def test_second_sync_changes_nothing(reconciler, store, directory):
    seed_members(store, directory)

    async def runner():
        await reconciler.run_sync()
        calls_after_first = directory.mutation_count
        second = await reconciler.run_sync()
        return calls_after_first, second

    calls_after_first, second = asyncio.run(runner())

    assert second.added_count == 0
    assert second.removed_count == 0
    assert directory.mutation_count == calls_after_first


def test_check_mode_never_mutates(reconciler, store, directory):
    seed_members(store, directory)

    report = asyncio.run(reconciler.run_sync(SyncMode.CHECK))

    assert directory.mutation_count == 0
    assert directory.members_of(MEMBER_SGID) == {"a=", "c="}
    assert report.added_count == 1
    assert report.removed_count == 1
    assert report.mode is SyncMode.CHECK


def test_member_without_teamspeak_client_is_reported_missing(reconciler, store, directory):
    store.add_account(1, "alice", groups={1}, identity="a=", cohort="2019")

    report = asyncio.run(reconciler.run_sync())

    assert report.missing_account_count == 1
    assert group_detail(report, "Member").missing_account == ["a= (alice -- 2019)"]
    assert directory.mutation_count == 0


def test_case_mismatch_is_not_added(reconciler, store, directory):
    store.add_account(1, "alice", groups={1}, identity="abc=")
    directory.add_account(101, "ABC=", "Alice")

    report = asyncio.run(reconciler.run_sync())

    assert directory.mutation_count == 0
    assert report.mismatch_count == 1
    assert report.missing_account_count == 0
    assert report.added_count == 0


def test_duplicate_identity_counted_once_and_added_once(reconciler, store, directory):
    store.add_account(1, "alice", groups={1}, identity="a=")
    store.add_account(2, "alice_alt", groups={1}, identity="a=")
    directory.add_account(101, "a=", "Alice")

    report = asyncio.run(reconciler.run_sync())

    assert report.duplicate_count == 1
    assert group_detail(report, "Member").duplicates == ["a= (alice_alt) -- First seen user alice"]
    assert directory.calls == [("add", 101, MEMBER_SGID)]


def test_duplicate_across_primary_groups_is_never_added(reconciler, settings, store, directory):
    reconciler.settings = replace(settings, member_groups=frozenset({MEMBER_SGID, OFFICER_SGID}))
    store.add_account(1, "alice", groups={1}, identity="a=")
    store.add_account(2, "alice_alt", groups={2}, identity="a=")
    directory.add_account(101, "a=", "Alice", groups={OFFICER_SGID})

    report = asyncio.run(reconciler.run_sync())

    assert report.duplicate_count == 1
    # Already in the officer group: neither added again nor removed
    assert directory.calls == [("add", 101, MEMBER_SGID)]
    assert directory.members_of(OFFICER_SGID) == {"a="}


def test_pending_member_is_reported_not_added_and_not_removed(reconciler, store, directory):
    store.add_account(1, "newbie", identity="n=", pending=True)
    store.add_account(2, "waiting", identity="w=", pending=True)
    directory.add_account(101, "n=", "Newbie")
    directory.add_account(102, "w=", "Waiting", groups={MEMBER_SGID})

    report = asyncio.run(reconciler.run_sync())

    assert group_detail(report, "Member").pending == ["n= (newbie)"]
    assert directory.mutation_count == 0
    assert directory.members_of(MEMBER_SGID) == {"w="}


def test_failed_mapping_does_not_abort_cycle(reconciler, store, directory):
    store.add_account(1, "alice", groups={1, 2}, identity="a=")
    directory.add_account(101, "a=", "Alice")
    directory.fail_groups.add(MEMBER_SGID)

    report = asyncio.run(reconciler.run_sync())

    assert report.completed
    assert group_detail(report, "Member").error
    assert group_detail(report, "Clan Officer").added == ["a= (alice)"]
    assert directory.members_of(OFFICER_SGID) == {"a="}
    assert report.failure_count == 1


def test_store_outage_is_reported_per_mapping(reconciler, store):
    store.fail = True

    report = asyncio.run(reconciler.run_sync())

    assert report.completed
    assert all(g.error for g in report.groups)


def test_failed_add_is_recorded_and_others_continue(reconciler, store, directory):
    store.add_account(1, "alice", groups={1}, identity="a=")
    store.add_account(2, "bob", groups={1}, identity="b=")
    directory.add_account(101, "a=", "Alice")
    directory.add_account(102, "b=", "Bob")
    directory.fail_adds.add(101)

    report = asyncio.run(reconciler.run_sync())

    detail = group_detail(report, "Member")
    assert detail.failures == ["a= (alice): add failed"]
    assert detail.added == ["b= (bob)"]
    assert report.added_count == 1


def test_sync_writes_audit_logs_and_notifies(reconciler, settings, store, directory):
    seed_members(store, directory)
    messages = []

    async def notify(text):
        messages.append(text)

    asyncio.run(reconciler.run_sync(notify=notify))

    with open(settings.sync_log_file, encoding="utf-8") as f:
        sync_log = f.read()
    with open(settings.population_log_file, encoding="utf-8") as f:
        population_log = f.read()

    assert "\tMembers to add (1):\n\t\tb= (bob)\n" in sync_log
    assert "\tMembers to remove (1):\n\t\tc= (Carol)\n" in sync_log
    assert "1 groups added, 1 groups removed" in sync_log
    assert population_log.rstrip().endswith("3/32")
    assert messages[-1].startswith("Forum Sync Processing Time:")
    assert "Sync Member: Members to add (1): b= (bob)" in messages


class GatedDirectory(FakeDirectory):
    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.add_group(MEMBER_SGID, "Member")
        self.add_group(OFFICER_SGID, "Clan Officer")

    async def list_group_members(self, sgid):
        await self.gate.wait()
        return await super().list_group_members(sgid)


def test_second_cycle_while_running_is_rejected(reconciler):
    async def runner():
        reconciler.directory = GatedDirectory()
        first = asyncio.create_task(reconciler.run_sync())
        while not reconciler.running:
            await asyncio.sleep(0)
        with pytest.raises(SyncAlreadyRunning):
            await reconciler.run_sync()
        reconciler.directory.gate.set()
        return await first

    report = asyncio.run(runner())

    assert report.completed
    assert not reconciler.running


def test_cancelled_cycle_keeps_partial_report(reconciler):
    async def runner():
        reconciler.directory = GatedDirectory()
        task = asyncio.create_task(reconciler.run_sync())
        while not reconciler.running:
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(runner())

    assert reconciler.last_report is not None
    assert not reconciler.last_report.completed
    assert not reconciler.running


def test_apply_mappings_for_grants_missing_groups(reconciler, store, directory):
    store.add_account(1, "alice", groups={1, 2}, identity="a=")
    directory.add_account(101, "a=", "Alice", groups={MEMBER_SGID})
    invoker = Invoker(client_id=7, db_id=101, identity="a=", nickname="Alice",
                      server_groups=frozenset({MEMBER_SGID}))

    granted = asyncio.run(reconciler.apply_mappings_for(invoker))

    assert granted == ["Clan Officer"]
    assert directory.calls == [("add", 101, OFFICER_SGID)]


def test_apply_mappings_for_unlinked_identity_grants_nothing(reconciler, directory):
    invoker = Invoker(client_id=7, db_id=101, identity="x=", nickname="X")

    assert asyncio.run(reconciler.apply_mappings_for(invoker)) == []
    assert directory.mutation_count == 0


def test_forum_adapter_keeps_forum_store_apart_from_its_object_store(store):
    store.add_account(1, "alice", groups={1}, identity="a=")
    adapter = ForumAdapter(forum_store=store, chat_group_id=MEMBER_SGID)

    adapter.load([1])

    [membership] = adapter.get_all("membership")
    assert (membership.identity, membership.chat_group_id, membership.display_name) == ("a=", MEMBER_SGID, "alice")
    assert adapter.forum_store is store


def test_deleted_server_group_is_reported_not_filled(reconciler, store, directory):
    store.add_account(1, "alice", groups={1, 2}, identity="a=")
    directory.add_account(101, "a=", "Alice")
    del directory.groups[OFFICER_SGID]

    report = asyncio.run(reconciler.run_sync())

    officer = group_detail(report, "Clan Officer")
    assert "Bad map" in officer.error
    assert officer.added == []
    assert directory.calls == [("add", 101, MEMBER_SGID)]
    assert report.failure_count == 1


class ThreadRecordingStore(FakeStore):
    def __init__(self):
        super().__init__()
        self.threads = set()

    def list_members_for_groups(self, group_ids, include_pending):
        self.threads.add(threading.get_ident())
        return super().list_members_for_groups(group_ids, include_pending)

    def groups_for_identity(self, identity):
        self.threads.add(threading.get_ident())
        return super().groups_for_identity(identity)


def test_forum_queries_run_off_the_event_loop_thread(reconciler, directory):
    store = ThreadRecordingStore()
    store.add_account(1, "alice", groups={1}, identity="a=")
    reconciler.store = store
    invoker = Invoker(client_id=7, db_id=101, identity="a=", nickname="Alice")

    async def runner():
        await reconciler.run_sync()
        await reconciler.apply_mappings_for(invoker)

    asyncio.run(runner())

    assert store.threads
    assert threading.get_ident() not in store.threads
