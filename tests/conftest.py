import json

import pytest

from audit import AuditLog
from config import Settings
from group_map import GroupMapStore
from sync import Reconciler

from fakes import MEMBER_SGID, OFFICER_SGID, FakeDirectory, FakeStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        member_groups=frozenset({MEMBER_SGID}),
        mod_groups=frozenset({30}),
        admin_groups=frozenset({40}),
        guest_groups=frozenset({50}),
        owner_unique_ids=frozenset({"owner="}),
        forum_group_map_file=str(tmp_path / "forum_group_map.json"),
        sync_log_file=str(tmp_path / "sync.log"),
        population_log_file=str(tmp_path / "population.log"),
        login_max_attempts=3,
        login_error_timeout_seconds=60,
    )


@pytest.fixture
def store():
    store = FakeStore()
    store.add_group(1, "Members")
    store.add_group(2, "Clan Officers")
    return store


@pytest.fixture
def directory():
    directory = FakeDirectory()
    directory.add_group(MEMBER_SGID, "Member")
    directory.add_group(OFFICER_SGID, "Clan Officer")
    return directory


@pytest.fixture
def group_map(settings):
    with open(settings.forum_group_map_file, "w", encoding="utf-8") as f:
        json.dump({
            "Member": {"sgid": MEMBER_SGID, "forum_groups": [1], "permanent": True},
            "Clan Officer": {"sgid": OFFICER_SGID, "forum_groups": [2], "permanent": False},
        }, f)
    store = GroupMapStore(settings)
    store.load()
    return store


@pytest.fixture
def reconciler(settings, store, directory, group_map):
    return Reconciler(
        settings, store, directory, group_map,
        sync_log=AuditLog(settings.sync_log_file),
        population_log=AuditLog(settings.population_log_file),
    )
