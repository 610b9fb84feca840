import asyncio
from types import SimpleNamespace

import pytest
import ts3.query

from config import Settings
from errors import DirectoryUnavailable
from teamspeak_client import QueryChannel, TeamSpeakDirectory


class StubConnection:
    """Answers every command with the same rows, or fails it with a ServerQuery error id."""

    def __init__(self, rows=(), error_id=None):
        self.rows = list(rows)
        self.error_id = error_id
        self.commands = []

    def exec_(self, command, *options, **params):
        self.commands.append(command)
        if self.error_id is not None:
            raise ts3.query.TS3QueryError(SimpleNamespace(error={"id": self.error_id, "msg": "refused"}))
        return SimpleNamespace(parsed=self.rows)

    def close(self):
        pass


def make_directory(conn):
    channel = QueryChannel(Settings(), "Sync Bot")
    channel.conn = conn
    return TeamSpeakDirectory(Settings(), channel=channel)


@pytest.mark.parametrize("error_id", ["2560", "512", "1281"])
def test_group_edits_never_treat_not_found_as_success(error_id):
    directory = make_directory(StubConnection(error_id=error_id))

    with pytest.raises(DirectoryUnavailable, match="servergroupaddclient"):
        asyncio.run(directory.add_account_to_group(101, 999))
    with pytest.raises(DirectoryUnavailable, match="servergroupdelclient"):
        asyncio.run(directory.remove_account_from_group(101, 999))


def test_adding_an_existing_member_is_not_an_error():
    directory = make_directory(StubConnection(error_id="2561"))

    asyncio.run(directory.add_account_to_group(101, 10))


def test_unknown_server_group_is_a_bad_map_not_an_empty_group():
    directory = make_directory(StubConnection(error_id="2560"))

    with pytest.raises(DirectoryUnavailable, match="Bad map: server group 999"):
        asyncio.run(directory.list_group_members(999))


def test_empty_server_group_lists_no_members():
    directory = make_directory(StubConnection(error_id="1281"))

    assert asyncio.run(directory.list_group_members(10)) == []


@pytest.mark.parametrize("error_id", ["1281", "512"])
def test_client_lookups_return_none_when_not_found(error_id):
    directory = make_directory(StubConnection(error_id=error_id))

    assert asyncio.run(directory.find_account_by_identity("a=")) is None
    assert asyncio.run(directory.get_account_detail(101)) is None


def test_group_members_are_parsed():
    conn = StubConnection(rows=[
        {"cldbid": "101", "client_unique_identifier": "a=", "client_nickname": "Alice"},
        {"cldbid": "", "client_unique_identifier": "", "client_nickname": ""},
    ])
    directory = make_directory(conn)

    members = asyncio.run(directory.list_group_members(10))

    assert [(m.identity, m.nickname, m.db_id) for m in members] == [("a=", "Alice", 101)]
    assert conn.commands == ["servergroupclientlist"]


def test_other_query_errors_raise():
    directory = make_directory(StubConnection(error_id="2568"))

    with pytest.raises(DirectoryUnavailable, match="TeamSpeak rejected servergrouplist: refused"):
        asyncio.run(directory.list_groups())
