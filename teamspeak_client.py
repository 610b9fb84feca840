"""
TeamSpeak 3 ServerQuery client

Wraps the blocking py-ts3 connection for use from asyncio. Each call runs in a
worker thread with a timeout; a dropped connection is re-opened and the call
retried with backoff.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

import ts3.common
import ts3.query

from config import Settings
from errors import DirectoryUnavailable
from models import ChatAccount, ChatGroup, ChatGroupMember, Invoker
from retry import retry_async


logger = logging.getLogger(__name__)

# ServerQuery error ids
ERROR_EMPTY_RESULT = "1281"
ERROR_INVALID_CLIENT = "512"
ERROR_INVALID_GROUP = "2560"
ERROR_ALREADY_MEMBER = "2561"

# Errors that mean "nothing there" for a lookup. Anything else, and any error
# from a command that changes state, is a failure.
NOT_FOUND_ERRORS = {
    "servergroupclientlist": {ERROR_EMPTY_RESULT},
    "clientdbfind": {ERROR_EMPTY_RESULT, ERROR_INVALID_CLIENT},
    "clientdbinfo": {ERROR_EMPTY_RESULT, ERROR_INVALID_CLIENT},
    "clientinfo": {ERROR_EMPTY_RESULT, ERROR_INVALID_CLIENT},
}


class ConnectionLost(Exception):
    """The ServerQuery transport failed; the connection has been dropped."""


def _error_id(error: "ts3.query.TS3QueryError") -> str:
    try:
        return str(error.resp.error["id"])
    except (AttributeError, KeyError, TypeError):
        return ""


def _error_msg(error: "ts3.query.TS3QueryError") -> str:
    try:
        return error.resp.error["msg"]
    except (AttributeError, KeyError, TypeError):
        return str(error)


def _parse_groups(value: Optional[str]):
    return frozenset(int(g) for g in (value or "").split(',') if g.strip().isdigit())


class QueryChannel:
    """One ServerQuery login, selected onto the virtual server."""

    def __init__(self, settings: Settings, nickname: str):
        self.settings = settings
        self.nickname = nickname
        self.conn = None
        self.on_open = None
        self._lock = asyncio.Lock()

    def _open(self):
        logger.info(f"Connecting to TeamSpeak ServerQuery: {self.settings.ts3_host}:{self.settings.ts3_query_port}")
        conn = ts3.query.TS3ServerConnection(self.settings.ts3_uri)
        conn.exec_("use", port=self.settings.ts3_server_port)
        try:
            conn.exec_("clientupdate", client_nickname=self.nickname)
        except ts3.query.TS3QueryError as e:
            # Keeps the default query nickname
            logger.warning(f"Could not set nickname {self.nickname!r}: {_error_msg(e)}")
        if self.on_open is not None:
            self.on_open(conn)
        self.conn = conn
        logger.info(f"Connected to TeamSpeak as {self.nickname!r}")

    def _drop(self):
        if self.conn is not None:
            try:
                self.conn.close()
            except Exception as e:
                logger.debug(f"Error closing ServerQuery connection: {e}")
        self.conn = None

    async def connect(self):
        async with self._lock:
            if self.conn is not None:
                return
            try:
                await self._call(self._open)
            except ConnectionLost as e:
                raise DirectoryUnavailable(f"Could not connect to TeamSpeak: {e}") from e
            except ts3.query.TS3QueryError as e:
                raise DirectoryUnavailable(f"TeamSpeak login failed: {_error_msg(e)}") from e

    async def close(self):
        async with self._lock:
            self._drop()

    async def _call(self, func, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.settings.ts3_timeout_seconds,
            )
        except ts3.query.TS3QueryError:
            raise
        except (ts3.common.TS3Error, OSError, EOFError, asyncio.TimeoutError) as e:
            self._drop()
            raise ConnectionLost(f"{type(e).__name__}: {e}") from e

    @retry_async(max_attempts=3, base_delay=1.0, retry_exceptions=(ConnectionLost,))
    async def _exec_with_reconnect(self, command: str, *options, **params):
        async with self._lock:
            if self.conn is None:
                await self._call(self._open)
            return await self._call(self.conn.exec_, command, *options, **params)

    async def exec_(self, command: str, *options, **params) -> List[Dict[str, str]]:
        """
        Run a ServerQuery command and return the parsed response rows.

        "Not found" errors of lookup commands give an empty list, other
        failures raise DirectoryUnavailable. An unknown server group is
        never treated as an empty one.
        """
        try:
            resp = await self._exec_with_reconnect(command, *options, **params)
        except ConnectionLost as e:
            raise DirectoryUnavailable(f"TeamSpeak unavailable during {command}: {e}") from e
        except ts3.query.TS3QueryError as e:
            if _error_id(e) in NOT_FOUND_ERRORS.get(command, ()):
                return []
            raise DirectoryUnavailable(f"TeamSpeak rejected {command}: {_error_msg(e)}") from e
        return list(resp.parsed)


class TeamSpeakDirectory:
    """Server group and client lookups and group edits on the virtual server."""

    def __init__(self, settings: Settings, channel: Optional[QueryChannel] = None):
        self.settings = settings
        self.channel = channel or QueryChannel(settings, f"{settings.ts3_nickname} Sync")

    async def connect(self):
        await self.channel.connect()

    async def close(self):
        await self.channel.close()

    async def list_groups(self) -> List[ChatGroup]:
        rows = await self.channel.exec_("servergrouplist")
        return [ChatGroup(sgid=int(row["sgid"]), name=row["name"]) for row in rows]

    async def get_group_by_name(self, name: str) -> Optional[ChatGroup]:
        for group in await self.list_groups():
            if group.name == name:
                return group
        return None

    async def get_group_by_id(self, sgid: int) -> Optional[ChatGroup]:
        for group in await self.list_groups():
            if group.sgid == int(sgid):
                return group
        return None

    async def list_group_members(self, sgid: int) -> List[ChatGroupMember]:
        try:
            rows = await self.channel.exec_("servergroupclientlist", "names", sgid=sgid)
        except DirectoryUnavailable as e:
            if _error_id(e.__cause__) == ERROR_INVALID_GROUP:
                raise DirectoryUnavailable(f"Bad map: server group {sgid} does not exist") from e
            raise
        return [
            ChatGroupMember(
                identity=row["client_unique_identifier"],
                nickname=row.get("client_nickname", ""),
                db_id=int(row["cldbid"]),
            )
            for row in rows
            if row.get("cldbid")
        ]

    async def find_account_by_identity(self, identity: str) -> Optional[ChatAccount]:
        """Find a client database entry by unique id. The server matches case-insensitively."""
        rows = await self.channel.exec_("clientdbfind", "uid", pattern=identity)
        if not rows:
            return None
        return ChatAccount(db_id=int(rows[0]["cldbid"]), identity=identity)

    async def get_account_detail(self, db_id: int) -> Optional[ChatAccount]:
        rows = await self.channel.exec_("clientdbinfo", cldbid=db_id)
        if not rows:
            return None
        row = rows[0]
        return ChatAccount(
            db_id=int(db_id),
            identity=row["client_unique_identifier"],
            nickname=row.get("client_nickname", ""),
        )

    async def add_account_to_group(self, db_id: int, sgid: int):
        try:
            await self.channel.exec_("servergroupaddclient", sgid=sgid, cldbid=db_id)
        except DirectoryUnavailable as e:
            if isinstance(e.__cause__, ts3.query.TS3QueryError) and _error_id(e.__cause__) == ERROR_ALREADY_MEMBER:
                return
            raise

    async def remove_account_from_group(self, db_id: int, sgid: int):
        await self.channel.exec_("servergroupdelclient", sgid=sgid, cldbid=db_id)

    async def server_population(self) -> Tuple[int, int]:
        """Return (clients online, max clients)."""
        rows = await self.channel.exec_("serverinfo")
        if not rows:
            return 0, 0
        row = rows[0]
        return int(row.get("virtualserver_clientsonline", 0)), int(row.get("virtualserver_maxclients", 0))


class TeamSpeakListener:
    """
    Receives private text messages sent to the bot and answers them.

    Uses its own ServerQuery login so that waiting for events never blocks the
    directory calls of a running sync.
    """

    def __init__(self, settings: Settings, channel: Optional[QueryChannel] = None,
                 poll_seconds: float = 1.0, keepalive_seconds: float = 60.0):
        self.settings = settings
        self.channel = channel or QueryChannel(settings, settings.ts3_nickname)
        self.poll_seconds = poll_seconds
        self.keepalive_seconds = keepalive_seconds
        self.client_id: Optional[int] = None

    def _register(self, conn):
        # Runs on every (re)connect, event registration does not survive a new login
        resp = conn.exec_("whoami")
        self.client_id = int(resp.parsed[0]["client_id"])
        conn.exec_("servernotifyregister", event="textprivate")
        logger.info("Bot registered for events")

    @property
    def connected(self) -> bool:
        return self.channel.conn is not None

    async def connect(self):
        self.channel.on_open = self._register
        await self.channel.connect()

    async def close(self):
        await self.channel.close()

    def _wait(self):
        try:
            return self.channel.conn.wait_for_event(timeout=self.poll_seconds)
        except ts3.query.TS3TimeoutError:
            return None

    async def next_message(self) -> Optional[Dict[str, str]]:
        """Wait up to one poll interval for a private text message event."""
        async with self.channel._lock:
            if self.channel.conn is None:
                return None
            event = await self.channel._call(self._wait)
        if event is None or event.event != "notifytextmessage":
            return None
        data = event.parsed[0]
        if str(data.get("targetmode")) != "1":
            return None
        if self.client_id is not None and str(data.get("invokerid")) == str(self.client_id):
            return None
        return data

    async def keepalive(self):
        async with self.channel._lock:
            if self.channel.conn is not None:
                await self.channel._call(self.channel.conn.send_keepalive)

    async def get_invoker(self, client_id: int) -> Optional[Invoker]:
        rows = await self.channel.exec_("clientinfo", clid=client_id)
        if not rows:
            return None
        row = rows[0]
        return Invoker(
            client_id=int(client_id),
            db_id=int(row["client_database_id"]),
            identity=row["client_unique_identifier"],
            nickname=row.get("client_nickname", ""),
            server_groups=_parse_groups(row.get("client_servergroups")),
        )

    async def send_message(self, client_id: int, text: str):
        await self.channel.exec_("sendtextmessage", targetmode=1, target=client_id, msg=text)
