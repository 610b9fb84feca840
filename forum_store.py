"""
Forum (vBulletin) database access

Every query uses bound parameters; only table prefixes and profile field names,
which come from configuration, are formatted into the SQL text.
"""

import re
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from config import Settings
from errors import AmbiguousAccount, StoreUnavailable
from models import CredentialMatch, ExternalGroup, ExternalMember, ForumAccount


logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r'^[A-Za-z0-9_]*$')


def _checked_identifier(value: str, name: str) -> str:
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"{name} must be a plain SQL identifier, got {value!r}")
    return value


class ForumStore:
    """Reads forum groups and members, verifies logins and stores TeamSpeak links."""

    def __init__(self, settings: Settings, engine: Optional[Engine] = None):
        self.prefix = _checked_identifier(settings.forum_table_prefix, "FORUM_TABLE_PREFIX")
        self.tracker_prefix = _checked_identifier(settings.forum_tracker_prefix, "FORUM_TRACKER_PREFIX")
        self.identity_field = _checked_identifier(settings.forum_identity_field, "FORUM_IDENTITY_FIELD")
        self.cohort_field = _checked_identifier(settings.forum_cohort_field, "FORUM_COHORT_FIELD")
        self.settings = settings
        self.engine = engine

    def connect(self):
        """Create the database engine. Dropped connections are replaced before the next query."""
        if self.engine is not None:
            return
        timeout = self.settings.forum_db_timeout_seconds
        logger.info("Connecting to forum database")
        self.engine = create_engine(
            self.settings.forum_db_url,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args={
                "connect_timeout": timeout,
                "read_timeout": timeout,
                "write_timeout": timeout,
            },
        )

    def close(self):
        """Dispose of the connection pool."""
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            logger.info("Disconnected from forum database")

    def _fetch(self, intent: str, statement, params: Dict) -> List[Dict]:
        self.connect()
        try:
            with self.engine.connect() as connection:
                result = connection.execute(statement, params)
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            logger.error(f"Forum query failed ({intent}): {e}")
            raise StoreUnavailable(f"forum database unavailable while trying to {intent}") from e

    def _execute(self, intent: str, statement, params: Dict) -> int:
        self.connect()
        try:
            with self.engine.begin() as connection:
                return connection.execute(statement, params).rowcount
        except SQLAlchemyError as e:
            logger.error(f"Forum update failed ({intent}): {e}")
            raise StoreUnavailable(f"forum database unavailable while trying to {intent}") from e

    def list_groups(self) -> List[ExternalGroup]:
        """Return all forum usergroups."""
        rows = self._fetch(
            "list forum groups",
            text(f"SELECT usergroupid AS id, title AS name FROM {self.prefix}usergroup"),
            {},
        )
        return [ExternalGroup(id=int(row["id"]), name=row["name"]) for row in rows]

    def list_members_for_groups(self, group_ids: Iterable[int], include_pending: bool) -> List[ExternalMember]:
        """
        Return the members of the given forum groups that have a TeamSpeak identity set.

        A user belongs to a group through the primary usergroupid or the secondary
        membergroupids list. With include_pending, users with an unapproved member
        request are returned too, flagged as pending.
        """
        group_ids = sorted({int(g) for g in group_ids})
        if not group_ids:
            return []

        identity = f"f.{self.identity_field}"
        pending_clause = "OR r.requester_id IS NOT NULL " if include_pending else ""
        statement = text(
            f"SELECT u.userid, u.username, {identity} AS identity, f.{self.cohort_field} AS cohort, "
            f"(CASE WHEN (r.requester_id IS NOT NULL AND r.approver_id IS NULL) THEN 1 ELSE 0 END) AS pending "
            f"FROM {self.prefix}user AS u "
            f"INNER JOIN {self.prefix}userfield AS f ON u.userid=f.userid "
            f"LEFT JOIN {self.tracker_prefix}member_requests AS r "
            f"ON u.userid=r.member_id AND r.approver_id IS NULL "
            f"WHERE (u.usergroupid IN :group_ids OR u.membergroupids REGEXP :group_regex "
            f"{pending_clause}) "
            f"AND ({identity} IS NOT NULL AND {identity} <> '') "
            f"ORDER BY f.{self.cohort_field}, u.username"
        ).bindparams(bindparam("group_ids", expanding=True))
        group_regex = "(^|,)(" + "|".join(str(g) for g in group_ids) + ")(,|$)"

        rows = self._fetch(
            f"list members of forum groups {group_ids}",
            statement,
            {"group_ids": group_ids, "group_regex": group_regex},
        )
        return [
            ExternalMember(
                external_id=int(row["userid"]),
                display_name=row["username"],
                linked_identity=(row["identity"] or "").strip() or None,
                cohort=row["cohort"] or "",
                pending=bool(row["pending"]),
            )
            for row in rows
        ]

    def verify_credential(self, username: str, secret_hash: str) -> Optional[CredentialMatch]:
        """Check a username and hashed password with the forum's check_user procedure."""
        rows = self._fetch(
            f"verify the login of {username}",
            text("CALL check_user(:username, :secret_hash)"),
            {"username": username, "secret_hash": secret_hash},
        )
        if not rows:
            return None
        row = rows[0]
        if row.get("userid") is None:
            return None
        return CredentialMatch(
            account_id=int(row["userid"]),
            username=row["username"],
            valid=str(row.get("valid")) == "1",
        )

    def find_conflicting_links(self, identity: str, excluding_account_id: int) -> List[ForumAccount]:
        """Return other forum accounts already linked to this TeamSpeak identity."""
        rows = self._fetch(
            f"find accounts linked to {identity}",
            text(
                f"SELECT u.userid, u.username FROM {self.prefix}userfield f "
                f"INNER JOIN {self.prefix}user u ON f.userid=u.userid "
                f"WHERE f.{self.identity_field}=:identity AND f.userid<>:account_id"
            ),
            {"identity": identity, "account_id": excluding_account_id},
        )
        return [ForumAccount(account_id=int(row["userid"]), username=row["username"]) for row in rows]

    def set_linked_identity(self, account_id: int, identity: str):
        """Store the TeamSpeak identity on the forum account."""
        self._execute(
            f"link forum account {account_id}",
            text(f"UPDATE {self.prefix}userfield SET {self.identity_field}=:identity WHERE userid=:account_id"),
            {"identity": identity, "account_id": account_id},
        )

    def clear_linked_identity(self, account_id: int):
        """Remove the TeamSpeak identity from the forum account."""
        self.set_linked_identity(account_id, "")

    def groups_for_identity(self, identity: str) -> Optional[ForumAccount]:
        """Return the forum account (and its groups) linked to a TeamSpeak identity."""
        rows = self._fetch(
            f"look up the forum account of {identity}",
            text(
                f"SELECT u.userid, u.username, u.usergroupid, u.membergroupids "
                f"FROM {self.prefix}user AS u "
                f"INNER JOIN {self.prefix}userfield AS f ON u.userid=f.userid "
                f"WHERE f.{self.identity_field}=:identity"
            ),
            {"identity": identity},
        )
        if not rows:
            return None
        if len(rows) > 1:
            logger.error(f"Member name conflict: {len(rows)} members have the TSID {identity}")
            raise AmbiguousAccount(identity, len(rows))

        row = rows[0]
        groups = set()
        if row.get("usergroupid") is not None:
            groups.add(int(row["usergroupid"]))
        for part in (row.get("membergroupids") or "").split(','):
            part = part.strip()
            if part.isdigit():
                groups.add(int(part))
        return ForumAccount(account_id=int(row["userid"]), username=row["username"], group_ids=frozenset(groups))
