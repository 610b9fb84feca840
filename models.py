"""
Data models for forum to TeamSpeak sync
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional

from diffsync import DiffSyncModel


ACTIVE = "active"
PENDING = "pending"
DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ExternalGroup:
    id: int
    name: str


@dataclass(frozen=True)
class ExternalMember:
    external_id: int
    display_name: str
    linked_identity: Optional[str]
    cohort: str = ""
    pending: bool = False


@dataclass(frozen=True)
class ForumAccount:
    """A forum account as seen from its linked TeamSpeak identity."""
    account_id: int
    username: str
    group_ids: FrozenSet[int] = frozenset()


@dataclass(frozen=True)
class CredentialMatch:
    account_id: int
    username: str
    valid: bool


@dataclass(frozen=True)
class ChatGroup:
    sgid: int
    name: str


@dataclass(frozen=True)
class ChatGroupMember:
    identity: str
    nickname: str
    db_id: int


@dataclass(frozen=True)
class ChatAccount:
    db_id: int
    identity: str
    nickname: str = ""


@dataclass(frozen=True)
class Invoker:
    """The TeamSpeak client that sent a command."""
    client_id: int
    db_id: int
    identity: str
    nickname: str
    server_groups: FrozenSet[int] = frozenset()

    def __str__(self):
        return f"{self.nickname}[{self.identity}]"


@dataclass
class GroupMapping:
    sgid: int
    forum_groups: List[int] = field(default_factory=list)
    permanent: bool = False


class SyncMode(Enum):
    APPLY = "apply"
    CHECK = "check"


@dataclass
class GroupSyncDetail:
    """What happened to one mapped server group during a sync."""
    group_name: str
    sgid: int
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    missing_account: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    mismatched: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SyncReport:
    mode: SyncMode
    groups: List[GroupSyncDetail] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    completed: bool = False

    def _total(self, attr: str) -> int:
        return sum(len(getattr(g, attr)) for g in self.groups)

    @property
    def added_count(self) -> int:
        return self._total("added")

    @property
    def removed_count(self) -> int:
        return self._total("removed")

    @property
    def missing_account_count(self) -> int:
        return self._total("missing_account")

    @property
    def duplicate_count(self) -> int:
        return self._total("duplicates")

    @property
    def mismatch_count(self) -> int:
        return self._total("mismatched")

    @property
    def failure_count(self) -> int:
        return self._total("failures") + sum(1 for g in self.groups if g.error)

    def summary(self) -> str:
        return (f"Forum Sync Processing Time: {self.elapsed_seconds:.3f}s; "
                f"{self.added_count} groups added, {self.removed_count} groups removed, "
                f"{self.missing_account_count} members with no TeamSpeak client, "
                f"{self.duplicate_count} duplicate tags")


class GroupMembership(DiffSyncModel):
    """
    DiffSync model representing a TeamSpeak server group membership.
    A membership is a relationship between a client (identified by unique id) and a server group.
    """
    _modelname = "membership"
    _identifiers = ("identity", "chat_group_id")
    _attributes = ("status", "display_name", "cohort")

    identity: str
    chat_group_id: int
    status: str = ACTIVE
    display_name: str = ""
    cohort: str = ""
    chat_db_id: Optional[int] = None

    @classmethod
    def create(cls, adapter, ids, attrs):
        """Create this membership in the target adapter (TeamSpeak)."""
        membership = cls(**ids, **attrs)
        membership.adapter = adapter

        if hasattr(adapter, 'pending_operations'):
            if membership.status == ACTIVE:
                adapter.pending_operations.append(('create', membership))
            else:
                # Pending and duplicate members are reported, never added
                adapter.held.append(membership)

        return membership

    def delete(self) -> Optional["GroupMembership"]:
        """Delete this membership from the target adapter (TeamSpeak)."""
        if hasattr(self.adapter, 'pending_operations'):
            self.adapter.pending_operations.append(('delete', self))

        return self
