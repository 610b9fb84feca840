"""
Forum adapter for diffsync
"""

import logging
from typing import Dict, Iterable, List, Optional

from diffsync import Adapter

from models import ACTIVE, DUPLICATE, PENDING, ExternalMember, GroupMembership


logger = logging.getLogger(__name__)


class ForumAdapter(Adapter):
    """
    DiffSync adapter for the forum database.
    Reads the members of the forum groups mapped to one TeamSpeak server group.
    """

    membership = GroupMembership
    top_level = ["membership"]

    def __init__(self, *args, forum_store=None, chat_group_id: int = 0, **kwargs):
        super().__init__(*args, **kwargs)
        # Adapter.store is the diffsync object store
        self.forum_store = forum_store
        self.chat_group_id = chat_group_id
        self.duplicates: List[str] = []

    def _add_membership(self, member: ExternalMember, status: str) -> None:
        """Helper to create and add a membership object."""
        membership = GroupMembership(
            identity=member.linked_identity,
            chat_group_id=self.chat_group_id,
            status=status,
            display_name=member.display_name,
            cohort=member.cohort,
        )
        self.add(membership)
        logger.debug(f"Added membership: {member.linked_identity} ({member.display_name}) -> {self.chat_group_id} [{status}]")

    def load(self, forum_groups: Iterable[int], primary: bool = False,
             seen: Optional[Dict[str, ExternalMember]] = None):
        """
        Load the members of the given forum groups.

        For primary membership groups pending accounts are included, and every
        identity is checked against the cycle-wide ``seen`` table: the first
        member with an identity wins, later ones are loaded as duplicates so
        they are neither added nor removed.
        """
        forum_groups = list(forum_groups)
        logger.info(f"Loading forum members of groups {forum_groups} for server group {self.chat_group_id}")

        members = self.forum_store.list_members_for_groups(forum_groups, include_pending=primary)
        if seen is None:
            seen = {}
        loaded: Dict[str, ExternalMember] = {}

        for member in members:
            identity = member.linked_identity
            if not identity:
                continue

            if identity in loaded:
                first = loaded[identity]
                logger.warning(f"Found duplicate tsid {identity} for forum user {member.display_name} "
                               f"first seen for forum user {first.display_name}")
                if primary:
                    self.duplicates.append(f"{identity} ({member.display_name}) -- First seen user {first.display_name}")
                continue

            status = PENDING if member.pending else ACTIVE
            if primary:
                first = seen.get(identity)
                if first is not None:
                    logger.warning(f"Duplicate tsid {identity} for forum user {member.display_name} "
                                   f"first seen for forum user {first.display_name}")
                    self.duplicates.append(f"{identity} ({member.display_name}) -- First seen user {first.display_name}")
                    status = DUPLICATE
                else:
                    seen[identity] = member

            loaded[identity] = member
            self._add_membership(member, status)

        logger.info(f"Loaded {len(loaded)} memberships from forum for server group {self.chat_group_id}")
