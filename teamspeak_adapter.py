"""
TeamSpeak adapter for diffsync
"""

import logging
from typing import List

from diffsync import Adapter

from errors import DirectoryUnavailable
from models import DUPLICATE, PENDING, GroupMembership, GroupSyncDetail


logger = logging.getLogger(__name__)


class TeamSpeakAdapter(Adapter):
    """
    DiffSync adapter for TeamSpeak.
    Reads and writes the client list of one server group.
    """

    membership = GroupMembership
    top_level = ["membership"]

    def __init__(self, *args, directory=None, chat_group_id: int = 0, **kwargs):
        super().__init__(*args, **kwargs)
        self.directory = directory
        self.chat_group_id = chat_group_id
        self.dry_run: bool = False
        self.pending_operations: list = []
        self.held: List[GroupMembership] = []

    async def load(self):
        """Load the current members of the server group from TeamSpeak."""
        logger.info(f"Loading members of server group {self.chat_group_id} from TeamSpeak")

        members = await self.directory.list_group_members(self.chat_group_id)
        loaded = set()
        for member in members:
            if member.identity in loaded:
                logger.debug(f"Client {member.identity} listed twice in server group {self.chat_group_id}")
                continue
            membership = GroupMembership(
                identity=member.identity,
                chat_group_id=self.chat_group_id,
                display_name=member.nickname,
                chat_db_id=member.db_id,
            )
            membership.adapter = self
            self.add(membership)
            loaded.add(member.identity)
            logger.debug(f"Loaded membership: {member.identity} ({member.nickname}) -> {self.chat_group_id}")

        logger.info(f"Loaded {len(members)} memberships from TeamSpeak server group {self.chat_group_id}")

    async def add_membership(self, membership: GroupMembership, detail: GroupSyncDetail):
        """Resolve the forum member's TeamSpeak client and add it to the server group."""
        identity = membership.identity
        label = f"{identity} ({membership.display_name})"

        try:
            account = await self.directory.find_account_by_identity(identity)
        except DirectoryUnavailable as e:
            logger.error(f"Failed to look up client {identity}: {e}")
            detail.failures.append(f"{label}: lookup failed")
            return

        if account is None:
            detail.missing_account.append(f"{identity} ({membership.display_name} -- {membership.cohort})")
            return

        # clientdbfind is case insensitive, verify the exact unique id
        try:
            info = await self.directory.get_account_detail(account.db_id)
        except DirectoryUnavailable as e:
            logger.error(f"Failed to get client DB info for {identity}, dbid:{account.db_id}: {e}")
            detail.failures.append(f"{label}: lookup failed")
            return

        if info is None or info.identity != identity:
            found = info.identity if info else None
            logger.warning(f"Found client db entry for {membership.display_name}[{identity}] "
                           f"but tsid does not match client info [{found}]")
            detail.mismatched.append(f"{label} -- client has {found}")
            return

        if self.dry_run:
            logger.info(f"[DRY RUN] Would add: {label} to server group {self.chat_group_id}")
            detail.added.append(label)
            return

        try:
            await self.directory.add_account_to_group(account.db_id, self.chat_group_id)
        except DirectoryUnavailable as e:
            logger.error(f"Failed to add server group {self.chat_group_id} to {identity}: {e}")
            detail.failures.append(f"{label}: add failed")
            return

        logger.info(f"Added membership: {label} -> server group {self.chat_group_id}")
        detail.added.append(label)

    async def remove_membership(self, membership: GroupMembership, detail: GroupSyncDetail):
        """Remove a client from the server group."""
        label = f"{membership.identity} ({membership.display_name})"

        if self.dry_run:
            logger.info(f"[DRY RUN] Would remove: {label} from server group {self.chat_group_id}")
            detail.removed.append(label)
            return

        try:
            await self.directory.remove_account_from_group(membership.chat_db_id, self.chat_group_id)
        except DirectoryUnavailable as e:
            logger.error(f"Failed to remove server group {self.chat_group_id} from {membership.identity}: {e}")
            detail.failures.append(f"{label}: remove failed")
            return

        logger.info(f"Removed membership: {label} <- server group {self.chat_group_id}")
        detail.removed.append(label)

    async def execute_pending_operations(self, detail: GroupSyncDetail):
        """Execute all pending operations that were queued during sync."""
        for membership in self.held:
            if membership.status == PENDING:
                detail.pending.append(f"{membership.identity} ({membership.display_name})")
            elif membership.status == DUPLICATE:
                logger.debug(f"Not adding duplicate {membership.identity} to server group {self.chat_group_id}")
        self.held = []

        if not self.pending_operations:
            logger.info(f"No pending operations for server group {self.chat_group_id}")
            return

        logger.info(f"Executing {len(self.pending_operations)} pending operations for server group {self.chat_group_id}")

        # Removals first, then additions
        operations = sorted(self.pending_operations, key=lambda op: op[0] != 'delete')
        for operation, membership in operations:
            if operation == 'create':
                await self.add_membership(membership, detail)
            elif operation == 'delete':
                await self.remove_membership(membership, detail)

        self.pending_operations = []
