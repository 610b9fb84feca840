#!/usr/bin/env python3
"""
Forum to TeamSpeak Group Membership Sync

Syncs TeamSpeak server group members from the mapped forum groups using the
diffsync library. Run directly for a single cycle (``--check`` for a dry run).
"""

import sys
import time
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from audit import AuditLog
from config import Settings, load_settings
from errors import AmbiguousAccount, DirectoryUnavailable, PartialCycleFailure, StoreUnavailable, SyncAlreadyRunning
from forum_adapter import ForumAdapter
from group_map import GroupMapStore
from models import ExternalMember, GroupMapping, GroupSyncDetail, Invoker, SyncMode, SyncReport
from teamspeak_adapter import TeamSpeakAdapter


logger = logging.getLogger(__name__)

Notify = Callable[[str], Awaitable[None]]

MESSAGE_LIST_LIMIT = 1024


def truncate(text: str, max_len: int = MESSAGE_LIST_LIMIT) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len - 5] + ' ...'


REPORT_SECTIONS = (
    ("added", "Members to add"),
    ("missing_account", "Members to add with no TeamSpeak client"),
    ("mismatched", "Members with mismatched TeamSpeak client"),
    ("removed", "Members to remove"),
    ("duplicates", "Duplicate Tags"),
    ("pending", "Pending members not added"),
    ("failures", "Failed changes"),
)


class Reconciler:
    """Brings mapped TeamSpeak server groups in line with forum group membership."""

    def __init__(self, settings: Settings, store, directory, group_map: GroupMapStore,
                 sync_log: Optional[AuditLog] = None, population_log: Optional[AuditLog] = None):
        self.settings = settings
        self.store = store
        self.directory = directory
        self.group_map = group_map
        self.sync_log = sync_log or AuditLog(settings.sync_log_file)
        self.population_log = population_log or AuditLog(settings.population_log_file)
        self.last_report: Optional[SyncReport] = None
        self._in_flight = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._in_flight.locked()

    async def run_sync(self, mode: SyncMode = SyncMode.APPLY, notify: Optional[Notify] = None) -> SyncReport:
        """
        Run one full cycle over every mapping.

        Raises SyncAlreadyRunning if another cycle is in flight. A mapping that
        cannot be loaded is reported and skipped; the cycle carries on.
        """
        if self._in_flight.locked():
            raise SyncAlreadyRunning("a forum sync is already running")

        async with self._in_flight:
            report = SyncReport(mode=mode)
            self.last_report = report
            started = time.monotonic()
            logger.info(f"Starting forum sync ({mode.value})")
            if mode is SyncMode.CHECK:
                logger.info("Running in CHECK mode - no changes will be made")

            try:
                self.sync_log.append_line("Forum sync started")
                await self._record_population()

                seen: Dict[str, ExternalMember] = {}
                for group_name, mapping in self.group_map.list_mappings().items():
                    detail = GroupSyncDetail(group_name=group_name, sgid=mapping.sgid)
                    report.groups.append(detail)
                    try:
                        await self._sync_mapping(group_name, mapping, mode, seen, detail)
                    except PartialCycleFailure as e:
                        detail.error = str(e.cause)
                        logger.error(f"Sync of {group_name} aborted: {e.cause}")
                        await self._send(notify, f"Sync {group_name}: {e.cause}")
                        continue
                    self._write_group_log(detail)
                    await self._notify_group(notify, detail)

                report.completed = True
            finally:
                report.elapsed_seconds = time.monotonic() - started
                msg = report.summary()
                if not report.completed:
                    msg += " (incomplete)"
                logger.info(msg)
                self.sync_log.append_line(msg)

            await self._send(notify, msg)
            return report

    async def _record_population(self):
        try:
            online, maximum = await self.directory.server_population()
        except DirectoryUnavailable as e:
            logger.warning(f"Could not read server population: {e}")
            return
        self.population_log.append_line(f"{online}/{maximum}")

    async def _sync_mapping(self, group_name: str, mapping: GroupMapping, mode: SyncMode,
                            seen: Dict[str, ExternalMember], detail: GroupSyncDetail):
        primary = mapping.sgid in self.settings.member_groups

        forum_adapter = ForumAdapter(forum_store=self.store, chat_group_id=mapping.sgid)
        try:
            await asyncio.to_thread(forum_adapter.load, mapping.forum_groups, primary=primary, seen=seen)
        except StoreUnavailable as e:
            raise PartialCycleFailure(group_name, e) from e
        detail.duplicates.extend(forum_adapter.duplicates)

        self.sync_log.append_line(f"Sync {group_name}")

        teamspeak_adapter = TeamSpeakAdapter(directory=self.directory, chat_group_id=mapping.sgid)
        teamspeak_adapter.dry_run = mode is SyncMode.CHECK
        try:
            await teamspeak_adapter.load()
        except DirectoryUnavailable as e:
            raise PartialCycleFailure(group_name, e) from e

        logger.debug(f"Forum adapter has {len(forum_adapter.get_all('membership'))} memberships")
        logger.debug(f"TeamSpeak adapter has {len(teamspeak_adapter.get_all('membership'))} memberships")

        # Queue creates/deletes through the model's create/delete methods
        teamspeak_adapter.sync_from(forum_adapter)

        await teamspeak_adapter.execute_pending_operations(detail)

    def _write_group_log(self, detail: GroupSyncDetail):
        for attr, title in REPORT_SECTIONS:
            self.sync_log.append_section(title, getattr(detail, attr))

    async def _notify_group(self, notify: Optional[Notify], detail: GroupSyncDetail):
        if notify is None:
            return
        for attr, title in REPORT_SECTIONS:
            entries = getattr(detail, attr)
            if entries:
                await self._send(notify, f"Sync {detail.group_name}: {title} ({len(entries)}): "
                                 + truncate(', '.join(entries)))

    async def _send(self, notify: Optional[Notify], message: str):
        if notify is None:
            return
        try:
            await notify(message)
        except Exception as e:
            logger.warning(f"Could not deliver sync message: {e}")

    async def apply_mappings_for(self, invoker: Invoker) -> List[str]:
        """
        Grant the server groups mapped from the invoker's forum groups right away.

        Returns the names of the groups that were added.
        """
        account = await asyncio.to_thread(self.store.groups_for_identity, invoker.identity)
        if account is None or not account.group_ids:
            return []

        index = await self.group_map.resolved_index(self.directory)
        to_add = {}
        for forum_group in account.group_ids:
            for sgid, chat_group in index.get(forum_group, {}).items():
                if sgid not in invoker.server_groups:
                    to_add[sgid] = chat_group.name

        granted = []
        for sgid, name in to_add.items():
            try:
                await self.directory.add_account_to_group(invoker.db_id, sgid)
            except DirectoryUnavailable as e:
                logger.error(f"Failed to add {name} to {invoker}: {e}")
                continue
            granted.append(name)

        if granted:
            logger.info(f"Granted {', '.join(granted)} to {invoker} ({account.username})")
        return granted


async def sync_forum_to_teamspeak(check_only: bool = False) -> SyncReport:
    """
    One-shot sync: connect, run a single cycle, disconnect.
    """
    from forum_store import ForumStore
    from teamspeak_client import TeamSpeakDirectory

    settings = load_settings()
    mode = SyncMode.CHECK if (check_only or settings.sync_dry_run) else SyncMode.APPLY

    store = ForumStore(settings)
    directory = TeamSpeakDirectory(settings)
    group_map = GroupMapStore(settings)

    try:
        await asyncio.to_thread(store.connect)
        await directory.connect()
        group_map.load()

        reconciler = Reconciler(settings, store, directory, group_map)
        report = await reconciler.run_sync(mode)
        logger.info("Sync completed successfully")
        return report

    finally:
        await asyncio.to_thread(store.close)
        await directory.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = asyncio.run(sync_forum_to_teamspeak(check_only="--check" in sys.argv[1:]))
    except (AmbiguousAccount, DirectoryUnavailable, StoreUnavailable) as e:
        logger.error(f"Sync failed: {e}", exc_info=True)
        sys.exit(1)
    sys.exit(0 if result.failure_count == 0 else 2)
