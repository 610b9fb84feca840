"""
Persisted map of TeamSpeak server groups to forum groups
"""

import json
import logging
import os
import tempfile
from typing import Dict, Optional

from config import Settings
from errors import Immutable, MapExists, MapNotFound, NotEligible
from models import ChatGroup, ExternalGroup, GroupMapping


logger = logging.getLogger(__name__)


class GroupMapStore:
    """
    Owns the server group -> forum groups map.

    The JSON file is keyed by server group name:
        {"Clan Officer": {"sgid": 12, "forum_groups": [31, 40], "permanent": false}}

    Every mutation writes the whole map to disk and then drops the resolved
    forum group index, which is rebuilt from the map on next use.
    """

    def __init__(self, settings: Settings, path: Optional[str] = None):
        self.settings = settings
        self.path = path or settings.forum_group_map_file
        self._mappings: Optional[Dict[str, GroupMapping]] = None
        self._index: Optional[Dict[int, Dict[int, ChatGroup]]] = None

    def load(self) -> Dict[str, GroupMapping]:
        """(Re)read the map from disk. A missing or unreadable file gives an empty map."""
        mappings = {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Group map {self.path} not found, starting with an empty map")
            raw = {}
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read group map {self.path}: {e}")
            raw = {}

        for name, entry in raw.items():
            if not isinstance(entry, dict) or entry.get("sgid") is None:
                logger.error(f"Bad map for {name}")
                continue
            mappings[name] = GroupMapping(
                sgid=int(entry["sgid"]),
                forum_groups=[int(g) for g in entry.get("forum_groups", [])],
                permanent=bool(entry.get("permanent", False)),
            )

        self._mappings = mappings
        self._index = None
        logger.info(f"Loaded {len(mappings)} group maps from {self.path}")
        return mappings

    def list_mappings(self) -> Dict[str, GroupMapping]:
        if self._mappings is None:
            self.load()
        return dict(self._mappings)

    def _persist(self):
        data = {
            name: {"sgid": m.sgid, "forum_groups": list(m.forum_groups), "permanent": m.permanent}
            for name, m in self._mappings.items()
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(prefix=".group_map.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    def check_eligible(self, chat_group_name: str, forum_group_name: str):
        """Only officer groups on both sides may be mapped."""
        if not chat_group_name.endswith(self.settings.ts_officer_suffix):
            raise NotEligible("Only Officer Server Groups may be mapped")
        if not forum_group_name.endswith(self.settings.forum_officer_suffix):
            raise NotEligible("Only Officer Forum Groups may be mapped")

    def add_mapping(self, chat_group: ChatGroup, forum_group: ExternalGroup) -> GroupMapping:
        """Map a forum group onto a server group."""
        self.check_eligible(chat_group.name, forum_group.name)
        mappings = self.list_mappings()

        mapping = mappings.get(chat_group.name)
        if mapping is not None and mapping.permanent:
            raise Immutable(f"{chat_group.name} can not be edited")
        if mapping is not None and forum_group.id in mapping.forum_groups:
            raise MapExists("Map already exists")

        if mapping is None:
            mapping = GroupMapping(sgid=chat_group.sgid, forum_groups=[forum_group.id])
        else:
            mapping = GroupMapping(sgid=mapping.sgid, forum_groups=mapping.forum_groups + [forum_group.id],
                                   permanent=mapping.permanent)

        self._mappings[chat_group.name] = mapping
        self._persist()
        self.invalidate_index()
        logger.info(f"Mapped forum group {forum_group.name} ({forum_group.id}) to server group {chat_group.name}")
        return mapping

    def remove_mapping(self, chat_group: ChatGroup, forum_group: ExternalGroup) -> Optional[GroupMapping]:
        """Unmap a forum group; the mapping goes away with its last forum group."""
        self.check_eligible(chat_group.name, forum_group.name)
        mappings = self.list_mappings()

        mapping = mappings.get(chat_group.name)
        if mapping is None:
            raise MapNotFound("Map does not exist")
        if mapping.permanent:
            raise Immutable(f"{chat_group.name} can not be edited")
        if forum_group.id not in mapping.forum_groups:
            raise MapNotFound("Map does not exist")

        remaining = [g for g in mapping.forum_groups if g != forum_group.id]
        if remaining:
            mapping = GroupMapping(sgid=mapping.sgid, forum_groups=remaining, permanent=mapping.permanent)
            self._mappings[chat_group.name] = mapping
        else:
            del self._mappings[chat_group.name]
            mapping = None

        self._persist()
        self.invalidate_index()
        logger.info(f"Removed map of forum group {forum_group.name} ({forum_group.id}) from server group {chat_group.name}")
        return mapping

    def invalidate_index(self):
        self._index = None

    async def resolved_index(self, directory) -> Dict[int, Dict[int, ChatGroup]]:
        """
        Return forum group id -> {sgid -> server group}, building it on first use.

        Map entries whose server group no longer exists are logged and skipped.
        """
        if self._index is not None:
            return self._index

        index: Dict[int, Dict[int, ChatGroup]] = {}
        for name, mapping in self.list_mappings().items():
            chat_group = await directory.get_group_by_id(mapping.sgid)
            if chat_group is None:
                logger.error(f"Bad map for {name}: server group {mapping.sgid} not found")
                continue
            for forum_group in mapping.forum_groups:
                index.setdefault(forum_group, {})[mapping.sgid] = chat_group

        self._index = index
        return index
