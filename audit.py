"""
Append-only audit logs (sync activity and server population)
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional


logger = logging.getLogger(__name__)


def timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AuditLog:
    """A plain UTF-8 text file that only ever grows. Each append is a single write."""

    def __init__(self, path: str):
        self.path = path

    def append(self, text: str) -> bool:
        if not self.path:
            return False
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(text)
            return True
        except OSError as e:
            logger.error(f"Failed to write audit log {self.path}: {e}")
            return False

    def append_line(self, message: str) -> bool:
        return self.append(f"{timestamp()}  {message}\n")

    def append_section(self, title: str, entries: Iterable[str]) -> bool:
        """Write a titled, indented list: "\\tTitle (n):\\n\\t\\tentry\\n\\t\\tentry\\n"."""
        entries = list(entries)
        if not entries:
            return False
        return self.append(f"\t{title} ({len(entries)}):\n\t\t" + "\n\t\t".join(entries) + "\n")
