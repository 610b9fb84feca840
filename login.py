"""
Forum login: links a TeamSpeak identity to a forum account
"""

import asyncio
import hashlib
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from config import Settings
from errors import AmbiguousAccount, DirectoryUnavailable, InvalidCredentials, RateLimited, StoreUnavailable
from models import Invoker


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitEntry:
    identity: str
    window_start_ms: int
    failure_count: int = 0


class LoginRateLimiter:
    """
    Failed login tracking per TeamSpeak identity.

    An entry lives for ``window_ms`` after its last update. Once it has
    ``max_attempts`` failures every further attempt inside the window is
    refused and restarts the window.
    """

    def __init__(self, max_attempts: int, window_ms: int, clock: Callable[[], int] = _now_ms):
        self.max_attempts = max_attempts
        self.window_ms = window_ms
        self.clock = clock
        self.entries: Dict[str, RateLimitEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, identity: str):
        """
        Serializes check/verify/record for one identity.

        The lock is dropped once nobody holds or waits for it.
        """
        lock = self._locks.setdefault(identity, asyncio.Lock())
        self._lock_users[identity] = self._lock_users.get(identity, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[identity] -= 1
            if not self._lock_users[identity]:
                del self._lock_users[identity]
                del self._locks[identity]

    def _expired(self, entry: RateLimitEntry, now: int) -> bool:
        return entry.window_start_ms + self.window_ms <= now

    def check(self, identity: str):
        """Raise RateLimited if the identity is locked out; drop the entry once it has expired."""
        entry = self.entries.get(identity)
        if entry is None:
            return
        now = self.clock()
        if self._expired(entry, now):
            del self.entries[identity]
            return
        if entry.failure_count >= self.max_attempts:
            entry.window_start_ms = now
            raise RateLimited(identity, self.window_ms)

    def record_failure(self, identity: str) -> RateLimitEntry:
        now = self.clock()
        entry = self.entries.get(identity)
        if entry is None:
            entry = self.entries[identity] = RateLimitEntry(identity=identity, window_start_ms=now)
        entry.window_start_ms = now
        entry.failure_count += 1
        return entry

    def sweep(self) -> int:
        """Evict expired entries. Returns how many were removed."""
        now = self.clock()
        expired = [identity for identity, entry in self.entries.items() if self._expired(entry, now)]
        for identity in expired:
            del self.entries[identity]
        if expired:
            logger.debug(f"Cleared {len(expired)} expired login error entries")
        return len(expired)


@dataclass
class LinkResult:
    account_id: int
    username: str
    granted_groups: List[str]
    replaced_account: Optional[str] = None
    grant_failed: bool = False


class CredentialLinker:
    """Verifies forum credentials and stores the caller's TeamSpeak identity on the account."""

    def __init__(self, settings: Settings, store, reconciler, limiter: LoginRateLimiter):
        self.settings = settings
        self.store = store
        self.reconciler = reconciler
        self.limiter = limiter

    def hash_secret(self, secret: str) -> str:
        return hashlib.new(self.settings.forum_password_digest, secret.encode("utf-8")).hexdigest()

    async def link_identity(self, invoker: Invoker, username: str, secret: str) -> LinkResult:
        if not username or not secret:
            raise InvalidCredentials("Username and Password must be provided.")

        identity = invoker.identity
        async with self.limiter.lock(identity):
            try:
                self.limiter.check(identity)
            except RateLimited:
                logger.info(f"{invoker} login failed for {username} (too many attempts)")
                raise

            match = await asyncio.to_thread(self.store.verify_credential, username, self.hash_secret(secret))
            if match is None or not match.valid:
                entry = self.limiter.record_failure(identity)
                logger.info(f"{invoker} login failed for {username} (count: {entry.failure_count})")
                raise InvalidCredentials(f"Login failed for {username}.")

        conflicts = await asyncio.to_thread(self.store.find_conflicting_links, identity, match.account_id)
        if len(conflicts) > 1:
            logger.error(f"{invoker} is linked to {len(conflicts)} other forum accounts: "
                         f"{', '.join(f'{c.username} ({c.account_id})' for c in conflicts)}")
            raise AmbiguousAccount(identity, len(conflicts) + 1)

        replaced = None
        if conflicts:
            previous = conflicts[0]
            logger.warning(f"Existing forum account found {previous.username} ({previous.account_id}) "
                           f"for {identity}; moving link to {match.username} ({match.account_id})")
            await asyncio.to_thread(self.store.clear_linked_identity, previous.account_id)
            replaced = previous.username

        await asyncio.to_thread(self.store.set_linked_identity, match.account_id, identity)
        logger.info(f"{invoker} logged in as {match.username} ({match.account_id})")

        grant_failed = False
        try:
            granted = await self.reconciler.apply_mappings_for(invoker)
        except (AmbiguousAccount, DirectoryUnavailable, StoreUnavailable) as e:
            logger.error(f"Linked {invoker} to {match.username} but granting server groups failed: {e}")
            granted = []
            grant_failed = True

        return LinkResult(
            account_id=match.account_id,
            username=match.username,
            granted_groups=granted,
            replaced_account=replaced,
            grant_failed=grant_failed,
        )
