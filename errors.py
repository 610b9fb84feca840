"""
Error types shared by the sync bot components
"""


class SyncBotError(Exception):
    """Base class for errors raised by the sync bot."""


class StoreUnavailable(SyncBotError):
    """The forum database could not be queried."""


class DirectoryUnavailable(SyncBotError):
    """The TeamSpeak server could not be queried."""


class InvalidCredentials(SyncBotError):
    """Username/password did not match a validated forum account."""


class RateLimited(SyncBotError):
    """Too many failed login attempts for this identity."""

    def __init__(self, identity: str, retry_after_ms: int):
        super().__init__(f"too many failed login attempts for {identity}")
        self.identity = identity
        self.retry_after_ms = retry_after_ms


class NotEligible(SyncBotError):
    """The group does not follow the officer naming convention."""


class Immutable(SyncBotError):
    """The mapping is marked permanent."""


class MapNotFound(SyncBotError):
    """No such mapping."""


class MapExists(SyncBotError):
    """The mapping already exists."""


class GroupNotFound(SyncBotError):
    """A named TeamSpeak or forum group does not exist."""


class DataIntegrityFault(SyncBotError):
    """Forum and TeamSpeak records disagree in a way sync must not paper over."""


class AmbiguousAccount(DataIntegrityFault):
    """More than one forum account is linked to the same TeamSpeak identity."""

    def __init__(self, identity: str, count: int):
        super().__init__(f"{count} forum accounts are linked to {identity}")
        self.identity = identity
        self.count = count


class PartialCycleFailure(SyncBotError):
    """A single mapping could not be synced; the cycle carried on."""

    def __init__(self, group_name: str, cause: Exception):
        super().__init__(f"{group_name}: {cause}")
        self.group_name = group_name
        self.cause = cause


class SyncAlreadyRunning(SyncBotError):
    """A full sync cycle is already in flight."""
