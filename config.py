"""
Configuration for the forum to TeamSpeak sync bot

All settings come from environment variables, optionally loaded from a .env file.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from dotenv import load_dotenv


logger = logging.getLogger(__name__)


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={value!r}, using {default}")
        return default


def parse_id_list(value: Optional[str]) -> FrozenSet[int]:
    """Parse a comma-separated list of numeric ids."""
    ids = set()
    for part in (value or "").split(','):
        part = part.strip()
        if not part:
            continue
        try:
            ids.add(int(part))
        except ValueError:
            logger.warning(f"Ignoring non-numeric group id {part!r}")
    return frozenset(ids)


def parse_str_list(value: Optional[str]) -> FrozenSet[str]:
    """Parse a comma-separated list of strings."""
    return frozenset(p.strip() for p in (value or "").split(',') if p.strip())


@dataclass(frozen=True)
class Settings:
    # TeamSpeak ServerQuery
    ts3_host: str = "localhost"
    ts3_query_port: int = 10011
    ts3_server_port: int = 9987
    ts3_username: str = "serveradmin"
    ts3_password: str = ""
    ts3_nickname: str = "SyncBot"
    ts3_protocol: str = "telnet"
    ts3_timeout_seconds: int = 30

    # Forum database
    forum_db_url: str = ""
    forum_table_prefix: str = ""
    forum_tracker_prefix: str = ""
    forum_identity_field: str = "field18"
    forum_cohort_field: str = "field13"
    forum_password_digest: str = "md5"
    forum_db_timeout_seconds: int = 30

    # Commands and permissions
    command_prefix: str = "!"
    owner_unique_ids: FrozenSet[str] = field(default_factory=frozenset)
    admin_groups: FrozenSet[int] = field(default_factory=frozenset)
    staff_groups: FrozenSet[int] = field(default_factory=frozenset)
    division_command_groups: FrozenSet[int] = field(default_factory=frozenset)
    mod_groups: FrozenSet[int] = field(default_factory=frozenset)
    recruiter_groups: FrozenSet[int] = field(default_factory=frozenset)
    member_groups: FrozenSet[int] = field(default_factory=frozenset)
    guest_groups: FrozenSet[int] = field(default_factory=frozenset)

    # Group map
    ts_officer_suffix: str = " Officer"
    forum_officer_suffix: str = " Officers"
    forum_group_map_file: str = "forum_group_map.json"

    # Sync
    sync_log_file: str = "sync.log"
    population_log_file: str = "population.log"
    sync_interval_seconds: int = 900
    sync_dry_run: bool = False

    # Login rate limiting
    login_max_attempts: int = 5
    login_error_timeout_seconds: int = 900

    log_level: str = "INFO"

    @property
    def login_error_timeout_ms(self) -> int:
        return self.login_error_timeout_seconds * 1000

    @property
    def ts3_uri(self) -> str:
        from urllib.parse import quote
        return (f"{self.ts3_protocol}://{quote(self.ts3_username, safe='')}:"
                f"{quote(self.ts3_password, safe='')}@{self.ts3_host}:{self.ts3_query_port}")


def load_settings(override: bool = False) -> Settings:
    """Build Settings from the environment (and .env)."""
    load_dotenv(override=override)

    return Settings(
        ts3_host=os.getenv("TS3_HOST", "localhost"),
        ts3_query_port=_get_int("TS3_QUERY_PORT", 10011),
        ts3_server_port=_get_int("TS3_SERVER_PORT", 9987),
        ts3_username=os.getenv("TS3_USERNAME", "serveradmin"),
        ts3_password=os.getenv("TS3_PASSWORD", ""),
        ts3_nickname=os.getenv("TS3_NICKNAME", "SyncBot"),
        ts3_protocol=os.getenv("TS3_PROTOCOL", "telnet"),
        ts3_timeout_seconds=_get_int("TS3_TIMEOUT_SECONDS", 30),
        forum_db_url=os.getenv("FORUM_DB_URL", ""),
        forum_table_prefix=os.getenv("FORUM_TABLE_PREFIX", ""),
        forum_tracker_prefix=os.getenv("FORUM_TRACKER_PREFIX", ""),
        forum_identity_field=os.getenv("FORUM_IDENTITY_FIELD", "field18"),
        forum_cohort_field=os.getenv("FORUM_COHORT_FIELD", "field13"),
        forum_password_digest=os.getenv("FORUM_PASSWORD_DIGEST", "md5"),
        forum_db_timeout_seconds=_get_int("FORUM_DB_TIMEOUT_SECONDS", 30),
        command_prefix=os.getenv("COMMAND_PREFIX", "!"),
        owner_unique_ids=parse_str_list(os.getenv("OWNER_UNIQUE_IDS")),
        admin_groups=parse_id_list(os.getenv("ADMIN_GROUPS")),
        staff_groups=parse_id_list(os.getenv("STAFF_GROUPS")),
        division_command_groups=parse_id_list(os.getenv("DIVISION_COMMAND_GROUPS")),
        mod_groups=parse_id_list(os.getenv("MOD_GROUPS")),
        recruiter_groups=parse_id_list(os.getenv("RECRUITER_GROUPS")),
        member_groups=parse_id_list(os.getenv("MEMBER_GROUPS")),
        guest_groups=parse_id_list(os.getenv("GUEST_GROUPS")),
        ts_officer_suffix=os.getenv("TS_OFFICER_SUFFIX", " Officer"),
        forum_officer_suffix=os.getenv("FORUM_OFFICER_SUFFIX", " Officers"),
        forum_group_map_file=os.getenv("FORUM_GROUP_MAP_FILE", "forum_group_map.json"),
        sync_log_file=os.getenv("SYNC_LOG_FILE", "sync.log"),
        population_log_file=os.getenv("POPULATION_LOG_FILE", "population.log"),
        sync_interval_seconds=_get_int("SYNC_INTERVAL_SECONDS", 900),
        sync_dry_run=_get_bool("SYNC_DRY_RUN"),
        login_max_attempts=_get_int("LOGIN_MAX_ATTEMPTS", 5),
        login_error_timeout_seconds=_get_int("LOGIN_ERROR_TIMEOUT_SECONDS", 900),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
