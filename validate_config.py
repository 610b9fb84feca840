#!/usr/bin/env python3
"""
Check that the sync bot configuration is complete before starting it
"""

import os
import sys
from typing import List

from dotenv import load_dotenv


REQUIRED_VARS = [
    'TS3_HOST',
    'TS3_USERNAME',
    'TS3_PASSWORD',
    'FORUM_DB_URL',
    'MEMBER_GROUPS',
]

GROUP_LIST_VARS = [
    'ADMIN_GROUPS',
    'STAFF_GROUPS',
    'DIVISION_COMMAND_GROUPS',
    'MOD_GROUPS',
    'RECRUITER_GROUPS',
    'MEMBER_GROUPS',
    'GUEST_GROUPS',
]


def missing_config() -> List[str]:
    """Return the required variables that are unset or empty."""
    return [var for var in REQUIRED_VARS if not os.getenv(var)]


def malformed_group_lists() -> List[str]:
    """Return the group list variables holding something other than comma-separated ids."""
    bad = []
    for var in GROUP_LIST_VARS:
        parts = [p.strip() for p in os.getenv(var, '').split(',') if p.strip()]
        if any(not p.isdigit() for p in parts):
            bad.append(var)
    return bad


def validate_config() -> bool:
    """Report missing or malformed settings. Returns True if the bot can start."""
    missing = missing_config()
    malformed = malformed_group_lists()

    if missing:
        print("❌ Missing required configuration variables:")
        for var in missing:
            print(f"   - {var}")
    if malformed:
        print("❌ Group lists must be comma-separated server group ids:")
        for var in malformed:
            print(f"   - {var}={os.getenv(var)!r}")
    if missing or malformed:
        return False

    print("✅ All required configuration variables are set")
    return True


def display_config():
    """Print the settings that matter for a first run (no secrets)."""
    print("\n📋 Current Configuration:")
    print(f"   TeamSpeak: {os.getenv('TS3_PROTOCOL', 'telnet')}://{os.getenv('TS3_HOST')}:"
          f"{os.getenv('TS3_QUERY_PORT', '10011')} (virtual server port {os.getenv('TS3_SERVER_PORT', '9987')})")
    print(f"   Query Login: {os.getenv('TS3_USERNAME')}")
    print(f"   Forum Table Prefix: {os.getenv('FORUM_TABLE_PREFIX', '')!r}")
    print(f"   Member Groups: {os.getenv('MEMBER_GROUPS')}")
    print(f"   Group Map File: {os.getenv('FORUM_GROUP_MAP_FILE', 'forum_group_map.json')}")
    print(f"   Sync Interval: {os.getenv('SYNC_INTERVAL_SECONDS', '900')}s")
    print(f"   Dry Run Mode: {os.getenv('SYNC_DRY_RUN', 'false')}")
    print()


if __name__ == "__main__":
    load_dotenv()
    print("🔍 Forum to TeamSpeak Sync - Configuration Validator\n")

    if not validate_config():
        print("\n❌ Please update your .env file and run this check again")
        sys.exit(1)

    display_config()
    print("✅ Configuration is valid. Start the bot with:")
    print("   python bot.py")
    print("or run a single sync with:")
    print("   python sync.py --check")
