import asyncio

import pytest

from errors import AmbiguousAccount, InvalidCredentials, RateLimited
from login import CredentialLinker, LoginRateLimiter
from models import Invoker


class Clock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


def make_invoker(identity="me="):
    return Invoker(client_id=5, db_id=105, identity=identity, nickname="Me")


def test_limiter_blocks_after_max_failures_and_resets_window():
    clock = Clock()
    limiter = LoginRateLimiter(max_attempts=3, window_ms=60_000, clock=clock)

    for _ in range(3):
        limiter.check("me=")
        limiter.record_failure("me=")

    clock.now += 30_000
    with pytest.raises(RateLimited):
        limiter.check("me=")
    # The refused attempt restarted the window
    assert limiter.entries["me="].window_start_ms == clock.now

    clock.now += 59_999
    with pytest.raises(RateLimited):
        limiter.check("me=")


def test_limiter_forgets_entry_once_window_expires():
    clock = Clock()
    limiter = LoginRateLimiter(max_attempts=3, window_ms=60_000, clock=clock)
    for _ in range(3):
        limiter.record_failure("me=")

    clock.now += 60_000
    limiter.check("me=")

    assert "me=" not in limiter.entries


def test_sweep_evicts_only_expired_entries():
    clock = Clock()
    limiter = LoginRateLimiter(max_attempts=3, window_ms=60_000, clock=clock)
    limiter.record_failure("old=")
    clock.now += 30_000
    limiter.record_failure("new=")
    clock.now += 30_000

    assert limiter.sweep() == 1
    assert set(limiter.entries) == {"new="}


@pytest.fixture
def limiter(settings):
    return LoginRateLimiter(settings.login_max_attempts, settings.login_error_timeout_ms)


@pytest.fixture
def linker(settings, store, reconciler, limiter):
    return CredentialLinker(settings, store, reconciler, limiter)


def test_fourth_attempt_is_rate_limited_even_with_right_password(linker, store):
    store.add_account(1, "john", password_hash=linker.hash_secret("secret"))

    async def runner():
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await linker.link_identity(make_invoker(), "john", "wrong")
        with pytest.raises(RateLimited):
            await linker.link_identity(make_invoker(), "john", "secret")

    asyncio.run(runner())
    assert store.link_updates == []


def test_successful_login_leaves_failure_entry(linker, store, limiter):
    store.add_account(1, "john", password_hash=linker.hash_secret("secret"))

    async def runner():
        with pytest.raises(InvalidCredentials):
            await linker.link_identity(make_invoker(), "john", "wrong")
        return await linker.link_identity(make_invoker(), "john", "secret")

    result = asyncio.run(runner())

    assert result.username == "john"
    assert limiter.entries["me="].failure_count == 1


def test_login_moves_link_from_previous_account(linker, store):
    store.add_account(1, "john", password_hash=linker.hash_secret("secret"))
    store.add_account(2, "john_old", identity="me=")

    result = asyncio.run(linker.link_identity(make_invoker(), "john", "secret"))

    assert result.replaced_account == "john_old"
    assert store.accounts[2]["identity"] == ""
    assert store.accounts[1]["identity"] == "me="
    assert store.link_updates == [(2, ""), (1, "me=")]


def test_login_with_several_conflicting_accounts_changes_nothing(linker, store):
    store.add_account(1, "john", password_hash=linker.hash_secret("secret"))
    store.add_account(2, "alt1", identity="me=")
    store.add_account(3, "alt2", identity="me=")

    with pytest.raises(AmbiguousAccount):
        asyncio.run(linker.link_identity(make_invoker(), "john", "secret"))

    assert store.link_updates == []


def test_empty_credentials_are_rejected(linker, store, limiter):
    with pytest.raises(InvalidCredentials):
        asyncio.run(linker.link_identity(make_invoker(), "", "secret"))
    assert limiter.entries == {}


def test_grant_failure_keeps_link(linker, store, directory):
    store.add_account(1, "john", groups={2}, password_hash=linker.hash_secret("secret"))
    directory.add_account(105, "me=", "Me")
    directory.fail_adds.add(105)

    result = asyncio.run(linker.link_identity(make_invoker(), "john", "secret"))

    assert store.accounts[1]["identity"] == "me="
    assert result.granted_groups == []


def test_identity_locks_are_dropped_after_each_attempt(linker, store, limiter):
    store.add_account(1, "john", password_hash=linker.hash_secret("secret"))

    async def runner():
        await asyncio.gather(
            linker.link_identity(make_invoker(), "john", "secret"),
            linker.link_identity(make_invoker("other="), "john", "secret"),
        )
        with pytest.raises(InvalidCredentials):
            await linker.link_identity(make_invoker("third="), "john", "wrong")

    asyncio.run(runner())

    assert limiter._locks == {}
    assert limiter._lock_users == {}
    assert set(limiter.entries) == {"third="}
