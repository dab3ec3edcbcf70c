import re

import pytest

from nomanweb_bff.errors import MissingState, StateMismatch, StateNotFound
from nomanweb_bff.oauth_state import STATE_KEY, TIMESTAMP_KEY, ConsumeResult, OAuthStateGuard
from nomanweb_bff.storage import CookieStore, ServerSessionStore


class BrokenStore:
    def get(self, key):
        raise RuntimeError("storage blocked")

    def set(self, key, value, max_age):
        raise RuntimeError("storage blocked")

    def delete(self, key):
        raise RuntimeError("storage blocked")


@pytest.fixture
def stores():
    return ServerSessionStore({}), CookieStore({})


def make_guard(stores, policy="lenient"):
    short_lived, long_lived = stores
    return OAuthStateGuard(short_lived, long_lived, policy=policy)


def test_issued_states_are_unique_and_long(stores):
    guard = make_guard(stores)
    values = {guard.issue().value for _ in range(200)}
    assert len(values) == 200
    for value in values:
        assert len(value) >= 32
        assert re.fullmatch(r"[A-Za-z0-9_-]+", value)


def test_issue_writes_both_stores_and_timestamp(stores):
    short_lived, long_lived = stores
    state = make_guard(stores).issue()
    assert short_lived.get(STATE_KEY) == state.value
    assert long_lived.get(STATE_KEY) == state.value
    assert long_lived.get(TIMESTAMP_KEY) == str(int(state.created_at * 1000))


def test_consume_match_clears_everything(stores):
    short_lived, long_lived = stores
    guard = make_guard(stores)
    state = guard.issue()

    assert guard.consume(state.value) is ConsumeResult.MATCH
    assert short_lived.get(STATE_KEY) is None
    assert long_lived.get(STATE_KEY) is None
    assert long_lived.get(TIMESTAMP_KEY) is None


def test_state_is_single_use(stores):
    guard = make_guard(stores)
    state = guard.issue()
    guard.consume(state.value)
    assert guard.consume(state.value) is ConsumeResult.NOT_FOUND


def test_falls_back_to_long_lived_store(stores):
    short_lived, long_lived = stores
    guard = make_guard(stores)
    state = guard.issue()
    short_lived.delete(STATE_KEY)

    assert guard.consume(state.value) is ConsumeResult.MATCH


def test_expired_short_lived_entry_is_ignored():
    now = [1000.0]
    short_lived = ServerSessionStore({}, clock=lambda: now[0])
    short_lived.set(STATE_KEY, "old", 600)
    now[0] += 601
    guard = OAuthStateGuard(short_lived, CookieStore({}))

    assert guard.consume("old") is ConsumeResult.NOT_FOUND


def test_lenient_mismatch_proceeds(stores):
    guard = make_guard(stores)
    guard.issue()
    assert guard.consume("something-else") is ConsumeResult.MISMATCH


def test_lenient_not_found_proceeds(stores):
    assert make_guard(stores).consume("xyz") is ConsumeResult.NOT_FOUND


def test_strict_mismatch_raises(stores):
    guard = make_guard(stores, policy="strict")
    guard.issue()
    with pytest.raises(StateMismatch):
        guard.consume("something-else")


def test_strict_not_found_raises(stores):
    with pytest.raises(StateNotFound):
        make_guard(stores, policy="strict").consume("xyz")


def test_missing_received_state_raises_and_still_clears(stores):
    short_lived, long_lived = stores
    guard = make_guard(stores)
    guard.issue()

    with pytest.raises(MissingState):
        guard.consume(None)
    assert short_lived.get(STATE_KEY) is None
    assert long_lived.get(STATE_KEY) is None


def test_non_ascii_state_does_not_crash(stores):
    guard = make_guard(stores)
    guard.issue()
    assert guard.consume("ステート") is ConsumeResult.MISMATCH


def test_broken_store_is_tolerated():
    long_lived = CookieStore({})
    guard = OAuthStateGuard(BrokenStore(), long_lived)
    state = guard.issue()

    assert long_lived.get(STATE_KEY) == state.value
    assert guard.consume(state.value) is ConsumeResult.MATCH
