"""Tests for the verification session state machine."""

import pytest

from access_bot.data.models import Claim, SessionState
from access_bot.engine.verification import (
    TRANSITIONS,
    Effect,
    SessionEvent,
    VerificationManager,
    is_valid_claim,
    transition,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_transition_table_is_total() -> None:
    for state in SessionState:
        for event in SessionEvent:
            new_state, effect = transition(state, event)
            assert isinstance(new_state, SessionState)
            assert isinstance(effect, Effect)
    assert len(TRANSITIONS) == len(SessionState) * len(SessionEvent)


def test_verified_is_absorbing() -> None:
    for event in SessionEvent:
        assert transition(SessionState.VERIFIED, event) == (
            SessionState.VERIFIED,
            Effect.NOOP,
        )


def test_only_bound_after_claim_triggers_planning() -> None:
    triggers = [key for key, (_, effect) in TRANSITIONS.items() if effect == Effect.TRIGGER_PLAN]
    assert triggers == [(SessionState.CLAIM_SUBMITTED, SessionEvent.BOUND)]


@pytest.mark.parametrize(
    "claim, valid",
    [
        (Claim("abc", 1), True),
        (Claim("bob-1_x", 42), True),
        (Claim("", 1), False),
        (Claim("has space", 1), False),
        (Claim("x" * 129, 1), False),
        (Claim("abc", 0), False),
        (Claim("abc", "1"), False),
    ],
)
def test_claim_shape(claim, valid) -> None:
    assert is_valid_claim(claim) is valid


def test_happy_path() -> None:
    manager = VerificationManager(ttl_seconds=60, clock=FakeClock())
    session = manager.open(111, "S")
    assert session.state == SessionState.PENDING

    session, effect = manager.submit_claim(Claim("abc", 111))
    assert (session.state, effect) == (SessionState.CLAIM_SUBMITTED, Effect.NONE)
    assert session.external_id == "abc"
    assert session.season_id == "S"

    session, effect = manager.record_resolution(111, SessionEvent.BOUND)
    assert (session.state, effect) == (SessionState.VERIFIED, Effect.TRIGGER_PLAN)
    assert session.is_terminal()


def test_claim_without_session_opens_one() -> None:
    manager = VerificationManager(clock=FakeClock())
    session, effect = manager.submit_claim(Claim("abc", 7), "S")
    assert session.state == SessionState.CLAIM_SUBMITTED
    assert effect == Effect.NONE
    assert manager.get(7) is session


def test_invalid_claim_rejects_with_reason() -> None:
    manager = VerificationManager(clock=FakeClock())
    manager.open(5)
    session, effect = manager.submit_claim(Claim("not valid!", 5))
    assert (session.state, effect) == (SessionState.REJECTED, Effect.REJECT)
    assert session.reason == "invalid_claim"


def test_resolution_failures_reject() -> None:
    manager = VerificationManager(clock=FakeClock())
    for account, event in ((1, SessionEvent.NOT_FOUND), (2, SessionEvent.ALREADY_BOUND)):
        manager.submit_claim(Claim("abc", account))
        session, effect = manager.record_resolution(account, event)
        assert (session.state, effect) == (SessionState.REJECTED, Effect.REJECT)
        assert session.reason == event.value


def test_rejected_session_can_start_over() -> None:
    manager = VerificationManager(clock=FakeClock())
    manager.submit_claim(Claim("abc", 9))
    manager.record_resolution(9, SessionEvent.NOT_FOUND)

    session = manager.open(9)
    assert session.state == SessionState.PENDING
    assert session.reason is None


def test_open_returns_live_session() -> None:
    manager = VerificationManager(clock=FakeClock())
    first = manager.open(3)
    assert manager.open(3) is first

    manager.submit_claim(Claim("abc", 3))
    manager.record_resolution(3, SessionEvent.BOUND)
    assert manager.open(3).state == SessionState.VERIFIED


def test_sessions_expire_in_every_state() -> None:
    clock = FakeClock()
    manager = VerificationManager(ttl_seconds=60, clock=clock)
    manager.open(1)
    manager.submit_claim(Claim("abc", 2))
    manager.submit_claim(Claim("bob-1", 3))
    manager.record_resolution(3, SessionEvent.BOUND)
    manager.submit_claim(Claim("nope", 4))
    manager.record_resolution(4, SessionEvent.NOT_FOUND)

    clock.now += 30
    assert manager.get(3).state == SessionState.VERIFIED

    clock.now += 31
    assert manager.get(1) is None
    assert manager.purge_expired() == 3
    assert len(manager) == 0


def test_rejected_claims_do_not_pile_up() -> None:
    clock = FakeClock()
    manager = VerificationManager(ttl_seconds=60, clock=clock)
    for account in range(1, 501):
        manager.submit_claim(Claim("!", account))

    clock.now = 1e12

    assert manager.purge_expired() == 500
    assert len(manager) == 0


def test_each_claim_uses_its_own_season_hint() -> None:
    manager = VerificationManager(clock=FakeClock())
    session, _ = manager.submit_claim(Claim("abc", 5), season_id="nope")
    assert session.season_id == "nope"
    manager.record_resolution(5, SessionEvent.NOT_FOUND, "unknown_season")

    session, _ = manager.submit_claim(Claim("abc", 5))

    assert session.state == SessionState.CLAIM_SUBMITTED
    assert session.season_id is None


def test_claim_refreshes_expiry() -> None:
    clock = FakeClock()
    manager = VerificationManager(ttl_seconds=60, clock=clock)
    manager.open(1)
    clock.now += 50
    session, _ = manager.submit_claim(Claim("abc", 1))
    clock.now += 50
    assert manager.get(1) is session
