"""Per-user verification sessions and their state machine.

Sessions are ephemeral: they live in memory only and a lost session simply
means the user starts the flow again. The transition table is total, every
``(state, event)`` pair maps to exactly one ``(state, effect)``.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from enum import Enum

from ..data.models import Claim, SessionState, VerificationSession

log = logging.getLogger("access.verification")


class SessionEvent(str, Enum):
    CLAIM = "claim"
    INVALID_CLAIM = "invalid_claim"
    BOUND = "bound"
    NOT_FOUND = "not_found"
    ALREADY_BOUND = "already_bound"


class Effect(str, Enum):
    NONE = "none"
    TRIGGER_PLAN = "trigger_plan"
    REJECT = "reject"
    NOOP = "noop"


_S = SessionState
_E = SessionEvent

TRANSITIONS: dict[tuple[SessionState, SessionEvent], tuple[SessionState, Effect]] = {
    (_S.PENDING, _E.CLAIM): (_S.CLAIM_SUBMITTED, Effect.NONE),
    (_S.PENDING, _E.INVALID_CLAIM): (_S.REJECTED, Effect.REJECT),
    # a resolution that arrives before any claim cannot be trusted
    (_S.PENDING, _E.BOUND): (_S.REJECTED, Effect.REJECT),
    (_S.PENDING, _E.NOT_FOUND): (_S.REJECTED, Effect.REJECT),
    (_S.PENDING, _E.ALREADY_BOUND): (_S.REJECTED, Effect.REJECT),
    (_S.CLAIM_SUBMITTED, _E.CLAIM): (_S.CLAIM_SUBMITTED, Effect.NONE),
    (_S.CLAIM_SUBMITTED, _E.INVALID_CLAIM): (_S.REJECTED, Effect.REJECT),
    (_S.CLAIM_SUBMITTED, _E.BOUND): (_S.VERIFIED, Effect.TRIGGER_PLAN),
    (_S.CLAIM_SUBMITTED, _E.NOT_FOUND): (_S.REJECTED, Effect.REJECT),
    (_S.CLAIM_SUBMITTED, _E.ALREADY_BOUND): (_S.REJECTED, Effect.REJECT),
    (_S.REJECTED, _E.CLAIM): (_S.CLAIM_SUBMITTED, Effect.NONE),
    (_S.REJECTED, _E.INVALID_CLAIM): (_S.REJECTED, Effect.NOOP),
    (_S.REJECTED, _E.BOUND): (_S.REJECTED, Effect.NOOP),
    (_S.REJECTED, _E.NOT_FOUND): (_S.REJECTED, Effect.NOOP),
    (_S.REJECTED, _E.ALREADY_BOUND): (_S.REJECTED, Effect.NOOP),
    **{(_S.VERIFIED, event): (_S.VERIFIED, Effect.NOOP) for event in SessionEvent},
}


def transition(state: SessionState, event: SessionEvent) -> tuple[SessionState, Effect]:
    return TRANSITIONS[(state, event)]


_EXTERNAL_ID = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")


def is_valid_claim(claim: Claim) -> bool:
    """Check the claim's shape; whether it is known is the store's business."""
    if not isinstance(claim.external_id, str) or not _EXTERNAL_ID.match(claim.external_id):
        return False
    return isinstance(claim.platform_account_id, int) and claim.platform_account_id > 0


class VerificationManager:
    """Keeps one :class:`VerificationSession` per platform account.

    Sessions in every state expire ``ttl_seconds`` after their last state
    change, so the table never outgrows the accounts verifying right now.
    A binding that outlives its session is kept by the identity store.
    """

    def __init__(
        self,
        ttl_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: dict[int, VerificationSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def get(self, platform_account_id: int) -> VerificationSession | None:
        """Return the live session for an account, dropping it if expired."""
        session = self._sessions.get(platform_account_id)
        if session is not None and session.expired(self._clock()):
            log.debug("Discarding expired session for %s", platform_account_id)
            del self._sessions[platform_account_id]
            return None
        return session

    def open(
        self, platform_account_id: int, season_id: str | None = None
    ) -> VerificationSession:
        """Issue a PENDING session unless the account already verified.

        A rejected session is replaced so the user can start over.
        """
        self.purge_expired()
        session = self.get(platform_account_id)
        if session is not None and session.state != SessionState.REJECTED:
            return session
        now = self._clock()
        session = VerificationSession(
            platform_account_id=platform_account_id,
            season_id=season_id,
            created_ts=now,
            expires_ts=now + self.ttl_seconds,
        )
        self._sessions[platform_account_id] = session
        log.info("Opened verification session for %s", platform_account_id)
        return session

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [k for k, s in self._sessions.items() if s.expired(now)]
        for key in stale:
            del self._sessions[key]
        return len(stale)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def submit_claim(
        self, claim: Claim, season_id: str | None = None
    ) -> tuple[VerificationSession, Effect]:
        """Feed a claim into the account's session, opening one if needed."""
        account = claim.platform_account_id
        session = self.get(account) if isinstance(account, int) else None
        if session is None:
            session = self.open(account, season_id)
        if is_valid_claim(claim):
            effect = self._apply(session, SessionEvent.CLAIM)
            if session.state == SessionState.CLAIM_SUBMITTED:
                session.external_id = claim.external_id
                # each claim carries its own season hint
                session.season_id = season_id
                session.reason = None
        else:
            effect = self._apply(session, SessionEvent.INVALID_CLAIM, "invalid_claim")
        return session, effect

    def record_resolution(
        self,
        platform_account_id: int,
        event: SessionEvent,
        reason: str | None = None,
    ) -> tuple[VerificationSession, Effect]:
        """Apply the outcome of identity resolution and binding."""
        session = self.get(platform_account_id)
        if session is None:
            session = self.open(platform_account_id)
        return session, self._apply(session, event, reason or event.value)

    def _apply(
        self,
        session: VerificationSession,
        event: SessionEvent,
        reason: str | None = None,
    ) -> Effect:
        new_state, effect = transition(session.state, event)
        if new_state != session.state:
            log.info(
                "Session %s: %s -> %s on %s",
                session.platform_account_id,
                session.state.value,
                new_state.value,
                event.value,
            )
            session.expires_ts = self._clock() + self.ttl_seconds
        session.state = new_state
        if effect == Effect.REJECT:
            session.reason = reason or event.value
        return effect
