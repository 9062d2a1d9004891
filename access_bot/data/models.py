from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from ..core.models import Capability, ChannelSpec, Role


@dataclass(frozen=True)
class Overwrite:
    allow: frozenset[Capability] = frozenset()
    deny: frozenset[Capability] = frozenset()
    # raw permission bits with no Capability; desired overwrites keep them 0
    extra_allow: int = 0
    extra_deny: int = 0


# ----------------------------------------------------------------------
# Mutation operations.  Pure data: nothing happens until the Reconciler
# executes them, and each one describes an end state, not a delta.
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class GrantRole:
    user_id: int
    role: str


@dataclass(frozen=True)
class RevokeRole:
    user_id: int
    role: str


@dataclass(frozen=True)
class SetNickname:
    user_id: int
    nickname: str


@dataclass(frozen=True)
class SetChannelOverwrite:
    channel: str
    role: str
    overwrite: Optional[Overwrite]  # None clears the overwrite
    category: Optional[str] = None


@dataclass(frozen=True)
class EnsureRole:
    """Create ``role`` if missing, else bring its attributes in line."""

    role: Role


@dataclass(frozen=True)
class EnsureCategory:
    """Create the season category, hidden from @everyone."""

    name: str


@dataclass(frozen=True)
class EnsureChannel:
    category: str
    channel: ChannelSpec


MutationOp = Union[
    GrantRole,
    RevokeRole,
    SetNickname,
    SetChannelOverwrite,
    EnsureRole,
    EnsureCategory,
    EnsureChannel,
]


@dataclass
class ObservedState:
    """What the platform currently holds for one user and season."""

    roles: frozenset[str] = frozenset()
    nickname: Optional[str] = None
    # channel name -> role name -> overwrite
    overwrites: dict[str, dict[str, Overwrite]] = field(default_factory=dict)


class Outcome(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class OpResult:
    op: MutationOp
    outcome: Outcome
    reason: Optional[str] = None
    attempts: int = 0


# ----------------------------------------------------------------------
# Verification sessions
# ----------------------------------------------------------------------

class SessionState(str, Enum):
    PENDING = "pending"
    CLAIM_SUBMITTED = "claim_submitted"
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass
class VerificationSession:
    platform_account_id: int
    season_id: Optional[str]
    created_ts: float
    expires_ts: float
    state: SessionState = SessionState.PENDING
    external_id: Optional[str] = None
    reason: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.state in (SessionState.VERIFIED, SessionState.REJECTED)

    def expired(self, now: float) -> bool:
        return now >= self.expires_ts


@dataclass(frozen=True)
class Claim:
    """External identity proof delivered by the OAuth callback."""

    external_id: str
    platform_account_id: int


@dataclass
class AccessReport:
    platform_account_id: int
    season_id: Optional[str]
    state: SessionState
    reason: Optional[str] = None
    results: list[OpResult] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return self.state == SessionState.VERIFIED

    @property
    def failures(self) -> list[OpResult]:
        return [r for r in self.results if r.outcome == Outcome.FAILED]

    @property
    def partial(self) -> bool:
        """True when verification succeeded but some mutations failed."""
        return self.verified and bool(self.failures)


@dataclass
class ProvisionReport:
    """Outcome of creating or updating one season's roles and channels."""

    season_id: Optional[str]
    reason: Optional[str] = None
    results: list[OpResult] = field(default_factory=list)

    @property
    def failures(self) -> list[OpResult]:
        return [r for r in self.results if r.outcome == Outcome.FAILED]
