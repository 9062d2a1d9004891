"""Exception types shared across the access engine."""

from __future__ import annotations

from enum import Enum


class AccessError(Exception):
    """Base class for every error raised by :mod:`access_bot`."""


class ConfigError(AccessError):
    """The declarative configuration is malformed or inconsistent.

    ``problems`` lists every validation failure found during the load so the
    operator can fix them in one pass instead of one at a time.
    """

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid configuration")


class VerificationError(AccessError):
    """A verification claim could not be accepted."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class PlanningError(AccessError):
    """The snapshot references a role or preset that does not exist.

    This means a :class:`~access_bot.core.config_model.ConfigModel` invariant
    was violated and is always logged with a traceback.
    """


class PlatformErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"


_RETRYABLE = {PlatformErrorKind.RATE_LIMITED, PlatformErrorKind.TRANSIENT}


class PlatformError(AccessError):
    """Typed failure returned by a platform mutation or read."""

    def __init__(
        self,
        kind: PlatformErrorKind,
        message: str = "",
        retry_after: float | None = None,
    ) -> None:
        self.kind = kind
        self.retry_after = retry_after
        # calls made before the error was final; set by the retry loop
        self.attempts = 1
        super().__init__(message or kind.value)

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE
