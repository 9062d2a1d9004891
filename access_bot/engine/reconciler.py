"""Execution of mutation plans with retries and per-user sequencing.

Rate limits and transient network failures are retried with exponential
backoff and jitter, honouring the platform's ``retry_after`` when given.
Forbidden, not-found and bad-request errors are terminal: retrying cannot
fix a role hierarchy problem, an operator has to.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from typing import TypeVar

from ..adapters.base import PlatformClient
from ..data.models import (
    EnsureCategory,
    EnsureChannel,
    EnsureRole,
    GrantRole,
    MutationOp,
    OpResult,
    Outcome,
    RevokeRole,
    SetChannelOverwrite,
    SetNickname,
)
from ..errors import PlatformError

log = logging.getLogger("access.reconciler")

T = TypeVar("T")


class RetryExhausted(Exception):
    """Wraps the last retryable :class:`PlatformError` once the budget is spent."""

    def __init__(self, error: PlatformError, attempts: int) -> None:
        self.error = error
        self.attempts = attempts
        super().__init__(f"{error} after {attempts} attempt(s)")


class Reconciler:
    """Apply :data:`~access_bot.data.models.MutationOp` lists to a platform."""

    def __init__(
        self,
        platform: PlatformClient,
        max_attempts: int = 4,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.platform = platform
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._user_locks: dict[int, asyncio.Lock] = {}
        # callers holding or waiting on each user lock
        self._lock_users: dict[int, int] = {}
        self._provision_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Retry helpers
    # ------------------------------------------------------------------
    def backoff(self, attempt: int) -> float:
        """Exponential backoff with +/-25% jitter; ``attempt`` starts at 0."""
        delay = min(self.max_delay, (2 ** attempt) * self.base_delay)
        return delay * random.uniform(0.75, 1.25)  # nosec B311

    async def with_retry(self, call: Callable[[], Awaitable[T]]) -> tuple[T, int]:
        """Run ``call`` until it succeeds or a terminal error occurs.

        Returns the result and the number of attempts used. Terminal
        :class:`PlatformError` instances propagate unchanged; retryable ones
        that outlive the budget are raised as :class:`RetryExhausted`.
        Either way the number of calls made is on the exception's
        ``attempts``.
        """
        for attempt in range(self.max_attempts):
            try:
                return await call(), attempt + 1
            except PlatformError as exc:
                exc.attempts = attempt + 1
                if not exc.retryable:
                    raise
                if attempt + 1 >= self.max_attempts:
                    raise RetryExhausted(exc, attempt + 1) from exc
                delay = exc.retry_after if exc.retry_after is not None else self.backoff(attempt)
                log.warning(
                    "%s, retrying in %.2fs (attempt %d/%d)",
                    exc.kind.value,
                    delay,
                    attempt + 1,
                    self.max_attempts,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def _call_for(self, op: MutationOp) -> Callable[[], Awaitable[None]]:
        platform = self.platform
        if isinstance(op, GrantRole):
            return lambda: platform.grant_role(op.user_id, op.role)
        if isinstance(op, RevokeRole):
            return lambda: platform.revoke_role(op.user_id, op.role)
        if isinstance(op, SetNickname):
            return lambda: platform.set_nickname(op.user_id, op.nickname)
        if isinstance(op, SetChannelOverwrite):
            return lambda: platform.set_channel_overwrite(
                op.channel, op.role, op.overwrite, op.category
            )
        if isinstance(op, EnsureRole):
            return lambda: platform.ensure_role(op.role)
        if isinstance(op, EnsureCategory):
            return lambda: platform.ensure_category(op.name)
        if isinstance(op, EnsureChannel):
            return lambda: platform.ensure_channel(op.category, op.channel)
        raise TypeError(f"unknown mutation {op!r}")

    async def execute(self, op: MutationOp) -> OpResult:
        """Run one operation; failures are returned, never raised."""
        try:
            _, attempts = await self.with_retry(self._call_for(op))
        except RetryExhausted as exc:
            log.error("Giving up on %s: %s", op, exc)
            return OpResult(op, Outcome.FAILED, exc.error.kind.value, exc.attempts)
        except PlatformError as exc:
            log.error("Failed %s: %s (%s)", op, exc.kind.value, exc)
            return OpResult(op, Outcome.FAILED, exc.kind.value, exc.attempts)
        log.debug("Applied %s", op)
        return OpResult(op, Outcome.APPLIED, None, attempts)

    @asynccontextmanager
    async def _user_lock(self, user_id: int) -> AsyncIterator[None]:
        """Hold the lock for ``user_id``; it is dropped once nobody needs it."""
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._user_locks[user_id]

    async def _run(self, ops: Sequence[MutationOp]) -> list[OpResult]:
        return [await self.execute(op) for op in ops]

    async def apply(
        self, user_id: int, ops: Sequence[MutationOp], dry_run: bool = False
    ) -> list[OpResult]:
        """Execute ``ops`` in order for one user.

        Every operation runs even when an earlier one failed. Calls for the
        same user are serialised; different users do not wait on each other.
        """
        if dry_run:
            return [OpResult(op, Outcome.SKIPPED, "dry_run") for op in ops]
        async with self._user_lock(user_id):
            results = await self._run(ops)
        failed = sum(1 for r in results if r.outcome == Outcome.FAILED)
        if failed:
            log.warning("%d of %d op(s) failed for %s", failed, len(results), user_id)
        elif results:
            log.info("Applied %d op(s) for %s", len(results), user_id)
        return results

    async def provision(
        self, ops: Sequence[MutationOp], dry_run: bool = False
    ) -> list[OpResult]:
        """Execute guild-level ``ops``; one provisioning pass runs at a time."""
        if dry_run:
            return [OpResult(op, Outcome.SKIPPED, "dry_run") for op in ops]
        async with self._provision_lock:
            results = await self._run(ops)
        failed = sum(1 for r in results if r.outcome == Outcome.FAILED)
        log.info("Provisioned %d op(s), %d failed", len(results), failed)
        return results

    async def apply_many(
        self, plans: Iterable[tuple[int, Sequence[MutationOp]]]
    ) -> dict[int, list[OpResult]]:
        """Apply several users' plans concurrently."""
        plans = list(plans)
        outcomes = await asyncio.gather(*(self.apply(uid, ops) for uid, ops in plans))
        return {uid: result for (uid, _), result in zip(plans, outcomes)}
