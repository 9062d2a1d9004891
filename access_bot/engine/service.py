"""End-to-end access flow: verification callback to applied mutations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from ..adapters.base import PlatformClient
from ..core.config_model import ConfigHolder, ConfigModel
from ..core.models import Season, UserRecord
from ..core.storage import BindResult, IdentityStore
from ..data.models import (
    AccessReport,
    Claim,
    ObservedState,
    OpResult,
    Outcome,
    ProvisionReport,
    SessionState,
    VerificationSession,
)
from ..errors import PlanningError, PlatformError, PlatformErrorKind
from .planner import AccessPlanner
from .reconciler import Reconciler, RetryExhausted
from .verification import Effect, SessionEvent, VerificationManager

log = logging.getLogger("access.engine")

Notifier = Callable[[str], Awaitable[None]]

_BIND_EVENTS = {
    BindResult.OK: SessionEvent.BOUND,
    BindResult.ALREADY_BOUND: SessionEvent.ALREADY_BOUND,
    BindResult.ACCOUNT_TAKEN: SessionEvent.ALREADY_BOUND,
    BindResult.NOT_FOUND: SessionEvent.NOT_FOUND,
}


class AccessService:
    """Ties sessions, identity bindings, planning and reconciliation together.

    Every failure is scoped to one user's flow: verification and planning
    problems end up in that user's :class:`AccessReport`, platform problems
    in its per-operation results. Forbidden failures are also sent to the
    operator ``notifier`` because only an operator can fix them.
    """

    def __init__(
        self,
        config: ConfigHolder,
        store: IdentityStore,
        platform: PlatformClient,
        sessions: VerificationManager | None = None,
        reconciler: Reconciler | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.platform = platform
        self.sessions = sessions or VerificationManager()
        self.reconciler = reconciler or Reconciler(platform)
        self.notifier = notifier
        self.sync_identities()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def sync_identities(self) -> None:
        """Make the identity store follow every season's configured users.

        Accounts whose user was removed are revoked by the next
        :meth:`reconcile_season` pass.
        """
        for season in self.config.current.seasons.values():
            self.store.sync_season(season)

    def reload_config(self, path: str | Path) -> ConfigModel:
        snapshot = self.config.reload_from(path)
        self.sync_identities()
        return snapshot

    @staticmethod
    def _select_season(
        snapshot: ConfigModel, season_hint: str | None
    ) -> tuple[Season | None, str | None]:
        if season_hint is None:
            return snapshot.current_season(), None
        season = snapshot.season_by_id(season_hint)
        if season is None:
            return None, "unknown_season"
        if not season.active:
            return None, "season_inactive"
        return season, None

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------
    def open_session(
        self, platform_account_id: int, season_hint: str | None = None
    ) -> VerificationSession:
        return self.sessions.open(platform_account_id, season_hint)

    def verified_record(
        self, platform_account_id: int, season_hint: str | None = None
    ) -> UserRecord | None:
        """The record ``platform_account_id`` is bound to in the chosen season."""
        season, _ = self._select_season(self.config.current, season_hint)
        if season is None:
            return None
        return self.store.find_by_account(season.id, platform_account_id)

    async def verification_callback(
        self, claim: Claim, season_hint: str | None = None
    ) -> AccessReport:
        """Handle an external identity claim and converge the user on success."""
        snapshot = self.config.current
        account = claim.platform_account_id
        session, effect = self.sessions.submit_claim(claim, season_hint)
        if session.state == SessionState.VERIFIED:
            log.info("Account %s already verified, nothing to do", account)
            return AccessReport(account, session.season_id, session.state, "already_verified")
        if session.state != SessionState.CLAIM_SUBMITTED:
            return AccessReport(account, session.season_id, session.state, session.reason)

        season, problem = self._select_season(snapshot, session.season_id)
        if season is None:
            session, _ = self.sessions.record_resolution(
                account, SessionEvent.NOT_FOUND, problem
            )
            return AccessReport(account, season_hint, session.state, session.reason)

        bound = self.store.find_by_account(season.id, account)
        if bound is not None and bound.external_id == claim.external_id:
            session, _ = self.sessions.record_resolution(account, SessionEvent.BOUND)
            session.season_id = season.id
            log.info("Account %s already verified in season %s", account, season.id)
            return AccessReport(account, season.id, session.state, "already_verified")

        result = self.store.bind(season.id, claim.external_id, account)
        reason = result.value if result == BindResult.ACCOUNT_TAKEN else None
        session, effect = self.sessions.record_resolution(
            account, _BIND_EVENTS[result], reason
        )
        if effect != Effect.TRIGGER_PLAN:
            log.info(
                "Rejected claim %s from %s in season %s: %s",
                claim.external_id,
                account,
                season.id,
                session.reason,
            )
            return AccessReport(account, season.id, session.state, session.reason)

        session.season_id = season.id
        record = self.store.resolve(season.id, claim.external_id)
        assert record is not None
        results, reason = await self._converge(snapshot, season, record)
        return AccessReport(account, season.id, session.state, reason, results)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def _converge(
        self,
        snapshot: ConfigModel,
        season: Season,
        record: UserRecord,
        dry_run: bool = False,
    ) -> tuple[list[OpResult], str | None]:
        user_id = record.platform_account_id
        assert user_id is not None
        planner = AccessPlanner(snapshot)
        try:
            observed, _ = await self.reconciler.with_retry(
                lambda: planner.observe(self.platform, season, user_id)
            )
            ops = planner.plan(season, record, observed)
        except PlanningError:
            log.exception("Planning failed for %s in season %s", user_id, season.id)
            return [], "planning_error"
        except (PlatformError, RetryExhausted) as exc:
            log.error("Could not read platform state for %s: %s", user_id, exc)
            return [], "observe_failed"

        results = await self.reconciler.apply(user_id, ops, dry_run=dry_run)
        await self._report_forbidden(f"<@{user_id}>", results)
        return results, None

    async def _report_forbidden(self, subject: str, results: list[OpResult]) -> None:
        forbidden = [
            r
            for r in results
            if r.outcome == Outcome.FAILED and r.reason == PlatformErrorKind.FORBIDDEN.value
        ]
        if not forbidden or self.notifier is None:
            return
        lines = [f"Access changes for {subject} were refused by the platform:"]
        lines.extend(f"- {r.op}" for r in forbidden)
        lines.append("Check that the bot's role is above every role it manages.")
        try:
            await self.notifier("\n".join(lines))
        except Exception:  # pragma: no cover - best effort notification
            log.exception("Failed to notify operators about %s", subject)

    async def _revoke_departed(
        self,
        snapshot: ConfigModel,
        season: Season,
        platform_account_id: int,
        dry_run: bool = False,
    ) -> AccessReport:
        """Take the season's roles away from an account whose user was removed."""
        planner = AccessPlanner(snapshot)
        try:
            roles, _ = await self.reconciler.with_retry(
                lambda: self.platform.read_current_roles(platform_account_id)
            )
        except (PlatformError, RetryExhausted) as exc:
            error = exc.error if isinstance(exc, RetryExhausted) else exc
            if error.kind == PlatformErrorKind.NOT_FOUND:
                # left the guild, nothing to take back
                if not dry_run:
                    self.store.clear_departed(season.id, platform_account_id)
                return AccessReport(
                    platform_account_id, season.id, SessionState.REJECTED, "removed"
                )
            log.error("Could not read roles of %s: %s", platform_account_id, exc)
            return AccessReport(
                platform_account_id, season.id, SessionState.REJECTED, "observe_failed"
            )
        ops = planner.plan_removal(season, platform_account_id, ObservedState(roles=roles))
        results = await self.reconciler.apply(platform_account_id, ops, dry_run=dry_run)
        await self._report_forbidden(f"<@{platform_account_id}>", results)
        if not dry_run and all(r.outcome == Outcome.APPLIED for r in results):
            self.store.clear_departed(season.id, platform_account_id)
            log.info(
                "Revoked season %s access from removed account %s",
                season.id,
                platform_account_id,
            )
        return AccessReport(
            platform_account_id, season.id, SessionState.REJECTED, "removed", results
        )

    async def _reconcile_account(
        self,
        snapshot: ConfigModel,
        season: Season,
        platform_account_id: int,
        dry_run: bool = False,
    ) -> AccessReport:
        record = self.store.find_by_account(season.id, platform_account_id)
        if record is None:
            if platform_account_id in self.store.departed_accounts(season.id):
                return await self._revoke_departed(
                    snapshot, season, platform_account_id, dry_run
                )
            return AccessReport(
                platform_account_id, season.id, SessionState.PENDING, "not_verified"
            )
        results, reason = await self._converge(snapshot, season, record, dry_run)
        return AccessReport(
            platform_account_id, season.id, SessionState.VERIFIED, reason, results
        )

    async def reconcile_user(
        self,
        platform_account_id: int,
        season_id: str | None = None,
        dry_run: bool = False,
    ) -> AccessReport:
        """Re-plan and re-apply access for an already verified account."""
        snapshot = self.config.current
        season, problem = self._select_season(snapshot, season_id)
        if season is None:
            return AccessReport(platform_account_id, season_id, SessionState.PENDING, problem)
        return await self._reconcile_account(snapshot, season, platform_account_id, dry_run)

    async def reconcile_season(self, season_id: str | None = None) -> list[AccessReport]:
        """Reconcile every verified account of a season concurrently.

        Drift from manual edits is corrected here; the planner still leaves
        roles outside the season's managed set alone. Accounts whose user
        was removed from the configuration lose the season's roles.
        """
        snapshot = self.config.current
        season, problem = self._select_season(snapshot, season_id)
        if season is None:
            log.warning("Not reconciling season %s: %s", season_id, problem)
            return []
        accounts = [
            r.platform_account_id
            for r in self.store.bound_records(season.id)
            if r.platform_account_id is not None
        ]
        accounts.extend(
            a for a in self.store.departed_accounts(season.id) if a not in accounts
        )
        reports = await asyncio.gather(
            *(self._reconcile_account(snapshot, season, account) for account in accounts)
        )
        changed = sum(1 for r in reports if r.results)
        log.info(
            "Reconciled season %s: %d account(s), %d changed",
            season.id,
            len(reports),
            changed,
        )
        return list(reports)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    async def provision_season(
        self, season_id: str | None = None, dry_run: bool = False
    ) -> ProvisionReport:
        """Create or update a season's roles, private category and channels.

        Channel overwrites are written for every role the configuration
        names, not only the member role.
        """
        snapshot = self.config.current
        season, problem = self._select_season(snapshot, season_id)
        if season is None:
            return ProvisionReport(season_id, problem)
        try:
            ops = AccessPlanner(snapshot).plan_provision(season)
        except PlanningError:
            log.exception("Provisioning plan failed for season %s", season.id)
            return ProvisionReport(season.id, "planning_error")
        results = await self.reconciler.provision(ops, dry_run=dry_run)
        await self._report_forbidden(f"season {season.id}", results)
        return ProvisionReport(season.id, None, results)
