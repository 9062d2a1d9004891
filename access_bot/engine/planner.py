"""Desired-state computation and diffing for one user in one season."""

from __future__ import annotations

import logging

from ..adapters.base import PlatformClient
from ..core.config_model import ConfigModel
from ..core.models import Season, UserRecord
from ..data.models import (
    EnsureCategory,
    EnsureChannel,
    EnsureRole,
    GrantRole,
    MutationOp,
    ObservedState,
    Overwrite,
    RevokeRole,
    SetChannelOverwrite,
    SetNickname,
)
from ..errors import PlanningError, PlatformError, PlatformErrorKind

log = logging.getLogger("access.planner")

# Discord rejects longer nicknames
MAX_NICKNAME_LENGTH = 32


class AccessPlanner:
    """Compute the ordered mutations that converge a user onto a season.

    A planner is bound to one configuration snapshot for its whole life so
    that a concurrent reload never changes the rules halfway through a plan.
    Planning itself is pure; only :meth:`observe` talks to the platform.
    """

    def __init__(self, config: ConfigModel) -> None:
        self.config = config

    # ------------------------------------------------------------------
    async def observe(
        self, platform: PlatformClient, season: Season, user_id: int
    ) -> ObservedState:
        """Read the platform state that :meth:`plan` compares against."""
        roles = await platform.read_current_roles(user_id)
        nickname = await platform.read_nickname(user_id)
        overwrites: dict[str, dict[str, Overwrite]] = {}
        for channel in season.channels:
            try:
                overwrites[channel.name] = await platform.read_current_overwrites(
                    channel.name, season.category
                )
            except PlatformError as exc:
                if exc.kind != PlatformErrorKind.NOT_FOUND:
                    raise
                # the overwrite op will report the missing channel
                log.warning("Channel %s not found on the platform", channel.name)
                overwrites[channel.name] = {}
        return ObservedState(roles=frozenset(roles), nickname=nickname, overwrites=overwrites)

    # ------------------------------------------------------------------
    def desired_overwrite(self, season: Season, channel_name: str) -> Overwrite | None:
        channel = next((c for c in season.channels if c.name == channel_name), None)
        if channel is None:
            raise PlanningError(f"season {season.id} has no channel '{channel_name}'")
        preset_name = channel.role_permissions.get(season.member_role)
        if preset_name is None:
            return None
        preset = self.config.preset_by_name(preset_name)
        if preset is None:
            raise PlanningError(
                f"channel '{channel.name}' in season {season.id} references "
                f"missing preset '{preset_name}'"
            )
        return Overwrite(allow=preset.allow, deny=preset.deny)

    def plan(
        self, season: Season, record: UserRecord, observed: ObservedState
    ) -> list[MutationOp]:
        """Return the mutations needed to reach the desired state.

        Grants come first, then the nickname, then channel overwrites being
        set, then overwrites being cleared, and revokes last. An already
        converged user yields an empty list.
        """
        if record.platform_account_id is None:
            raise PlanningError(f"user '{record.external_id}' is not bound to an account")
        user_id = record.platform_account_id
        member = season.member_role
        if season.role(member) is None:
            raise PlanningError(f"season {season.id} member role '{member}' is not declared")
        for role_name in record.roles:
            if season.role(role_name) is None:
                raise PlanningError(
                    f"user '{record.external_id}' holds undeclared role '{role_name}'"
                )

        managed = season.managed_roles
        held = observed.roles
        # roles outside the managed set are never touched
        desired = {member, *record.roles} | (held - managed)

        grants = sorted(desired - held, key=lambda r: (r != member, r))
        revokes = sorted((held & managed) - desired, key=lambda r: (r == member, r))

        ops: list[MutationOp] = [GrantRole(user_id, role) for role in grants]

        nickname = record.name.strip()[:MAX_NICKNAME_LENGTH].rstrip()
        if nickname and nickname != observed.nickname:
            ops.append(SetNickname(user_id, nickname))

        sets: list[MutationOp] = []
        clears: list[MutationOp] = []
        for channel in season.channels:
            want = self.desired_overwrite(season, channel.name)
            have = observed.overwrites.get(channel.name, {}).get(member)
            if want == have:
                continue
            op = SetChannelOverwrite(channel.name, member, want, season.category)
            (clears if want is None else sets).append(op)
        ops.extend(sets)
        ops.extend(clears)
        ops.extend(RevokeRole(user_id, role) for role in revokes)

        log.debug("Planned %d op(s) for %s in season %s", len(ops), user_id, season.id)
        return ops

    def plan_removal(
        self, season: Season, user_id: int, observed: ObservedState
    ) -> list[MutationOp]:
        """Revoke every managed role from an account no longer in ``season``.

        The member role goes last so a partial failure never leaves a
        member-less user holding extra season roles.
        """
        held = observed.roles & season.managed_roles
        revokes = sorted(held, key=lambda r: (r == season.member_role, r))
        return [RevokeRole(user_id, role) for role in revokes]

    def plan_provision(self, season: Season) -> list[MutationOp]:
        """Roles, then the category, then channels, then every role overwrite."""
        ops: list[MutationOp] = [EnsureRole(role) for role in season.roles]
        ops.append(EnsureCategory(season.category))
        ops.extend(EnsureChannel(season.category, channel) for channel in season.channels)
        for channel in season.channels:
            for role_name, preset_name in sorted(channel.role_permissions.items()):
                preset = self.config.preset_by_name(preset_name)
                if preset is None:
                    raise PlanningError(
                        f"channel '{channel.name}' in season {season.id} references "
                        f"missing preset '{preset_name}'"
                    )
                ops.append(
                    SetChannelOverwrite(
                        channel.name,
                        role_name,
                        Overwrite(allow=preset.allow, deny=preset.deny),
                        season.category,
                    )
                )
        return ops
