"""Tests for :class:`AccessPlanner`."""

import asyncio

import pytest

from access_bot.core.models import Capability
from access_bot.data.models import (
    EnsureCategory,
    EnsureChannel,
    EnsureRole,
    GrantRole,
    ObservedState,
    Overwrite,
    RevokeRole,
    SetChannelOverwrite,
    SetNickname,
)
from access_bot.engine.planner import AccessPlanner
from access_bot.errors import PlanningError, PlatformError, PlatformErrorKind

CATEGORY = "Season S"

READWRITE = Overwrite(
    allow=frozenset(
        {
            Capability.VIEW_CHANNEL,
            Capability.READ_MESSAGE_HISTORY,
            Capability.SEND_MESSAGES,
            Capability.ATTACH_FILES,
            Capability.ADD_REACTIONS,
        }
    )
)


def bound(season, external_id, account):
    record = next(u for u in season.users if u.external_id == external_id)
    return record.model_copy(update={"platform_account_id": account})


def test_fresh_member_plan(snapshot) -> None:
    season = snapshot.current_season()
    planner = AccessPlanner(snapshot)

    ops = planner.plan(season, bound(season, "abc", 111), ObservedState())

    assert ops == [
        GrantRole(111, "M"),
        SetNickname(111, "Ann"),
        SetChannelOverwrite("general", "M", READWRITE, CATEGORY),
    ]


def test_converged_member_plan_is_empty(snapshot) -> None:
    season = snapshot.current_season()
    observed = ObservedState(
        roles=frozenset({"M", "Helper", "Server Booster"}),
        nickname="Bob",
        overwrites={"general": {"M": READWRITE}},
    )
    ops = AccessPlanner(snapshot).plan(season, bound(season, "bob-1", 222), observed)
    assert ops == []


def test_planning_is_deterministic(snapshot) -> None:
    season = snapshot.current_season()
    planner = AccessPlanner(snapshot)
    record = bound(season, "bob-1", 222)
    observed = ObservedState(roles=frozenset({"Stale"}))
    assert planner.plan(season, record, observed) == planner.plan(season, record, observed)


def test_grants_member_role_first(snapshot) -> None:
    season = snapshot.current_season()
    ops = AccessPlanner(snapshot).plan(season, bound(season, "bob-1", 222), ObservedState())
    assert ops[:2] == [GrantRole(222, "M"), GrantRole(222, "Helper")]


def test_unmanaged_roles_are_left_alone(snapshot) -> None:
    season = snapshot.current_season()
    observed = ObservedState(
        roles=frozenset({"M", "Moderator"}),
        nickname="Ann",
        overwrites={"general": {"M": READWRITE}},
    )
    ops = AccessPlanner(snapshot).plan(season, bound(season, "abc", 111), observed)
    assert ops == []


def test_managed_roles_not_assigned_are_revoked_last(snapshot) -> None:
    season = snapshot.current_season()
    observed = ObservedState(
        roles=frozenset({"Helper"}),
        nickname="Someone else",
        overwrites={"general": {}},
    )
    ops = AccessPlanner(snapshot).plan(season, bound(season, "abc", 111), observed)
    assert ops == [
        GrantRole(111, "M"),
        SetNickname(111, "Ann"),
        SetChannelOverwrite("general", "M", READWRITE, CATEGORY),
        RevokeRole(111, "Helper"),
    ]


def test_overwrite_without_preset_is_cleared(snapshot, raw_config) -> None:
    from access_bot.core.config_model import load_config

    raw_config["seasons"][0]["channels"][0]["role_permissions"] = {"Helper": "read"}
    snapshot = load_config(raw_config)
    season = snapshot.current_season()
    observed = ObservedState(
        roles=frozenset({"M"}),
        nickname="Ann",
        overwrites={"general": {"M": READWRITE}},
    )

    ops = AccessPlanner(snapshot).plan(season, bound(season, "abc", 111), observed)

    assert ops == [SetChannelOverwrite("general", "M", None, CATEGORY)]


def test_sets_come_before_clears(snapshot, raw_config) -> None:
    from access_bot.core.config_model import load_config

    channels = raw_config["seasons"][0]["channels"]
    channels.insert(0, {"name": "old", "role_permissions": {}})
    snapshot = load_config(raw_config)
    season = snapshot.current_season()
    observed = ObservedState(
        roles=frozenset({"M"}),
        nickname="Ann",
        overwrites={"old": {"M": READWRITE}, "general": {}},
    )

    ops = AccessPlanner(snapshot).plan(season, bound(season, "abc", 111), observed)

    assert ops == [
        SetChannelOverwrite("general", "M", READWRITE, CATEGORY),
        SetChannelOverwrite("old", "M", None, CATEGORY),
    ]


def test_blank_nickname_is_not_set(snapshot) -> None:
    season = snapshot.current_season()
    record = bound(season, "abc", 111).model_copy(update={"name": "   "})
    ops = AccessPlanner(snapshot).plan(season, record, ObservedState())
    assert not any(isinstance(op, SetNickname) for op in ops)


def test_unbound_record_raises(snapshot) -> None:
    season = snapshot.current_season()
    with pytest.raises(PlanningError, match="not bound"):
        AccessPlanner(snapshot).plan(season, season.users[0], ObservedState())


def test_undeclared_user_role_raises(snapshot) -> None:
    season = snapshot.current_season()
    record = bound(season, "abc", 111).model_copy(update={"roles": ("Ghost",)})
    with pytest.raises(PlanningError, match="undeclared role 'Ghost'"):
        AccessPlanner(snapshot).plan(season, record, ObservedState())


def test_missing_preset_raises(snapshot) -> None:
    season = snapshot.current_season()
    planner = AccessPlanner(snapshot)
    planner.config = type(snapshot)(
        seasons=snapshot.seasons, presets={}, current_season_id="S"
    )
    with pytest.raises(PlanningError, match="missing preset 'readwrite'"):
        planner.plan(season, bound(season, "abc", 111), ObservedState())


def test_observe_reads_platform_state(snapshot, platform) -> None:
    season = snapshot.current_season()
    platform.roles[111] = {"M"}
    platform.nicknames[111] = "Ann"
    platform.overwrites["general"]["M"] = READWRITE

    observed = asyncio.run(AccessPlanner(snapshot).observe(platform, season, 111))

    assert observed == ObservedState(
        roles=frozenset({"M"}),
        nickname="Ann",
        overwrites={"general": {"M": READWRITE}},
    )


def test_observe_tolerates_missing_channel(snapshot, platform) -> None:
    season = snapshot.current_season()
    platform.overwrites.clear()
    observed = asyncio.run(AccessPlanner(snapshot).observe(platform, season, 111))
    assert observed.overwrites == {"general": {}}


def test_observe_propagates_other_errors(snapshot, platform) -> None:
    season = snapshot.current_season()
    platform.fail(
        "read_current_roles", 111, PlatformError(PlatformErrorKind.FORBIDDEN)
    )
    with pytest.raises(PlatformError):
        asyncio.run(AccessPlanner(snapshot).observe(platform, season, 111))


def test_long_display_name_is_cut_to_discord_limit(snapshot) -> None:
    season = snapshot.current_season()
    record = bound(season, "abc", 111).model_copy(update={"name": "A" * 40})
    observed = ObservedState(
        roles=frozenset({"M"}), nickname="A" * 32, overwrites={"general": {"M": READWRITE}}
    )

    assert AccessPlanner(snapshot).plan(season, record, observed) == []
    fresh = AccessPlanner(snapshot).plan(season, record, ObservedState())
    assert SetNickname(111, "A" * 32) in fresh


def test_unmanaged_permission_bits_count_as_drift(snapshot) -> None:
    season = snapshot.current_season()
    tampered = Overwrite(allow=READWRITE.allow, extra_allow=1 << 46)
    observed = ObservedState(
        roles=frozenset({"M"}), nickname="Ann", overwrites={"general": {"M": tampered}}
    )

    ops = AccessPlanner(snapshot).plan(season, bound(season, "abc", 111), observed)

    assert ops == [SetChannelOverwrite("general", "M", READWRITE, CATEGORY)]


def test_removal_revokes_managed_roles_member_last(snapshot) -> None:
    season = snapshot.current_season()
    observed = ObservedState(roles=frozenset({"M", "Helper", "Server Booster"}))

    ops = AccessPlanner(snapshot).plan_removal(season, 222, observed)

    assert ops == [RevokeRole(222, "Helper"), RevokeRole(222, "M")]


def test_provision_plan_order(snapshot) -> None:
    season = snapshot.current_season()

    ops = AccessPlanner(snapshot).plan_provision(season)

    assert ops == [
        EnsureRole(season.role("M")),
        EnsureRole(season.role("Helper")),
        EnsureCategory(CATEGORY),
        EnsureChannel(CATEGORY, season.channels[0]),
        SetChannelOverwrite("general", "M", READWRITE, CATEGORY),
    ]
