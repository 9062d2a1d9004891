"""Shared test configuration: package imports and an in-memory platform."""

from __future__ import annotations

import copy
import os
import sys
from pathlib import Path

import pytest

# Add the repository root (the directory containing this file) to ``sys.path``
# so the package imports the same way it does under ``python -m pytest``.
ROOT_DIR = os.path.abspath(os.path.dirname(__file__))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from access_bot.adapters.base import PlatformClient  # noqa: E402
from access_bot.core.config_model import ConfigHolder, load_config  # noqa: E402
from access_bot.core.models import ChannelSpec, Role  # noqa: E402
from access_bot.core.storage import IdentityStore  # noqa: E402
from access_bot.data.models import Overwrite  # noqa: E402
from access_bot.engine.reconciler import Reconciler  # noqa: E402
from access_bot.engine.service import AccessService  # noqa: E402
from access_bot.errors import PlatformError, PlatformErrorKind  # noqa: E402

RAW_CONFIG = {
    "seasons": [
        {
            "id": "S",
            "name": "Season S",
            "member_role": "M",
            "roles": [
                {"name": "M", "is_default_member_role": True},
                {"name": "Helper", "hoist": True},
            ],
            "channels": [
                {
                    "name": "general",
                    "type": "text",
                    "role_permissions": {"M": "readwrite"},
                }
            ],
            "users": [
                {"Name": "Ann", "DiscordId": "abc"},
                {"name": "Bob", "id": "bob-1", "roles": ["Helper"]},
            ],
        }
    ]
}


class FakePlatform(PlatformClient):
    """In-memory guild that records every call.

    ``failures`` maps ``(method, key)`` to a list of errors raised one per
    call before the call starts succeeding; ``key`` is the role name for role
    calls, the user id for nicknames and the channel name for overwrites and
    channel provisioning.
    """

    def __init__(self, channels: tuple[str, ...] = ("general",)) -> None:
        self.roles: dict[int, set[str]] = {}
        self.nicknames: dict[int, str] = {}
        self.overwrites: dict[str, dict[str, Overwrite]] = {c: {} for c in channels}
        self.guild_roles: dict[str, Role] = {}
        self.categories: set[str] = set()
        self.failures: dict[tuple[str, object], list[PlatformError]] = {}
        self.calls: list[tuple] = []

    def fail(self, method: str, key: object, *errors: PlatformError) -> None:
        self.failures.setdefault((method, key), []).extend(errors)

    def _maybe_fail(self, method: str, key: object) -> None:
        pending = self.failures.get((method, key))
        if pending:
            raise pending.pop(0)

    async def grant_role(self, user_id: int, role: str) -> None:
        self.calls.append(("grant_role", user_id, role))
        self._maybe_fail("grant_role", role)
        self.roles.setdefault(user_id, set()).add(role)

    async def revoke_role(self, user_id: int, role: str) -> None:
        self.calls.append(("revoke_role", user_id, role))
        self._maybe_fail("revoke_role", role)
        self.roles.setdefault(user_id, set()).discard(role)

    async def set_nickname(self, user_id: int, nickname: str) -> None:
        self.calls.append(("set_nickname", user_id, nickname))
        self._maybe_fail("set_nickname", user_id)
        self.nicknames[user_id] = nickname

    async def set_channel_overwrite(self, channel, role, overwrite, category=None) -> None:
        self.calls.append(("set_channel_overwrite", channel, role, overwrite))
        self._maybe_fail("set_channel_overwrite", channel)
        if channel not in self.overwrites:
            raise PlatformError(PlatformErrorKind.NOT_FOUND, channel)
        if overwrite is None:
            self.overwrites[channel].pop(role, None)
        else:
            self.overwrites[channel][role] = overwrite

    async def ensure_role(self, role: Role) -> None:
        self.calls.append(("ensure_role", role.name))
        self._maybe_fail("ensure_role", role.name)
        self.guild_roles[role.name] = role

    async def ensure_category(self, name: str) -> None:
        self.calls.append(("ensure_category", name))
        self._maybe_fail("ensure_category", name)
        self.categories.add(name)

    async def ensure_channel(self, category: str, channel: ChannelSpec) -> None:
        self.calls.append(("ensure_channel", category, channel.name))
        self._maybe_fail("ensure_channel", channel.name)
        if category not in self.categories:
            raise PlatformError(PlatformErrorKind.NOT_FOUND, category)
        self.overwrites.setdefault(channel.name, {})

    async def read_current_roles(self, user_id: int) -> frozenset[str]:
        self._maybe_fail("read_current_roles", user_id)
        return frozenset(self.roles.get(user_id, set()))

    async def read_nickname(self, user_id: int) -> str | None:
        return self.nicknames.get(user_id)

    async def read_current_overwrites(
        self, channel: str, category: str | None = None
    ) -> dict[str, Overwrite]:
        if channel not in self.overwrites:
            raise PlatformError(PlatformErrorKind.NOT_FOUND, channel)
        return dict(self.overwrites[channel])

    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if not c[0].startswith("read")]


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def raw_config() -> dict:
    return copy.deepcopy(RAW_CONFIG)


@pytest.fixture
def snapshot(raw_config):
    return load_config(raw_config)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def store(tmp_path: Path) -> IdentityStore:
    return IdentityStore(tmp_path / "identities.json")


@pytest.fixture
def service(snapshot, store, platform) -> AccessService:
    return AccessService(
        ConfigHolder(snapshot),
        store,
        platform,
        reconciler=Reconciler(platform, max_attempts=3, sleep=no_sleep),
    )
