"""Platform client interface consumed by the planner and the reconciler."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..core.models import ChannelSpec, Role
from ..data.models import Overwrite


class PlatformClient(ABC):
    """Abstract access to a community platform's members and channels.

    Roles and categories are addressed by their configured names; channels by
    their name inside a category, since seasons reuse channel names. Every
    method either succeeds or raises :class:`~access_bot.errors.PlatformError`.
    Mutations describe end states, so repeating one is harmless.
    """

    @abstractmethod
    async def grant_role(self, user_id: int, role: str) -> None:
        """Ensure ``user_id`` holds ``role``."""

    @abstractmethod
    async def revoke_role(self, user_id: int, role: str) -> None:
        """Ensure ``user_id`` does not hold ``role``."""

    @abstractmethod
    async def set_nickname(self, user_id: int, nickname: str) -> None:
        """Ensure the member's nickname equals ``nickname``."""

    @abstractmethod
    async def set_channel_overwrite(
        self,
        channel: str,
        role: str,
        overwrite: Overwrite | None,
        category: str | None = None,
    ) -> None:
        """Ensure ``role`` has ``overwrite`` on ``channel``; ``None`` clears it."""

    @abstractmethod
    async def ensure_role(self, role: Role) -> None:
        """Create ``role`` or update its colour, hoist, mentionable and position."""

    @abstractmethod
    async def ensure_category(self, name: str) -> None:
        """Create category ``name`` if needed and hide it from everyone."""

    @abstractmethod
    async def ensure_channel(self, category: str, channel: ChannelSpec) -> None:
        """Create ``channel`` under ``category`` if needed and apply its position."""

    @abstractmethod
    async def read_current_roles(self, user_id: int) -> frozenset[str]:
        """Return the names of the roles the member currently holds."""

    @abstractmethod
    async def read_nickname(self, user_id: int) -> str | None:
        """Return the member's current nickname, if any."""

    @abstractmethod
    async def read_current_overwrites(
        self, channel: str, category: str | None = None
    ) -> dict[str, Overwrite]:
        """Return the role overwrites on ``channel`` keyed by role name."""
