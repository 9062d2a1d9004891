"""Discord bot hosting the access engine.

The bot owns the gateway connection only: it opens verification sessions
when members join, hosts the slash commands and, when enabled, runs the
periodic reconciliation of the current season.
"""

from __future__ import annotations

from typing import Any

import discord
from discord.ext import commands, tasks

from .config import Settings
from .engine.service import AccessService
from .logging_config import setup_logging


class AccessBot(commands.Bot):
    """Small ``discord.py`` based bot driving :class:`AccessService`."""

    reconcile_task: tasks.Loop | None

    def __init__(
        self,
        service: AccessService | None = None,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> None:  # pragma: no cover - trivial
        """Initialize the bot with the intents needed to see members join."""
        intents = kwargs.pop("intents", None) or discord.Intents.default()
        # Slash commands only; members intent is needed for on_member_join.
        intents.message_content = False
        intents.members = True
        super().__init__(
            command_prefix=kwargs.pop("command_prefix", "!"),
            intents=intents,
        )
        self.log = setup_logging()
        self.service = service
        self.settings = settings
        self.reconcile_task = None

    async def setup_hook(self) -> None:
        """Start periodic reconciliation and sync slash commands."""
        interval = self.settings.reconcile_interval_minutes if self.settings else 0
        if interval > 0 and self.service is not None:
            self.reconcile_task = tasks.loop(minutes=float(interval), reconnect=True)(
                _reconcile_current_season
            )
            self.reconcile_task.start(self)
            self.log.info("Periodic reconciliation every %s minute(s)", interval)

        # The test-suite stubs ``discord`` without an app command tree.
        tree = getattr(self, "tree", None)
        if tree is not None:  # pragma: no cover - exercised in integration
            await tree.sync()

        await super().setup_hook()

    async def on_ready(self) -> None:  # pragma: no cover - requires discord
        """Log a short confirmation once the bot connected successfully."""
        self.log.info(
            "Logged in as %s (%s)",
            self.user,
            self.user.id if self.user else "?",
        )

    async def on_member_join(self, member: discord.Member) -> None:
        """Issue a pending verification session to every new member."""
        if self.service is None:
            return
        if self.settings and self.settings.guild_id and member.guild.id != self.settings.guild_id:
            return
        self.service.open_session(member.id)


async def _reconcile_current_season(bot: AccessBot) -> None:
    """Background task correcting drift from manual administration."""
    if bot.service is None:
        return
    try:
        await bot.service.reconcile_season()
    except Exception:  # pragma: no cover - keep the loop alive
        bot.log.exception("Periodic reconciliation failed")


__all__ = ["AccessBot", "_reconcile_current_season"]
