"""Registration of slash commands for the bot."""

from __future__ import annotations

import discord
from discord.ext import commands

from ..config import Settings
from ..data.models import Claim
from ..engine.service import AccessService
from ..engine.verification import is_valid_claim
from ..errors import ConfigError
from ..messages import REASONS, format_provision, format_report
from ..web.oauth import OAuthClient


def register_commands(
    bot: commands.Bot,
    service: AccessService,
    oauth: OAuthClient,
    settings: Settings,
) -> None:
    """Register bot commands with optional compatibility shims."""
    tree = bot.tree
    admin_only = getattr(
        discord.app_commands,
        "default_permissions",
        lambda **_kwargs: (lambda func: func),
    )

    @tree.command(name="verify", description="Get your personal verification link")
    @discord.app_commands.describe(identity="The verification id you received")
    async def verify(interaction: discord.Interaction, identity: str) -> None:
        identity = identity.strip()
        if not is_valid_claim(Claim(identity, interaction.user.id)):
            await interaction.response.send_message(
                REASONS["invalid_claim"], ephemeral=True
            )
            return
        if service.verified_record(interaction.user.id) is not None:
            await interaction.response.send_message(
                REASONS["already_verified"], ephemeral=True
            )
            return
        service.open_session(interaction.user.id)
        url = oauth.authorize_url(identity)
        await interaction.response.send_message(
            f"Open this link to confirm your Discord account:\n{url}",
            ephemeral=True,
        )

    @tree.command(name="reload_config", description="Reload the access configuration")
    @admin_only(administrator=True)
    async def reload_config(interaction: discord.Interaction) -> None:
        try:
            snapshot = service.reload_config(settings.config_path)
        except ConfigError as exc:
            problems = "\n".join(f"- {p}" for p in exc.problems[:15])
            await interaction.response.send_message(
                f"Configuration rejected, the previous one stays active:\n{problems}",
                ephemeral=True,
            )
            return
        await interaction.response.send_message(
            f"Loaded {len(snapshot.seasons)} season(s); "
            f"current season is `{snapshot.current_season_id}`.",
            ephemeral=True,
        )

    @tree.command(name="resync", description="Re-apply season access for a member")
    @discord.app_commands.describe(
        member="Member to resync",
        dry_run="Only show what would change",
    )
    @admin_only(administrator=True)
    async def resync(
        interaction: discord.Interaction,
        member: discord.Member,
        dry_run: bool = False,
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        report = await service.reconcile_user(member.id, dry_run=dry_run)
        await interaction.edit_original_response(content=format_report(report))

    @tree.command(
        name="provision", description="Create or update the season's roles and channels"
    )
    @discord.app_commands.describe(
        season="Season id, defaults to the current season",
        dry_run="Only list what would be created or updated",
    )
    @admin_only(administrator=True)
    async def provision(
        interaction: discord.Interaction,
        season: str | None = None,
        dry_run: bool = False,
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        report = await service.provision_season(season, dry_run=dry_run)
        await interaction.edit_original_response(content=format_provision(report))
