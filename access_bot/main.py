from __future__ import annotations

import asyncio
from pathlib import Path

from .bot import AccessBot
from .commands.register import register_commands
from .config import load_settings
from .core.config_model import ConfigHolder, load_config, read_raw_config
from .core.storage import IdentityStore
from .adapters.discord import DiscordPlatform
from .engine.reconciler import Reconciler
from .engine.service import AccessService
from .engine.verification import VerificationManager
from .errors import ConfigError
from .logging_config import setup_logging
from .web.oauth import OAuthClient
from .web.server import create_app, start_server


def main() -> int:
    log = setup_logging()
    settings = load_settings()
    if not settings.token:
        log.error(
            "DISCORD_BOT_TOKEN is not set. "
            "Export it in your environment before running."
        )
        return 2
    if not settings.guild_id:
        log.error("DISCORD_GUILD_ID is not set.")
        return 2
    try:
        snapshot = load_config(
            read_raw_config(settings.config_path), source=settings.config_path
        )
    except ConfigError as exc:
        log.error("Cannot start with an invalid configuration: %s", exc)
        return 2

    platform = DiscordPlatform(settings.token, settings.guild_id)
    oauth = OAuthClient(settings.client_id, settings.client_secret, settings.redirect_uri)

    async def notify_operators(message: str) -> None:
        if settings.operator_channel_id:
            await platform.send_message(settings.operator_channel_id, message)
        else:
            log.warning("%s", message)

    service = AccessService(
        ConfigHolder(snapshot),
        IdentityStore(Path(settings.data_path)),
        platform,
        sessions=VerificationManager(ttl_seconds=settings.verification_ttl_minutes * 60),
        reconciler=Reconciler(platform, max_attempts=settings.max_attempts),
        notifier=notify_operators,
    )
    bot = AccessBot(service, settings)
    register_commands(bot, service, oauth, settings)

    async def runner():
        web_runner = None
        try:
            web_runner = await start_server(
                create_app(service, oauth), settings.web_host, settings.web_port
            )
            async with bot:
                await bot.start(settings.token)
        except KeyboardInterrupt:
            log.info("Shutting down...")
        finally:
            if web_runner is not None:
                await web_runner.cleanup()
            await platform.close()
            await oauth.close()
        return 0

    return asyncio.run(runner())


if __name__ == "__main__":
    raise SystemExit(main())
