import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    token: str
    client_id: str = ""
    client_secret: str = ""
    guild_id: int = 0
    base_url: str = "http://localhost:3000"
    # where the OAuth callback server listens
    web_host: str = "0.0.0.0"
    web_port: int = 3000
    config_path: str = "access_config.json"
    data_path: str = "access_data.json"
    # Channel receiving forbidden/hierarchy failures; 0 disables the notice
    operator_channel_id: int = 0
    verification_ttl_minutes: int = 30
    max_attempts: int = 4
    # 0 means reconcile only at verification time
    reconcile_interval_minutes: int = 0

    @property
    def redirect_uri(self) -> str:
        return f"{self.base_url.rstrip('/')}/callback"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    token = os.getenv("DISCORD_BOT_TOKEN", "").strip()
    return Settings(
        token=token or "",
        client_id=os.getenv("DISCORD_CLIENT_ID", "").strip(),
        client_secret=os.getenv("DISCORD_CLIENT_SECRET", "").strip(),
        guild_id=_int_env("DISCORD_GUILD_ID", 0),
        base_url=os.getenv("WEB_BASE_URL", "").strip() or "http://localhost:3000",
        web_host=os.getenv("WEB_HOST", "").strip() or "0.0.0.0",
        web_port=_int_env("WEB_PORT", 3000),
        config_path=os.getenv("ACCESS_CONFIG_PATH", "").strip() or "access_config.json",
        data_path=os.getenv("ACCESS_DATA_PATH", "").strip() or "access_data.json",
        operator_channel_id=_int_env("OPERATOR_CHANNEL_ID", 0),
        verification_ttl_minutes=_int_env("VERIFICATION_TTL_MINUTES", 30),
        max_attempts=_int_env("RECONCILE_MAX_ATTEMPTS", 4),
        reconcile_interval_minutes=_int_env("RECONCILE_INTERVAL_MINUTES", 0),
    )
