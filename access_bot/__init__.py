"""Core package for the season access bot.

This module exposes the configuration model, the identity store and the
engine entry point so that consumers of the package can simply import them
from ``access_bot``.
"""

from .core.config_model import ConfigHolder, ConfigModel, load_config
from .core.storage import BindResult, IdentityStore
from .engine.service import AccessService

__all__ = [
    "AccessService",
    "BindResult",
    "ConfigHolder",
    "ConfigModel",
    "IdentityStore",
    "load_config",
]
