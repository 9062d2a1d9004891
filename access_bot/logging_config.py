"""Logging setup for the access bot.

Every module logs under the ``access`` hierarchy (``access.engine``,
``access.discord``, ...), so one handler on the parent covers them all.
"""

import logging
import os
import sys

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

# libraries that are chatty at INFO
_NOISY = ("discord", "discord.client", "discord.gateway", "httpx", "aiohttp.access")


def _env_level(default: int) -> int:
    name = os.getenv("LOG_LEVEL", "").strip().upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


def setup_logging(level: int | None = None) -> logging.Logger:
    """Attach a stdout handler to the ``access`` logger once.

    ``level`` defaults to ``LOG_LEVEL`` from the environment, then INFO.
    """
    logger = logging.getLogger("access")
    if logger.handlers:
        return logger
    logger.setLevel(level if level is not None else _env_level(logging.INFO))
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    if logger.level > logging.DEBUG:
        for name in _NOISY:
            logging.getLogger(name).setLevel(logging.WARNING)
    return logger
