import logging

import pytest

from access_bot.config import Settings, load_settings
from access_bot.logging_config import setup_logging


def test_load_settings(monkeypatch):
    monkeypatch.setenv("DISCORD_BOT_TOKEN", "abc123")
    monkeypatch.setenv("DISCORD_GUILD_ID", "42")
    monkeypatch.setenv("RECONCILE_INTERVAL_MINUTES", "15")
    monkeypatch.delenv("ACCESS_DATA_PATH", raising=False)
    s = load_settings()
    assert s.token == "abc123"
    assert s.guild_id == 42
    assert s.reconcile_interval_minutes == 15
    assert s.data_path == "access_data.json"
    assert s.verification_ttl_minutes == 30

    # empty token environment
    monkeypatch.setenv("DISCORD_BOT_TOKEN", "")
    s2 = load_settings()
    assert s2.token == ""


def test_bad_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("RECONCILE_MAX_ATTEMPTS", "many")
    monkeypatch.setenv("DISCORD_GUILD_ID", "")
    s = load_settings()
    assert s.max_attempts == 4
    assert s.guild_id == 0


def test_redirect_uri():
    s = Settings(token="t", base_url="https://bot.example/")
    assert s.redirect_uri == "https://bot.example/callback"


@pytest.fixture
def fresh_logger(monkeypatch):
    logger = logging.getLogger("access")
    monkeypatch.setattr(logger, "handlers", [])
    monkeypatch.setattr(logger, "level", logging.NOTSET)
    for name in ("discord", "httpx"):
        monkeypatch.setattr(logging.getLogger(name), "level", logging.NOTSET)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    return logger


def test_setup_logging_idempotent(fresh_logger):
    logger1 = setup_logging()
    logger2 = setup_logging(logging.DEBUG)
    assert logger1 is logger2 is fresh_logger
    assert len(logger1.handlers) == 1
    assert logger1.level == logging.INFO
    assert logging.getLogger("discord").level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING


def test_log_level_from_environment(fresh_logger, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    setup_logging()
    assert fresh_logger.level == logging.DEBUG
    # library loggers stay verbose when debugging
    assert logging.getLogger("discord").level == logging.NOTSET


def test_unknown_log_level_falls_back_to_info(fresh_logger, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    assert setup_logging().level == logging.INFO


def test_web_server_settings(monkeypatch):
    monkeypatch.setenv("WEB_HOST", "127.0.0.1")
    monkeypatch.setenv("WEB_PORT", "8080")
    s = load_settings()
    assert (s.web_host, s.web_port) == ("127.0.0.1", 8080)
