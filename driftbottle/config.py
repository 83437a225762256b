import os
from dataclasses import dataclass
from pathlib import Path


BOT_TOKEN_ENV = "TELEGRAM_BOT_TOKEN"
DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


@dataclass
class Config:
    telegram_token: str
    webapp_url: str = ""
    notify_chat_id: int | None = None
    api_port: int = 0
    api_host: str = "0.0.0.0"
    cors_origin: str = "*"
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS
    debug_endpoints: bool = False
    trust_proxy: bool = False
    profiles_path: Path = Path("profiles.json")


def _get(config, section: str, key: str, fallback: str = "") -> str:
    """Read a stripped string option, tolerating a missing section."""
    if not config.has_section(section):
        return fallback
    return config[section].get(key, fallback).strip()


def _get_bool(config, section: str, key: str) -> bool:
    if not config.has_section(section) or key not in config[section]:
        return False
    return config[section].getboolean(key)


def _parse_int(raw: str, name: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def load_config(config) -> Config:
    """Build a Config from a parsed configparser object.

    The bot token falls back to the TELEGRAM_BOT_TOKEN environment variable.
    A missing token is left empty; requests then fail as a server config error.
    """
    telegram_token = _get(config, "TELEGRAM", "bot_token") or os.getenv(BOT_TOKEN_ENV, "").strip()
    webapp_url = _get(config, "TELEGRAM", "webapp_url")

    notify = _get(config, "TELEGRAM", "notify_chat_id")
    notify_chat_id = _parse_int(notify, "notify_chat_id") if notify else None

    api_port = _parse_int(_get(config, "API", "port", "0") or "0", "port")
    api_host = _get(config, "API", "host", "0.0.0.0") or "0.0.0.0"
    cors_origin = _get(config, "API", "cors_origin", "*") or "*"

    max_age = _get(config, "API", "max_age_seconds")
    max_age_seconds = _parse_int(max_age, "max_age_seconds") if max_age else DEFAULT_MAX_AGE_SECONDS
    if max_age_seconds <= 0:
        raise ValueError("max_age_seconds must be positive")

    profiles_path = Path(_get(config, "STORAGE", "profiles_path", "profiles.json") or "profiles.json")

    return Config(
        telegram_token=telegram_token,
        webapp_url=webapp_url,
        notify_chat_id=notify_chat_id,
        api_port=api_port,
        api_host=api_host,
        cors_origin=cors_origin,
        max_age_seconds=max_age_seconds,
        debug_endpoints=_get_bool(config, "API", "debug_endpoints"),
        trust_proxy=_get_bool(config, "API", "trust_proxy"),
        profiles_path=profiles_path,
    )
