from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

NOTIFIER_CHANNELS = ("auto", "email", "telegram", "log")


@dataclass(frozen=True)
class Settings:
    database_url: str
    coingecko_api_base: str
    coingecko_api_key: str | None
    vs_currency: str
    market_request_timeout_seconds: float
    market_cache_ttl_seconds: float
    market_retry_attempts: int
    market_retry_base_delay_seconds: float
    check_interval_seconds: float
    tick_timeout_seconds: float
    health_log_interval_seconds: int
    notifier_channel: str
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    smtp_from_email: str
    smtp_from_name: str
    smtp_tls: bool
    telegram_bot_token: str | None
    telegram_chat_id: str | None
    log_level: str

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def _required(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def _optional_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _optional_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _optional_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    load_dotenv()

    channel = os.getenv("NOTIFIER_CHANNEL", "auto").strip().lower()
    if channel not in NOTIFIER_CHANNELS:
        raise ValueError(f"NOTIFIER_CHANNEL must be one of {', '.join(NOTIFIER_CHANNELS)}")

    telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip() or None
    telegram_chat_id = os.getenv("TELEGRAM_CHAT_ID", "").strip() or None
    if channel == "telegram":
        telegram_bot_token = _required("TELEGRAM_BOT_TOKEN")
        telegram_chat_id = _required("TELEGRAM_CHAT_ID")
    smtp_host = os.getenv("SMTP_HOST", "").strip()
    if channel == "email":
        smtp_host = _required("SMTP_HOST")

    interval = _optional_float("ALERT_CHECK_INTERVAL_SECONDS", 300.0)
    if interval <= 0:
        raise ValueError("ALERT_CHECK_INTERVAL_SECONDS must be positive")

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./crypto_guardian.db").strip(),
        coingecko_api_base=os.getenv("COINGECKO_API_BASE", "https://api.coingecko.com/api/v3").strip(),
        coingecko_api_key=os.getenv("COINGECKO_API_KEY", "").strip() or None,
        vs_currency=os.getenv("VS_CURRENCY", "usd").strip().lower(),
        market_request_timeout_seconds=_optional_float("MARKET_REQUEST_TIMEOUT_SECONDS", 8.0),
        market_cache_ttl_seconds=_optional_float("MARKET_CACHE_TTL_SECONDS", 60.0),
        market_retry_attempts=_optional_int("MARKET_RETRY_ATTEMPTS", 3),
        market_retry_base_delay_seconds=_optional_float("MARKET_RETRY_BASE_DELAY_SECONDS", 2.0),
        check_interval_seconds=interval,
        tick_timeout_seconds=_optional_float("ALERT_TICK_TIMEOUT_SECONDS", interval),
        health_log_interval_seconds=_optional_int("HEALTH_LOG_INTERVAL_SECONDS", 600),
        notifier_channel=channel,
        smtp_host=smtp_host,
        smtp_port=_optional_int("SMTP_PORT", 587),
        smtp_user=os.getenv("SMTP_USER", "").strip(),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        smtp_from_email=os.getenv("SMTP_FROM_EMAIL", "noreply@cryptoguardian.local").strip(),
        smtp_from_name=os.getenv("SMTP_FROM_NAME", "Crypto Guardian").strip(),
        smtp_tls=_optional_bool("SMTP_TLS", True),
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
