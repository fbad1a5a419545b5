# config.py
"""
Runtime settings.

Values come from environment variables; a `.env` file in the project root is
loaded first so local development does not need exported variables.

Everything has a development default. The defaults are fine for running the
API on a laptop and for the test-suite, NOT for anything exposed to the internet
(the JWT secret in particular).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# src/cryptoportfolio/config.py -> parents[2] == project root
PROJECT_ROOT = Path(__file__).resolve().parents[2]

load_dotenv(PROJECT_ROOT / ".env")

DEFAULT_DB_URL = "sqlite://"  # in-memory, lives as long as the process
DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://localhost:3001"
COINGECKO_API = "https://api.coingecko.com/api/v3"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _csv_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass(frozen=True)
class Settings:
    db_url: str = DEFAULT_DB_URL
    jwt_secret: str = "dev_secret_please_change"
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 60
    encryption_key: str | None = None
    bcrypt_rounds: int = 10
    cors_origins: list[str] = field(default_factory=lambda: _csv_list(DEFAULT_CORS_ORIGINS))
    coingecko_base_url: str = COINGECKO_API
    price_ttl_seconds: float = 30.0
    rate_limit_backoff_seconds: float = 60.0
    http_timeout_seconds: float = 10.0
    log_level: str = "INFO"
    port: int = 8080


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings(
        db_url=os.getenv("CRYPTO_PORTFOLIO_DB_URL", DEFAULT_DB_URL),
        jwt_secret=os.getenv("CRYPTO_PORTFOLIO_JWT_SECRET", "dev_secret_please_change"),
        jwt_expires_minutes=int(os.getenv("CRYPTO_PORTFOLIO_JWT_EXPIRES_MINUTES", "60")),
        encryption_key=os.getenv("CRYPTO_PORTFOLIO_ENCRYPTION_KEY") or None,
        bcrypt_rounds=int(os.getenv("CRYPTO_PORTFOLIO_BCRYPT_ROUNDS", "10")),
        cors_origins=_csv_list(os.getenv("CRYPTO_PORTFOLIO_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)),
        coingecko_base_url=os.getenv("COINGECKO_BASE_URL", COINGECKO_API).rstrip("/"),
        price_ttl_seconds=float(os.getenv("CRYPTO_PORTFOLIO_PRICE_TTL", "30")),
        rate_limit_backoff_seconds=float(os.getenv("CRYPTO_PORTFOLIO_RATE_LIMIT_BACKOFF", "60")),
        http_timeout_seconds=float(os.getenv("CRYPTO_PORTFOLIO_HTTP_TIMEOUT", "10")),
        log_level=os.getenv("CRYPTO_PORTFOLIO_LOG_LEVEL", "INFO").upper(),
        port=int(os.getenv("PORT", "8080")),
    )


def configure_logging(level: str | None = None) -> None:
    """Install the root handler once; later calls only adjust the level."""
    logging.basicConfig(level=level or settings.log_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level or settings.log_level)


settings = load_settings()
