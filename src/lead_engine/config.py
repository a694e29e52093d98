from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

_TRUE_VALUES = {"1", "true", "yes", "on"}

MIN_CLAIM_TOKEN_LENGTH = 8


def _env_flag(key: str, default: str) -> bool:
    return os.getenv(key, default).strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class Config:
    database_url: str
    batch_size: int
    base_url: str
    claim_token_length: int
    claim_token_max_attempts: int
    claim_manual_expiry_days: int
    claim_auto_expiry_days: int
    default_service_radius_miles: int
    admin_api_key: Optional[str]
    admin_localhost_bypass: bool
    outreach_webhook_secret: Optional[str]
    google_maps_api_key: Optional[str]
    geocode_timeout: int
    ntfy_topic: Optional[str]
    ntfy_server: str
    db_statement_timeout_ms: int


def load_config() -> Config:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set")

    return Config(
        database_url=database_url,
        batch_size=int(os.getenv("BATCH_SIZE", "500")),
        base_url=os.getenv("BASE_URL", "http://localhost:3000").rstrip("/"),
        claim_token_length=max(int(os.getenv("CLAIM_TOKEN_LENGTH", "8")), MIN_CLAIM_TOKEN_LENGTH),
        claim_token_max_attempts=max(int(os.getenv("CLAIM_TOKEN_MAX_ATTEMPTS", "100")), 1),
        claim_manual_expiry_days=int(os.getenv("CLAIM_MANUAL_EXPIRY_DAYS", "30")),
        claim_auto_expiry_days=int(os.getenv("CLAIM_AUTO_EXPIRY_DAYS", "365")),
        default_service_radius_miles=int(os.getenv("DEFAULT_SERVICE_RADIUS_MILES", "25")),
        admin_api_key=(os.getenv("ADMIN_API_KEY") or "").strip() or None,
        admin_localhost_bypass=_env_flag("ADMIN_LOCALHOST_BYPASS", "true"),
        outreach_webhook_secret=(os.getenv("OUTREACH_WEBHOOK_SECRET") or "").strip() or None,
        google_maps_api_key=os.getenv("GOOGLE_MAPS_API_KEY") or None,
        geocode_timeout=int(os.getenv("GEOCODE_TIMEOUT", "5")),
        ntfy_topic=(os.getenv("NTFY_TOPIC") or "").strip() or None,
        ntfy_server=os.getenv("NTFY_SERVER", "https://ntfy.sh"),
        db_statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "15000")),
    )
