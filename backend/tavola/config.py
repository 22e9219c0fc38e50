from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///tavola.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Audit signatures (HMAC-SHA256). Must be overridden outside development.
    AUDIT_HMAC_SECRET = os.environ.get("AUDIT_HMAC_SECRET", "dev-audit-secret-change-me")

    # Central backend this branch node replicates to. Unset = standalone node.
    UPSTREAM_URL = os.environ.get("UPSTREAM_URL") or None
    UPSTREAM_TIMEOUT_SECONDS = float(os.environ.get("UPSTREAM_TIMEOUT_SECONDS", "5"))
    UPSTREAM_API_TOKEN = os.environ.get("UPSTREAM_API_TOKEN") or None

    # Pricing
    TAX_RATE = float(os.environ.get("TAX_RATE", "0.14"))
    PAYMENT_TOLERANCE_CENTS = int(os.environ.get("PAYMENT_TOLERANCE_CENTS", "1"))

    # CLAMP floors stock at zero and records the shortfall; REJECT raises.
    STOCK_UNDERFLOW_POLICY = os.environ.get("STOCK_UNDERFLOW_POLICY", "CLAMP").upper()
    RECIPE_EXPAND_COMPOSITES = _env_bool("RECIPE_EXPAND_COMPOSITES", False)

    # Offline sync queue
    SYNC_BASE_RETRY_SECONDS = float(os.environ.get("SYNC_BASE_RETRY_SECONDS", "2"))
    SYNC_MAX_RETRY_SECONDS = float(os.environ.get("SYNC_MAX_RETRY_SECONDS", "300"))
    SYNC_DRAIN_BATCH = int(os.environ.get("SYNC_DRAIN_BATCH", "100"))

    # Auth
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))
    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "24"))
