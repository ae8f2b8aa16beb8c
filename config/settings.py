"""App settings: loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///attribution.db")

    # Admin API key (for protected reporting endpoints)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Intake attribution transaction
    ATTRIBUTION_TX_TIMEOUT_SECONDS = float(os.getenv("ATTRIBUTION_TX_TIMEOUT_SECONDS", "15"))
    ATTRIBUTION_TX_ISOLATION = os.getenv("ATTRIBUTION_TX_ISOLATION", "SERIALIZABLE").upper()
    ATTRIBUTION_TX_RETRIES = int(os.getenv("ATTRIBUTION_TX_RETRIES", "2"))

    # Fallback matching of anonymous clicks to new patients
    RECENT_TOUCH_WINDOW_HOURS = int(os.getenv("RECENT_TOUCH_WINDOW_HOURS", "2"))

    # Visitor IPs are only stored hashed
    TOUCH_IP_HASH_SALT = os.getenv("TOUCH_IP_HASH_SALT", "aff_ip_salt")

    # Background jobs
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
    COMMISSION_APPROVAL_INTERVAL_MINUTES = int(os.getenv("COMMISSION_APPROVAL_INTERVAL_MINUTES", "60"))
    TOUCH_RECONCILE_INTERVAL_HOURS = int(os.getenv("TOUCH_RECONCILE_INTERVAL_HOURS", "6"))

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
