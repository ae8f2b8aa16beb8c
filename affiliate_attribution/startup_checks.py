"""Startup validation, catching misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)

# Weakest first
ISOLATION_LEVELS = ["READ UNCOMMITTED", "READ COMMITTED", "REPEATABLE READ", "SERIALIZABLE"]
MIN_ATTRIBUTION_ISOLATION = "REPEATABLE READ"


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    isolation = settings.ATTRIBUTION_TX_ISOLATION
    if isolation not in ISOLATION_LEVELS:
        logger.critical("ATTRIBUTION_TX_ISOLATION=%r is not a known isolation level", isolation)
        sys.exit(1)

    # Critical: intake attribution relies on a locked re-read of the patient row
    if is_prod and ISOLATION_LEVELS.index(isolation) < ISOLATION_LEVELS.index(MIN_ATTRIBUTION_ISOLATION):
        logger.critical(
            "ATTRIBUTION_TX_ISOLATION=%s is weaker than %s; refusing to start",
            isolation, MIN_ATTRIBUTION_ISOLATION,
        )
        sys.exit(1)

    if settings.ATTRIBUTION_TX_TIMEOUT_SECONDS <= 0:
        warnings.append("ATTRIBUTION_TX_TIMEOUT_SECONDS must be positive. Attribution writes will time out")

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to *. Restrict in production")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set. Commission reporting endpoints disabled")

    if is_prod and settings.TOUCH_IP_HASH_SALT == "aff_ip_salt":
        warnings.append("TOUCH_IP_HASH_SALT is still the default. Visitor IP hashes are guessable")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
