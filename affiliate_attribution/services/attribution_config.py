"""Per-clinic attribution configuration with system-wide defaults."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_attribution.db.affiliate_tables import AffiliateAttributionConfigRow
from affiliate_attribution.models import AttributionModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttributionConfig:
    new_patient_model: str = AttributionModel.FIRST_CLICK.value
    returning_patient_model: str = AttributionModel.LAST_CLICK.value
    cookie_window_days: int = 30
    impression_window_hours: int = 24
    enable_fingerprinting: bool = True
    is_default: bool = True

    def model_for(self, is_new_patient: bool) -> str:
        return self.new_patient_model if is_new_patient else self.returning_patient_model


DEFAULT_ATTRIBUTION_CONFIG = AttributionConfig()


def config_from_row(row: AffiliateAttributionConfigRow) -> AttributionConfig:
    """Fill any column left NULL by a partial admin write with the default."""
    d = DEFAULT_ATTRIBUTION_CONFIG
    return AttributionConfig(
        new_patient_model=row.new_patient_model or d.new_patient_model,
        returning_patient_model=row.returning_patient_model or d.returning_patient_model,
        cookie_window_days=row.cookie_window_days if row.cookie_window_days is not None else d.cookie_window_days,
        impression_window_hours=(
            row.impression_window_hours
            if row.impression_window_hours is not None else d.impression_window_hours
        ),
        enable_fingerprinting=(
            row.enable_fingerprinting
            if row.enable_fingerprinting is not None else d.enable_fingerprinting
        ),
        is_default=False,
    )


async def resolve_attribution_config(session: AsyncSession, clinic_id: int) -> AttributionConfig:
    result = await session.execute(
        select(AffiliateAttributionConfigRow).where(
            AffiliateAttributionConfigRow.clinic_id == clinic_id
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        logger.debug("No attribution config for clinic %s, using defaults", clinic_id)
        return DEFAULT_ATTRIBUTION_CONFIG
    return config_from_row(row)
