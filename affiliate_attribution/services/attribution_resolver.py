"""
Affiliate attribution resolver.

Decides which affiliate gets credit for a conversion from the visitor's touches:
clinic config → touches in the cookie window → attribution model → winner →
confidence. Computing is side-effect free; set_patient_attribution persists.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_attribution.db.tables import PatientRow
from affiliate_attribution.models.attribution import MODEL_STORED, Confidence
from affiliate_attribution.services.attribution_config import resolve_attribution_config
from affiliate_attribution.services.attribution_models import (
    WeightedTouch,
    apply_model,
    determine_confidence,
    pick_winner,
)
from affiliate_attribution.services.touch_store import find_touches_in_window, mark_touch_converted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttributionResult:
    affiliate_id: int
    ref_code: str
    touch_id: Optional[int]
    model: str
    confidence: Confidence
    weight: float  # 0-1, share of credit for the winning touch
    all_touches: Optional[list[WeightedTouch]] = field(default=None)

    def to_dict(self) -> dict:
        return {
            "affiliate_id": self.affiliate_id,
            "ref_code": self.ref_code,
            "touch_id": self.touch_id,
            "model": self.model,
            "confidence": self.confidence.value,
            "weight": self.weight,
            "all_touches": [t.to_dict() for t in self.all_touches] if self.all_touches is not None else None,
        }


async def resolve_attribution(
    session: AsyncSession,
    clinic_id: int,
    visitor_fingerprint: Optional[str] = None,
    cookie_id: Optional[str] = None,
    is_new_patient: bool = True,
    now: Optional[datetime] = None,
) -> Optional[AttributionResult]:
    """Compute weighted attribution for a visitor. Returns None when there is
    nothing to attribute; that is the common case, not an error."""
    if not visitor_fingerprint and not cookie_id:
        logger.info("No visitor identifiers supplied for clinic %s, skipping attribution", clinic_id)
        return None

    now = now or datetime.now(timezone.utc)
    config = await resolve_attribution_config(session, clinic_id)
    model = config.model_for(is_new_patient)

    touches = await find_touches_in_window(
        session,
        clinic_id,
        visitor_fingerprint=visitor_fingerprint,
        cookie_id=cookie_id,
        window_days=config.cookie_window_days,
        now=now,
    )
    # Unresolved touches cannot receive credit
    touches = [t for t in touches if t.affiliate_id is not None]
    if not touches:
        logger.info(
            "No touches found for visitor in clinic %s (fingerprint=%s, cookie=%s)",
            clinic_id, bool(visitor_fingerprint), bool(cookie_id),
        )
        return None

    weighted = apply_model(touches, model, now=now)
    winner = pick_winner(weighted)
    confidence = determine_confidence(bool(visitor_fingerprint), bool(cookie_id), len(touches))

    logger.info(
        "Resolved attribution in clinic %s: model=%s touches=%d affiliate=%s confidence=%s",
        clinic_id, model, len(touches), winner.affiliate_id, confidence.value,
    )
    return AttributionResult(
        affiliate_id=winner.affiliate_id,
        ref_code=winner.ref_code,
        touch_id=winner.touch_id,
        model=model,
        confidence=confidence,
        weight=winner.weight,
        all_touches=weighted,
    )


async def set_patient_attribution(
    session: AsyncSession,
    patient_id: int,
    attribution: AttributionResult,
    now: Optional[datetime] = None,
) -> bool:
    """Persist a resolved attribution. First-wins: an attributed patient is left alone.

    Flushes but does not commit. Returns True when this call wrote the attribution.
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        update(PatientRow)
        .where(
            PatientRow.id == patient_id,
            PatientRow.attribution_affiliate_id.is_(None),
        )
        .values(
            attribution_affiliate_id=attribution.affiliate_id,
            attribution_ref_code=attribution.ref_code,
            attribution_first_touch_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.info("Patient %s missing or already attributed, attribution not changed", patient_id)
        return False

    if attribution.touch_id:
        await mark_touch_converted(session, attribution.touch_id, patient_id, now=now)

    logger.info(
        "Patient %s attributed to affiliate %s (%s, %s)",
        patient_id, attribution.affiliate_id, attribution.ref_code, attribution.model,
    )
    return True


async def get_patient_attribution(session: AsyncSession, patient_id: int) -> Optional[AttributionResult]:
    result = await session.execute(
        select(
            PatientRow.attribution_affiliate_id,
            PatientRow.attribution_ref_code,
        ).where(PatientRow.id == patient_id)
    )
    row = result.one_or_none()
    if row is None or row.attribution_affiliate_id is None:
        return None
    return AttributionResult(
        affiliate_id=row.attribution_affiliate_id,
        ref_code=row.attribution_ref_code or "",
        touch_id=None,  # not tracked at patient level
        model=MODEL_STORED,
        confidence=Confidence.HIGH,
        weight=1.0,
    )
