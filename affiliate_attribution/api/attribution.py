"""
Affiliate attribution endpoints.

Thin JSON layer over the attribution services. Business outcomes are never
raised: they come back as structured results and are mapped to status codes
here, so callers can tell "code needs creating" from an outage.
"""
from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from affiliate_attribution.db.engine import get_session, get_session_factory
from affiliate_attribution.models import FailureReason, TouchType
from affiliate_attribution.models.attribution import (
    AttributionOutcomeOut,
    AttributionResultOut,
    CommissionStatsOut,
    IntakeAttributionIn,
    IntakeReferralIn,
    ResolveIn,
    TouchIn,
    TouchOut,
)
from affiliate_attribution.services.attribution_resolver import resolve_attribution
from affiliate_attribution.services.commission_ledger import get_affiliate_commission_stats
from affiliate_attribution.services.intake_attribution import AttributionOutcome, IntakeAttributionService
from affiliate_attribution.services.touch_store import record_touch

router = APIRouter(prefix="/api/v1/affiliate", tags=["Affiliate Attribution"])
admin_router = APIRouter(prefix="/api/v1/admin/affiliates", tags=["Affiliate Admin"])
logger = logging.getLogger(__name__)

# Operator-facing next step per failure reason
FAILURE_ACTIONS = {
    FailureReason.PATIENT_NOT_FOUND: "Check that the intake created the patient before attribution ran.",
    FailureReason.CODE_NOT_FOUND: "Code needs migration: create the referral code for this clinic, then reconcile.",
    FailureReason.CLINIC_MISMATCH: "Code belongs to another clinic. Create a clinic-specific code or fix the intake routing.",
    FailureReason.CODE_INACTIVE: "Reactivate the referral code if it should still earn attribution.",
    FailureReason.AFFILIATE_INACTIVE: "Affiliate is not active. Review the affiliate's status.",
    FailureReason.ALREADY_ATTRIBUTED: "No action needed. The patient keeps their first affiliate.",
    FailureReason.DATABASE_ERROR: "Retry later. Check database health if this persists.",
}

FAILURE_STATUS = {
    FailureReason.PATIENT_NOT_FOUND: 404,
    FailureReason.DATABASE_ERROR: 503,
}


def get_intake_service() -> IntakeAttributionService:
    return IntakeAttributionService(get_session_factory())


def require_admin_key(x_admin_key: str = Header(None)) -> None:
    """Verify admin API key (timing-safe)."""
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(503, "Admin endpoints disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(403, "Invalid admin key")


def outcome_response(outcome: AttributionOutcome) -> JSONResponse:
    body = AttributionOutcomeOut(
        **outcome.to_dict(),
        action=FAILURE_ACTIONS.get(outcome.failure_reason) if outcome.failure_reason else None,
    )
    if outcome.success:
        status_code = 200
    else:
        status_code = FAILURE_STATUS.get(outcome.failure_reason, 422)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.post("/touches", status_code=201, response_model=TouchOut)
async def create_touch(
    body: TouchIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """Record a click on an affiliate link."""
    try:
        touch = await record_touch(
            session,
            body.clinic_id,
            body.ref_code,
            touch_type=TouchType.CLICK,
            visitor_fingerprint=body.visitor_fingerprint,
            cookie_id=body.cookie_id,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            landing_page=body.landing_page,
            referrer_url=body.referrer_url,
            utm_source=body.utm_source,
            utm_medium=body.utm_medium,
            utm_campaign=body.utm_campaign,
        )
    except ValueError as e:
        raise HTTPException(422, str(e))
    await session.commit()
    return TouchOut.model_validate(touch)


@router.post("/intake-attribution", response_model=AttributionOutcomeOut)
async def intake_attribution(
    body: IntakeAttributionIn,
    service: IntakeAttributionService = Depends(get_intake_service),
):
    """Attribute a patient from an intake promo code."""
    outcome = await service.attribute_from_intake_extended(
        body.patient_id, body.promo_code, body.clinic_id, body.source,
    )
    if not outcome.success:
        logger.info(
            "Intake attribution for patient %s failed: %s",
            body.patient_id, outcome.failure_reason.value,
        )
    return outcome_response(outcome)


@router.post("/intake-referral")
async def intake_referral(
    body: IntakeReferralIn,
    service: IntakeAttributionService = Depends(get_intake_service),
):
    """Run code extraction and every attribution fallback for a raw intake payload."""
    report = await service.process_intake_referral(
        body.patient_id, body.clinic_id, body.payload, body.source,
    )
    return {
        "promo_code": report.promo_code,
        "referral_tracked": report.referral_tracked,
        "outcome": report.outcome.to_dict() if report.outcome else None,
        "tagged_only": report.tagged_only,
        "fallback": report.fallback.to_dict() if report.fallback else None,
        "errors": report.errors,
    }


@router.post("/resolve")
async def resolve(
    body: ResolveIn,
    session: AsyncSession = Depends(get_session),
):
    """Passive multi-touch attribution for a visitor. Nothing is written."""
    result = await resolve_attribution(
        session,
        body.clinic_id,
        visitor_fingerprint=body.visitor_fingerprint,
        cookie_id=body.cookie_id,
        is_new_patient=body.is_new_patient,
    )
    if result is None:
        return {"attribution": None}
    return {"attribution": AttributionResultOut(**result.to_dict()).model_dump(mode="json")}


@admin_router.get(
    "/{affiliate_id}/commission-stats",
    response_model=CommissionStatsOut,
    dependencies=[Depends(require_admin_key)],
)
async def commission_stats(
    affiliate_id: int,
    clinic_id: int = Query(...),
    from_date: Optional[datetime] = Query(None),
    to_date: Optional[datetime] = Query(None),
    session: AsyncSession = Depends(get_session),
):
    """Aggregate commission stats for one affiliate, with small numbers suppressed."""
    return await get_affiliate_commission_stats(session, affiliate_id, clinic_id, from_date, to_date)
