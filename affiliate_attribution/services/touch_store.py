"""
Affiliate touch store: append-only record of visitors interacting with ref codes.

A touch is written for every click on an affiliate link and for every intake
form that carried a code (POSTBACK). Touches are never edited except to mark
them converted (once) or to fill in an affiliate that was unresolved when the
touch was recorded.
"""
from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from affiliate_attribution.db.affiliate_tables import AffiliateRefCodeRow, AffiliateTouchRow
from affiliate_attribution.models import TouchType
from affiliate_attribution.services.attribution_models import WeightedTouch

logger = logging.getLogger(__name__)


def normalize_ref_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def generate_visitor_fingerprint(
    user_agent: str,
    ip_address: str,
    accept_language: str = "",
) -> str:
    """Semi-stable identifier for visitors without a cookie.

    Not perfect (IP changes, VPNs exist), but good enough inside a cookie window.
    """
    components = f"{user_agent}|{ip_address}|{accept_language}"
    return hashlib.sha256(components.encode()).hexdigest()[:16]


def hash_ip_address(ip_address: str) -> str:
    return hashlib.sha256(f"{settings.TOUCH_IP_HASH_SALT}:{ip_address}".encode()).hexdigest()


async def find_active_ref_code(
    session: AsyncSession,
    code: str,
    clinic_id: int,
) -> Optional[AffiliateRefCodeRow]:
    """Clinic-scoped lookup; codes are only unique within a clinic."""
    result = await session.execute(
        select(AffiliateRefCodeRow).where(
            AffiliateRefCodeRow.ref_code == code,
            AffiliateRefCodeRow.clinic_id == clinic_id,
            AffiliateRefCodeRow.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def record_touch(
    session: AsyncSession,
    clinic_id: int,
    ref_code: str,
    touch_type: TouchType = TouchType.CLICK,
    visitor_fingerprint: Optional[str] = None,
    cookie_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    landing_page: Optional[str] = None,
    referrer_url: Optional[str] = None,
    utm_source: Optional[str] = None,
    utm_medium: Optional[str] = None,
    utm_campaign: Optional[str] = None,
    resolve_affiliate: bool = True,
) -> AffiliateTouchRow:
    """Append a touch. Codes without a ref code row, or recorded with
    resolve_affiliate=False, are stored unresolved.

    Flushes but does not commit; the caller owns the transaction.
    """
    code = normalize_ref_code(ref_code)
    if not code:
        raise ValueError("ref_code must not be blank")

    ref = await find_active_ref_code(session, code, clinic_id) if resolve_affiliate else None
    if visitor_fingerprint is None and user_agent and ip_address:
        visitor_fingerprint = generate_visitor_fingerprint(user_agent, ip_address)

    touch = AffiliateTouchRow(
        clinic_id=clinic_id,
        affiliate_id=ref.affiliate_id if ref else None,
        ref_code=code,
        touch_type=TouchType(touch_type).value,
        visitor_fingerprint=visitor_fingerprint,
        cookie_id=cookie_id,
        ip_address_hash=hash_ip_address(ip_address) if ip_address else None,
        user_agent=user_agent[:500] if user_agent else None,
        landing_page=landing_page,
        referrer_url=referrer_url,
        utm_source=utm_source,
        utm_medium=utm_medium,
        utm_campaign=utm_campaign,
        created_at=datetime.now(timezone.utc),
    )
    session.add(touch)
    await session.flush()

    if ref is None:
        logger.info("Recorded unresolved touch %s for code %s (clinic %s)", touch.id, code, clinic_id)
    return touch


async def find_touches_in_window(
    session: AsyncSession,
    clinic_id: int,
    visitor_fingerprint: Optional[str] = None,
    cookie_id: Optional[str] = None,
    window_days: int = 30,
    now: Optional[datetime] = None,
) -> list[WeightedTouch]:
    """Touches matching either identifier inside the window, oldest first."""
    identifiers = []
    if visitor_fingerprint:
        identifiers.append(AffiliateTouchRow.visitor_fingerprint == visitor_fingerprint)
    if cookie_id:
        identifiers.append(AffiliateTouchRow.cookie_id == cookie_id)
    if not identifiers:
        return []

    window_start = (now or datetime.now(timezone.utc)) - timedelta(days=window_days)
    result = await session.execute(
        select(AffiliateTouchRow)
        .where(
            AffiliateTouchRow.clinic_id == clinic_id,
            AffiliateTouchRow.created_at >= window_start,
            or_(*identifiers),
        )
        .order_by(AffiliateTouchRow.created_at.asc(), AffiliateTouchRow.id.asc())
    )
    return [
        WeightedTouch(
            touch_id=row.id,
            affiliate_id=row.affiliate_id,
            ref_code=row.ref_code,
            created_at=row.created_at,
        )
        for row in result.scalars().all()
    ]


async def find_recent_unconverted_clicks(
    session: AsyncSession,
    clinic_id: int,
    since: datetime,
    limit: int = 5,
) -> list[AffiliateTouchRow]:
    """Unconverted CLICK touches with a resolved affiliate, newest first."""
    result = await session.execute(
        select(AffiliateTouchRow)
        .where(
            AffiliateTouchRow.clinic_id == clinic_id,
            AffiliateTouchRow.touch_type == TouchType.CLICK.value,
            AffiliateTouchRow.created_at >= since,
            AffiliateTouchRow.converted_patient_id.is_(None),
            AffiliateTouchRow.affiliate_id.is_not(None),
        )
        .order_by(AffiliateTouchRow.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_touch_converted(
    session: AsyncSession,
    touch_id: int,
    patient_id: int,
    now: Optional[datetime] = None,
) -> bool:
    """Link a touch to the patient it converted. A touch converts at most once."""
    result = await session.execute(
        update(AffiliateTouchRow)
        .where(
            AffiliateTouchRow.id == touch_id,
            AffiliateTouchRow.converted_at.is_(None),
        )
        .values(
            converted_patient_id=patient_id,
            converted_at=now or datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.info("Touch %s already converted or missing, left unchanged", touch_id)
        return False
    logger.info("Touch %s marked converted for patient %s", touch_id, patient_id)
    return True


async def reconcile_unresolved_touches(session: AsyncSession, clinic_id: int) -> int:
    """Attach affiliates to touches recorded before their ref code existed."""
    codes_result = await session.execute(
        select(AffiliateTouchRow.ref_code)
        .where(
            AffiliateTouchRow.clinic_id == clinic_id,
            AffiliateTouchRow.affiliate_id.is_(None),
        )
        .group_by(AffiliateTouchRow.ref_code)
    )
    codes = list(codes_result.scalars().all())
    if not codes:
        return 0

    refs_result = await session.execute(
        select(AffiliateRefCodeRow).where(
            AffiliateRefCodeRow.clinic_id == clinic_id,
            AffiliateRefCodeRow.is_active.is_(True),
            AffiliateRefCodeRow.ref_code.in_(codes),
        )
    )
    resolved = 0
    for ref in refs_result.scalars().all():
        result = await session.execute(
            update(AffiliateTouchRow)
            .where(
                AffiliateTouchRow.clinic_id == clinic_id,
                AffiliateTouchRow.affiliate_id.is_(None),
                AffiliateTouchRow.ref_code == ref.ref_code,
            )
            .values(affiliate_id=ref.affiliate_id)
            .execution_options(synchronize_session=False)
        )
        resolved += result.rowcount

    logger.info("Reconciled %d unresolved touches in clinic %s", resolved, clinic_id)
    return resolved

