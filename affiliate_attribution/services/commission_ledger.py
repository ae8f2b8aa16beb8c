"""
Affiliate commission ledger.

One append-only event per Stripe payment event, keyed by (clinic, Stripe event
id) so webhook redeliveries never double-pay. Events start PENDING, become
APPROVED once their hold period passes, and are REVERSED on refund when the
plan allows clawback.

Only amounts and affiliate ids are stored, never patient identifiers.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_attribution.db.affiliate_tables import (
    AffiliateCommissionEventRow,
    AffiliateCommissionPlanRow,
    AffiliateRow,
)
from affiliate_attribution.db.tables import PatientRow
from affiliate_attribution.models import (
    AffiliateStatus,
    CommissionAppliesTo,
    CommissionPlanType,
    CommissionStatus,
)
from affiliate_attribution.services.attribution_models import as_utc
from affiliate_attribution.services.reporting import suppress_row

logger = logging.getLogger(__name__)

DAILY_TREND_DAYS = 90


@dataclass
class PaymentEvent:
    """A successful Stripe payment for a patient."""
    clinic_id: int
    patient_id: int
    stripe_event_id: str       # idempotency key
    stripe_object_id: str      # charge / invoice the event is about
    stripe_event_type: str
    amount_cents: int
    occurred_at: datetime
    is_first_payment: bool = True
    is_recurring: bool = False


@dataclass
class RefundEvent:
    clinic_id: int
    stripe_event_id: str
    stripe_object_id: str      # the original payment object
    stripe_event_type: str
    amount_cents: int
    occurred_at: datetime
    reason: Optional[str] = None


@dataclass
class CommissionResult:
    success: bool
    commission_event_id: Optional[int] = None
    commission_amount_cents: Optional[int] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def skip(cls, reason: str, event_id: Optional[int] = None) -> "CommissionResult":
        return cls(success=True, skipped=True, skip_reason=reason, commission_event_id=event_id)


def calculate_commission(
    amount_cents: int,
    plan_type: str,
    flat_amount_cents: Optional[int],
    percent_bps: Optional[int],
) -> int:
    """Base commission in cents. 1000 bps = 10%."""
    if plan_type == CommissionPlanType.FLAT.value:
        return flat_amount_cents or 0
    if plan_type == CommissionPlanType.PERCENT.value and percent_bps:
        return round(amount_cents * percent_bps / 10000)
    return 0


async def _find_event_id(session: AsyncSession, clinic_id: int, stripe_event_id: str) -> Optional[int]:
    result = await session.execute(
        select(AffiliateCommissionEventRow.id).where(
            AffiliateCommissionEventRow.clinic_id == clinic_id,
            AffiliateCommissionEventRow.stripe_event_id == stripe_event_id,
        )
    )
    return result.scalar_one_or_none()


async def record_payment_commission(session: AsyncSession, payment: PaymentEvent) -> CommissionResult:
    """Append a PENDING commission event for an attributed payment. Commits."""
    existing_id = await _find_event_id(session, payment.clinic_id, payment.stripe_event_id)
    if existing_id is not None:
        logger.debug("Stripe event %s already processed (event %s)", payment.stripe_event_id, existing_id)
        return CommissionResult.skip("Event already processed", existing_id)

    patient = await session.get(PatientRow, payment.patient_id)
    if patient is None or patient.attribution_affiliate_id is None:
        return CommissionResult.skip("No affiliate attribution")
    affiliate_id = patient.attribution_affiliate_id
    ref_code = patient.attribution_ref_code

    result = await session.execute(
        select(AffiliateRow).where(
            AffiliateRow.id == affiliate_id,
            AffiliateRow.clinic_id == payment.clinic_id,
            AffiliateRow.status == AffiliateStatus.ACTIVE.value,
        )
    )
    affiliate = result.scalar_one_or_none()
    if affiliate is None:
        return CommissionResult.skip("Affiliate not active")

    plan = None
    if affiliate.commission_plan_id is not None:
        plan = await session.get(AffiliateCommissionPlanRow, affiliate.commission_plan_id)
    if plan is None or not plan.is_active:
        return CommissionResult.skip("No active commission plan")

    if (
        plan.applies_to == CommissionAppliesTo.FIRST_PAYMENT_ONLY.value
        and not payment.is_first_payment
        and not payment.is_recurring
    ):
        return CommissionResult.skip("Plan only applies to first payment")

    if payment.is_recurring and not plan.recurring_enabled:
        return CommissionResult.skip("Recurring commissions not enabled")

    commission_cents = calculate_commission(
        payment.amount_cents, plan.plan_type, plan.flat_amount_cents, plan.percent_bps,
    )
    if commission_cents <= 0:
        return CommissionResult.skip("Zero commission")

    occurred_at = as_utc(payment.occurred_at)
    hold_until = occurred_at + timedelta(days=plan.hold_days) if plan.hold_days > 0 else None

    event = AffiliateCommissionEventRow(
        clinic_id=payment.clinic_id,
        affiliate_id=affiliate_id,
        stripe_event_id=payment.stripe_event_id,
        stripe_object_id=payment.stripe_object_id,
        stripe_event_type=payment.stripe_event_type,
        event_amount_cents=payment.amount_cents,
        commission_amount_cents=commission_cents,
        commission_plan_id=plan.id,
        is_recurring=payment.is_recurring,
        status=CommissionStatus.PENDING.value,
        occurred_at=occurred_at,
        hold_until=hold_until,
        event_metadata={
            "ref_code": ref_code,
            "plan_name": plan.name,
            "plan_type": plan.plan_type,
        },
    )
    session.add(event)
    try:
        await session.flush()
        await session.execute(
            update(AffiliateRow)
            .where(AffiliateRow.id == affiliate_id)
            .values(lifetime_revenue_cents=AffiliateRow.lifetime_revenue_cents + payment.amount_cents)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except IntegrityError:
        # A concurrent delivery of the same Stripe event won the insert
        await session.rollback()
        existing_id = await _find_event_id(session, payment.clinic_id, payment.stripe_event_id)
        logger.debug("Duplicate Stripe event %s caught by constraint", payment.stripe_event_id)
        return CommissionResult.skip("Event already processed (constraint)", existing_id)

    logger.info(
        "Commission event %s created: affiliate=%s clinic=%s commission=%d cents (stripe event %s)",
        event.id, affiliate_id, payment.clinic_id, commission_cents, payment.stripe_event_id,
    )
    return CommissionResult(
        success=True,
        commission_event_id=event.id,
        commission_amount_cents=commission_cents,
    )


async def reverse_commission_for_refund(session: AsyncSession, refund: RefundEvent) -> CommissionResult:
    """Claw back the commission for a refunded payment. Commits."""
    result = await session.execute(
        select(AffiliateCommissionEventRow)
        .where(
            AffiliateCommissionEventRow.clinic_id == refund.clinic_id,
            AffiliateCommissionEventRow.stripe_object_id == refund.stripe_object_id,
            AffiliateCommissionEventRow.status.in_(
                [CommissionStatus.PENDING.value, CommissionStatus.APPROVED.value]
            ),
        )
        .order_by(AffiliateCommissionEventRow.id)
        .limit(1)
    )
    event = result.scalar_one_or_none()
    if event is None:
        return CommissionResult.skip("No commission event found")

    plan = None
    if event.commission_plan_id is not None:
        plan = await session.get(AffiliateCommissionPlanRow, event.commission_plan_id)
    if plan is None or not plan.clawback_enabled:
        logger.debug("Clawback not enabled for commission event %s", event.id)
        return CommissionResult.skip("Clawback not enabled", event.id)

    event_id = event.id
    reversed_result = await session.execute(
        update(AffiliateCommissionEventRow)
        .where(
            AffiliateCommissionEventRow.id == event_id,
            AffiliateCommissionEventRow.status.in_(
                [CommissionStatus.PENDING.value, CommissionStatus.APPROVED.value]
            ),
            AffiliateCommissionEventRow.reversed_at.is_(None),
        )
        .values(
            status=CommissionStatus.REVERSED.value,
            reversed_at=datetime.now(timezone.utc),
            reversal_reason=refund.reason or refund.stripe_event_type,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    if reversed_result.rowcount == 0:
        logger.info("Commission event %s already reversed", event_id)
        return CommissionResult.skip("Already reversed", event_id)

    logger.info("Commission event %s reversed (%s)", event_id, refund.reason or refund.stripe_event_type)
    return CommissionResult(success=True, commission_event_id=event_id)


async def approve_pending_commissions(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Approve PENDING events whose hold has passed. Returns how many. Commits."""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        update(AffiliateCommissionEventRow)
        .where(
            AffiliateCommissionEventRow.status == CommissionStatus.PENDING.value,
            or_(
                AffiliateCommissionEventRow.hold_until.is_(None),
                AffiliateCommissionEventRow.hold_until <= now,
            ),
        )
        .values(status=CommissionStatus.APPROVED.value, approved_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info("Approved %d pending commissions", result.rowcount)
    return result.rowcount


async def get_affiliate_commission_stats(
    session: AsyncSession,
    affiliate_id: int,
    clinic_id: int,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> dict:
    """Aggregate commission stats. Counts and sums only; daily rows are suppressed."""
    filters = [
        AffiliateCommissionEventRow.affiliate_id == affiliate_id,
        AffiliateCommissionEventRow.clinic_id == clinic_id,
    ]
    if from_date is not None:
        filters.append(AffiliateCommissionEventRow.occurred_at >= from_date)
    if to_date is not None:
        filters.append(AffiliateCommissionEventRow.occurred_at <= to_date)

    result = await session.execute(
        select(
            AffiliateCommissionEventRow.status,
            func.count(AffiliateCommissionEventRow.id),
            func.coalesce(func.sum(AffiliateCommissionEventRow.commission_amount_cents), 0),
        )
        .where(*filters)
        .group_by(AffiliateCommissionEventRow.status)
    )
    by_status = {s.value.lower(): {"count": 0, "amount_cents": 0} for s in CommissionStatus}
    for status, count, amount in result.all():
        by_status[status.lower()] = {"count": int(count), "amount_cents": int(amount)}

    # Grouped in Python so SQLite and PostgreSQL agree on day boundaries (UTC)
    result = await session.execute(
        select(
            AffiliateCommissionEventRow.occurred_at,
            AffiliateCommissionEventRow.event_amount_cents,
            AffiliateCommissionEventRow.commission_amount_cents,
        )
        .where(*filters, AffiliateCommissionEventRow.status != CommissionStatus.REVERSED.value)
        .order_by(AffiliateCommissionEventRow.occurred_at.desc())
    )
    days: "OrderedDict[str, dict]" = OrderedDict()
    for occurred_at, amount, commission in result.all():
        day = as_utc(occurred_at).date().isoformat()
        row = days.setdefault(day, {"date": day, "conversions": 0, "revenue_cents": 0, "commission_cents": 0})
        row["conversions"] += 1
        row["revenue_cents"] += amount
        row["commission_cents"] += commission

    daily_trends = [suppress_row(row) for row in list(days.values())[:DAILY_TREND_DAYS]]

    earning = ("pending", "approved", "paid")
    return {
        **by_status,
        "totals": {
            "conversions": sum(by_status[s]["count"] for s in earning),
            "commission_cents": sum(by_status[s]["amount_cents"] for s in earning),
        },
        "daily_trends": daily_trends,
    }
