"""
Intake attribution: promo code on an intake form to affiliate credit.

Intake webhooks can be delivered more than once and in parallel, so the write
path runs in one transaction that re-reads the patient under a row lock and
claims the attribution with a compare-and-set update. First attribution wins;
later codes still get a POSTBACK touch so traffic reports see them.

Every entry point returns a value. Business outcomes come back as an
AttributionOutcome with a FailureReason; infrastructure faults are logged and
reported as DATABASE_ERROR.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from affiliate_attribution.db import engine as db_engine
from affiliate_attribution.db.affiliate_tables import AffiliateRefCodeRow, AffiliateRow
from affiliate_attribution.db.tables import ClinicRow, PatientRow
from affiliate_attribution.models import AffiliateStatus, Confidence, FailureReason, TouchType
from affiliate_attribution.models.attribution import MODEL_INTAKE_DIRECT, MODEL_INTAKE_TOUCH_ONLY
from affiliate_attribution.services.attribution_resolver import AttributionResult
from affiliate_attribution.services.promo_codes import extract_promo_code, extract_ref_code_from_url
from affiliate_attribution.services.touch_store import (
    find_active_ref_code,
    find_recent_unconverted_clicks,
    mark_touch_converted,
    normalize_ref_code,
    record_touch,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATEs worth retrying: serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def affiliate_tag(code: str) -> str:
    return f"affiliate:{code}"


@dataclass
class AttributionOutcome:
    """Result of an intake attribution attempt.

    success=True with failure_reason=ALREADY_ATTRIBUTED means the touch was
    recorded but the patient kept their earlier affiliate. In that case
    affiliate_id is the patient's stored affiliate, not the one behind the
    code that was just used.
    """
    success: bool
    affiliate_id: Optional[int] = None
    ref_code: Optional[str] = None
    touch_id: Optional[int] = None
    model: Optional[str] = None
    confidence: Optional[Confidence] = None
    weight: Optional[float] = None
    failure_reason: Optional[FailureReason] = None
    failure_message: Optional[str] = None
    touch_created: bool = False

    @classmethod
    def failed(cls, reason: FailureReason, message: str, ref_code: Optional[str] = None) -> "AttributionOutcome":
        return cls(success=False, ref_code=ref_code, failure_reason=reason, failure_message=message)

    @property
    def attributed(self) -> bool:
        """True only when this call set the patient's affiliate."""
        return self.success and self.failure_reason is None

    def to_result(self) -> Optional[AttributionResult]:
        if not self.attributed:
            return None
        return AttributionResult(
            affiliate_id=self.affiliate_id,
            ref_code=self.ref_code,
            touch_id=self.touch_id,
            model=self.model,
            confidence=self.confidence,
            weight=self.weight,
        )

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "affiliate_id": self.affiliate_id,
            "ref_code": self.ref_code,
            "touch_id": self.touch_id,
            "model": self.model,
            "confidence": self.confidence.value if self.confidence else None,
            "weight": self.weight,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "failure_message": self.failure_message,
            "touch_created": self.touch_created,
        }


@dataclass
class IntakeReferralReport:
    """What process_intake_referral did with one intake payload."""
    promo_code: Optional[str] = None
    outcome: Optional[AttributionOutcome] = None
    tagged_only: bool = False
    fallback: Optional[AttributionResult] = None
    errors: list[str] = field(default_factory=list)

    @property
    def referral_tracked(self) -> bool:
        return bool((self.outcome and self.outcome.success) or self.tagged_only or self.fallback)


async def lock_patient(session: AsyncSession, patient_id: int) -> Optional[PatientRow]:
    """Re-read the patient row with SELECT ... FOR UPDATE.

    The lock lasts until the surrounding transaction ends. Dialects without
    row locks (SQLite) compile this to a plain SELECT.
    """
    result = await session.execute(
        select(PatientRow)
        .where(PatientRow.id == patient_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class TouchAlreadyConverted(Exception):
    """The stored touch was converted by another patient; roll the claim back."""

    def __init__(self, touch_id: int):
        super().__init__(f"Touch {touch_id} already converted")
        self.touch_id = touch_id


def _is_retryable(exc: DBAPIError) -> bool:
    code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    return code in RETRYABLE_SQLSTATES


class IntakeAttributionService:
    """Owns its transactions; give it a session factory, not a session."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or db_engine.get_session_factory()

    # ── Transaction plumbing ─────────────────────────────────────────────

    async def _in_transaction(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as session:
            async with session.begin():
                if session.bind is not None and session.bind.dialect.name != "sqlite":
                    await session.connection(
                        execution_options={"isolation_level": settings.ATTRIBUTION_TX_ISOLATION}
                    )
                return await work(session)

    async def _run_locked(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run `work` in its own transaction with timeout and bounded retries."""
        attempts = max(1, settings.ATTRIBUTION_TX_RETRIES + 1)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(
                    self._in_transaction(work),
                    timeout=settings.ATTRIBUTION_TX_TIMEOUT_SECONDS,
                )
            except DBAPIError as exc:
                if attempt >= attempts or not _is_retryable(exc):
                    raise
                logger.warning(
                    "Attribution transaction conflict (attempt %d/%d), retrying: %s",
                    attempt, attempts, exc.orig,
                )
                await asyncio.sleep(0.05 * attempt)

    # ── Full intake attribution ──────────────────────────────────────────

    async def attribute_from_intake_extended(
        self,
        patient_id: int,
        promo_code: str,
        clinic_id: int,
        source: str = "intake",
    ) -> AttributionOutcome:
        """Attribute a patient from an intake promo code. Never raises."""
        code = normalize_ref_code(promo_code)
        try:
            return await self._attribute(patient_id, code, clinic_id, source)
        except Exception as exc:
            logger.exception(
                "Intake attribution failed for patient %s, code %s, clinic %s",
                patient_id, code, clinic_id,
            )
            detail = str(exc) or type(exc).__name__
            return AttributionOutcome.failed(
                FailureReason.DATABASE_ERROR,
                f"Database error during intake attribution: {detail}",
                ref_code=code or None,
            )

    async def _attribute(
        self,
        patient_id: int,
        code: str,
        clinic_id: int,
        source: str,
        existing_touch_id: Optional[int] = None,
    ) -> AttributionOutcome:
        """Validate, then claim. `existing_touch_id` converts a stored touch
        instead of recording a new POSTBACK."""
        async with self._session_factory() as session:
            patient = await session.get(PatientRow, patient_id)
            if patient is None:
                return AttributionOutcome.failed(
                    FailureReason.PATIENT_NOT_FOUND,
                    f"Patient {patient_id} does not exist",
                    ref_code=code or None,
                )

            if not code:
                return AttributionOutcome.failed(FailureReason.CODE_NOT_FOUND, "Promo code is empty")

            ref = await find_active_ref_code(session, code, clinic_id)
            if ref is None:
                return await self._diagnose_missing_code(code, clinic_id)

            affiliate = await session.get(AffiliateRow, ref.affiliate_id)
            if affiliate is None or affiliate.status != AffiliateStatus.ACTIVE.value:
                status = affiliate.status if affiliate is not None else "MISSING"
                logger.warning(
                    "Affiliate %s for code %s is %s, skipping attribution",
                    ref.affiliate_id, code, status,
                )
                return AttributionOutcome.failed(
                    FailureReason.AFFILIATE_INACTIVE,
                    f"Affiliate {ref.affiliate_id} for code {code} is {status}",
                    ref_code=code,
                )
            affiliate_id = affiliate.id

        async def claim(tx: AsyncSession) -> AttributionOutcome:
            now = datetime.now(timezone.utc)
            locked = await lock_patient(tx, patient_id)
            if locked is None:
                return AttributionOutcome.failed(
                    FailureReason.PATIENT_NOT_FOUND, f"Patient {patient_id} does not exist", ref_code=code,
                )
            prior_affiliate_id = locked.attribution_affiliate_id

            claimed = False
            if prior_affiliate_id is None:
                tags = list(locked.tags or [])
                if affiliate_tag(code) not in tags:
                    tags.append(affiliate_tag(code))
                result = await tx.execute(
                    update(PatientRow)
                    .where(
                        PatientRow.id == patient_id,
                        PatientRow.attribution_affiliate_id.is_(None),
                    )
                    .values(
                        attribution_affiliate_id=affiliate_id,
                        attribution_ref_code=code,
                        attribution_first_touch_at=now,
                        tags=tags,
                    )
                    .execution_options(synchronize_session=False)
                )
                claimed = result.rowcount == 1

            touch_id = existing_touch_id
            if touch_id is None:
                # Every code use is recorded, attributed or not
                touch = await record_touch(
                    tx,
                    clinic_id,
                    code,
                    touch_type=TouchType.POSTBACK,
                    visitor_fingerprint=f"intake-{patient_id}-{int(time.time() * 1000)}",
                    landing_page=f"/intake/{source}",
                    utm_source=source,
                    utm_medium="intake_form",
                    utm_campaign="promo_code",
                )
                touch_id = touch.id

            if not claimed:
                if prior_affiliate_id is None:
                    # Claimed by a concurrent transaction after our read
                    prior_affiliate_id = await tx.scalar(
                        select(PatientRow.attribution_affiliate_id).where(PatientRow.id == patient_id)
                    )
                logger.info(
                    "Patient %s already attributed (affiliate %s), code %s recorded as touch %s only",
                    patient_id, prior_affiliate_id, code, touch_id,
                )
                return AttributionOutcome(
                    success=True,
                    affiliate_id=prior_affiliate_id,
                    ref_code=code,
                    touch_id=touch_id,
                    model=MODEL_INTAKE_TOUCH_ONLY,
                    confidence=Confidence.HIGH,
                    weight=0.0,
                    failure_reason=FailureReason.ALREADY_ATTRIBUTED,
                    failure_message=(
                        f"Patient {patient_id} already has an affiliate; "
                        f"attribution unchanged, code {code} recorded for reporting"
                    ),
                    touch_created=existing_touch_id is None,
                )

            converted = await mark_touch_converted(tx, touch_id, patient_id, now=now)
            if not converted and existing_touch_id is not None:
                # One stored touch credits one patient
                raise TouchAlreadyConverted(touch_id)
            await tx.execute(
                update(AffiliateRow)
                .where(AffiliateRow.id == affiliate_id)
                .values(lifetime_conversions=AffiliateRow.lifetime_conversions + 1)
                .execution_options(synchronize_session=False)
            )
            logger.info(
                "Attributed patient %s to affiliate %s via code %s (touch %s, source %s)",
                patient_id, affiliate_id, code, touch_id, source,
            )
            return AttributionOutcome(
                success=True,
                affiliate_id=affiliate_id,
                ref_code=code,
                touch_id=touch_id,
                model=MODEL_INTAKE_DIRECT,
                confidence=Confidence.HIGH,
                weight=1.0,
                touch_created=existing_touch_id is None,
            )

        try:
            return await self._run_locked(claim)
        except TouchAlreadyConverted as exc:
            logger.info(
                "Touch %s converted by another patient, patient %s left unattributed",
                exc.touch_id, patient_id,
            )
            return AttributionOutcome(
                success=False,
                ref_code=code,
                touch_id=exc.touch_id,
                failure_message=str(exc),
            )

    async def _diagnose_missing_code(self, code: str, clinic_id: int) -> AttributionOutcome:
        """Explain why a code did not resolve in this clinic. Read-only."""
        not_found = AttributionOutcome.failed(
            FailureReason.CODE_NOT_FOUND,
            f"Code {code} has no referral code record in clinic {clinic_id}",
            ref_code=code,
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AffiliateRefCodeRow.clinic_id, ClinicRow.name)
                    .join(ClinicRow, ClinicRow.id == AffiliateRefCodeRow.clinic_id)
                    .where(
                        AffiliateRefCodeRow.ref_code == code,
                        AffiliateRefCodeRow.clinic_id != clinic_id,
                        AffiliateRefCodeRow.is_active.is_(True),
                    )
                    .order_by(AffiliateRefCodeRow.id)
                    .limit(1)
                )
                other = result.first()
                if other is not None:
                    logger.info("Code %s belongs to clinic %s, not clinic %s", code, other.clinic_id, clinic_id)
                    return AttributionOutcome.failed(
                        FailureReason.CLINIC_MISMATCH,
                        f"Code {code} belongs to clinic '{other.name}' (id {other.clinic_id}), "
                        f"not clinic {clinic_id}",
                        ref_code=code,
                    )

                result = await session.execute(
                    select(AffiliateRefCodeRow.id).where(
                        AffiliateRefCodeRow.ref_code == code,
                        AffiliateRefCodeRow.clinic_id == clinic_id,
                        AffiliateRefCodeRow.is_active.is_(False),
                    )
                )
                if result.first() is not None:
                    return AttributionOutcome.failed(
                        FailureReason.CODE_INACTIVE,
                        f"Code {code} exists in clinic {clinic_id} but is inactive",
                        ref_code=code,
                    )
        except SQLAlchemyError as exc:
            logger.warning("Diagnostic lookup for code %s failed: %s", code, exc)

        logger.info("No referral code %s in clinic %s", code, clinic_id)
        return not_found

    async def attribute_from_intake(
        self,
        patient_id: int,
        promo_code: str,
        clinic_id: int,
        source: str = "intake",
    ) -> Optional[AttributionResult]:
        """Compact variant: the attribution if this call made one, else None."""
        outcome = await self.attribute_from_intake_extended(patient_id, promo_code, clinic_id, source)
        return outcome.to_result()

    # ── Advisory tag-only path ───────────────────────────────────────────

    async def tag_patient_with_referral_code_only(
        self,
        patient_id: int,
        promo_code: str,
        clinic_id: int,
    ) -> bool:
        """Remember a code that has no referral code record yet.

        Writes attribution_ref_code and the affiliate tag but never the
        affiliate id, and records an unresolved touch for later
        reconciliation. Does nothing for an already-attributed patient.
        """
        code = normalize_ref_code(promo_code)
        if not code:
            return False

        async def tag(tx: AsyncSession) -> bool:
            locked = await lock_patient(tx, patient_id)
            if locked is None:
                logger.info("Cannot tag unknown patient %s with code %s", patient_id, code)
                return False
            if locked.attribution_affiliate_id is not None:
                logger.info("Patient %s already attributed, not tagging with %s", patient_id, code)
                return False

            tags = list(locked.tags or [])
            if affiliate_tag(code) not in tags:
                tags.append(affiliate_tag(code))
            result = await tx.execute(
                update(PatientRow)
                .where(
                    PatientRow.id == patient_id,
                    PatientRow.attribution_affiliate_id.is_(None),
                )
                .values(attribution_ref_code=code, tags=tags)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return False

            await record_touch(
                tx,
                clinic_id,
                code,
                touch_type=TouchType.POSTBACK,
                visitor_fingerprint=f"intake-{patient_id}-{int(time.time() * 1000)}",
                landing_page="/intake/referral-code-only",
                utm_medium="intake_form",
                utm_campaign="referral_code_only",
                resolve_affiliate=False,
            )
            logger.info("Tagged patient %s with unresolved referral code %s", patient_id, code)
            return True

        try:
            return await self._run_locked(tag)
        except Exception:
            logger.exception("Tagging patient %s with referral code %s failed", patient_id, code)
            return False

    # ── Recent-touch fallback ────────────────────────────────────────────

    async def attribute_by_recent_touch(
        self,
        patient_id: int,
        referrer_url: Optional[str],
        clinic_id: int,
        now: Optional[datetime] = None,
    ) -> Optional[AttributionResult]:
        """Attribute a patient who gave no code.

        Tries the referrer URL first, then a single unconverted click in the
        recent window. Several candidate clicks are ambiguous and match nothing.
        """
        try:
            async with self._session_factory() as session:
                patient = await session.get(PatientRow, patient_id)
                if patient is None or patient.attribution_affiliate_id is not None:
                    return None

            code = extract_ref_code_from_url(referrer_url)
            if code:
                outcome = await self._attribute(patient_id, code, clinic_id, source="referrer")
                if outcome.attributed:
                    return outcome.to_result()
                logger.info(
                    "Referrer code %s did not attribute patient %s: %s",
                    code, patient_id, outcome.failure_reason.value if outcome.failure_reason else "-",
                )

            since = (now or datetime.now(timezone.utc)) - timedelta(hours=settings.RECENT_TOUCH_WINDOW_HOURS)
            async with self._session_factory() as session:
                clicks = await find_recent_unconverted_clicks(session, clinic_id, since, limit=2)

            if not clicks:
                return None
            if len(clicks) > 1:
                logger.debug("Skipping recent-touch fallback: multiple unconverted clicks in window")
                return None

            click = clicks[0]
            outcome = await self._attribute(
                patient_id, click.ref_code, clinic_id, source="recent-touch", existing_touch_id=click.id,
            )
            return outcome.to_result()
        except Exception as exc:
            logger.warning("attribute_by_recent_touch failed for patient %s: %s", patient_id, exc)
            return None

    # ── Raw intake payloads ──────────────────────────────────────────────

    async def process_intake_referral(
        self,
        patient_id: int,
        clinic_id: int,
        payload: dict[str, Any],
        source: str = "intake",
    ) -> IntakeReferralReport:
        """Run the referral steps of an intake webhook for one payload."""
        report = IntakeReferralReport(promo_code=extract_promo_code(payload))
        logger.info("Extracted promo code for patient %s: %s", patient_id, report.promo_code or "(none)")

        if report.promo_code:
            report.outcome = await self.attribute_from_intake_extended(
                patient_id, report.promo_code, clinic_id, source,
            )
            if report.outcome.failure_reason == FailureReason.CODE_NOT_FOUND:
                report.tagged_only = await self.tag_patient_with_referral_code_only(
                    patient_id, report.promo_code, clinic_id,
                )
            elif report.outcome.failure_reason == FailureReason.DATABASE_ERROR:
                report.errors.append(f"Affiliate tracking failed: {report.promo_code}")
            return report

        referrer = payload.get("Referrer") or payload.get("referrer")
        report.fallback = await self.attribute_by_recent_touch(
            patient_id, referrer if isinstance(referrer, str) else None, clinic_id,
        )
        return report
