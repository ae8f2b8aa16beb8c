"""
Database tables for affiliates, referral codes, touches and the commission ledger.
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, ForeignKey, Index, JSON, UniqueConstraint
)
from sqlalchemy.orm import relationship

from affiliate_attribution.db.tables import Base, utcnow


class AffiliateCommissionPlanRow(Base):
    """How much an affiliate earns per attributed payment."""
    __tablename__ = "affiliate_commission_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    plan_type = Column(String(20), nullable=False, default="PERCENT")  # FLAT | PERCENT
    flat_amount_cents = Column(Integer, nullable=True)
    percent_bps = Column(Integer, nullable=True)  # 1000 bps = 10%
    applies_to = Column(String(30), nullable=False, default="FIRST_PAYMENT_ONLY")
    recurring_enabled = Column(Boolean, default=False, nullable=False)
    hold_days = Column(Integer, default=0, nullable=False)
    clawback_enabled = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class AffiliateRow(Base):
    __tablename__ = "affiliates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    display_name = Column(String(200), nullable=False)
    status = Column(String(20), nullable=False, default="ACTIVE")
    commission_plan_id = Column(Integer, ForeignKey("affiliate_commission_plans.id"), nullable=True)

    # Counters, only ever changed with atomic increments
    lifetime_conversions = Column(Integer, default=0, nullable=False)
    lifetime_revenue_cents = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    ref_codes = relationship("AffiliateRefCodeRow", back_populates="affiliate")
    commission_plan = relationship("AffiliateCommissionPlanRow")


class AffiliateRefCodeRow(Base):
    """A clinic-scoped referral code. The same string may exist in other clinics."""
    __tablename__ = "affiliate_ref_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)
    ref_code = Column(String(100), nullable=False, index=True)  # stored uppercase
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    affiliate = relationship("AffiliateRow", back_populates="ref_codes")
    clinic = relationship("ClinicRow")

    __table_args__ = (
        UniqueConstraint("clinic_id", "ref_code", name="uq_ref_code_per_clinic"),
    )


class AffiliateTouchRow(Base):
    """Append-only record of a visitor interacting with a referral code.

    affiliate_id is NULL while the code has no AffiliateRefCodeRow yet;
    reconciliation fills it in later.
    """
    __tablename__ = "affiliate_touches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=True, index=True)
    ref_code = Column(String(100), nullable=False, index=True)
    touch_type = Column(String(20), nullable=False, default="CLICK")

    visitor_fingerprint = Column(String(64), nullable=True)
    cookie_id = Column(String(100), nullable=True)
    ip_address_hash = Column(String(64), nullable=True)  # sha256, never the raw IP
    user_agent = Column(String(500), nullable=True)
    landing_page = Column(String(1000), nullable=True)
    referrer_url = Column(String(2000), nullable=True)
    utm_source = Column(String(100), nullable=True)
    utm_medium = Column(String(100), nullable=True)
    utm_campaign = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    # Set together, exactly once
    converted_patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    converted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_touches_clinic_fingerprint", "clinic_id", "visitor_fingerprint"),
        Index("ix_touches_clinic_cookie", "clinic_id", "cookie_id"),
    )


class AffiliateAttributionConfigRow(Base):
    """Per-clinic attribution settings. Absent row = system defaults."""
    __tablename__ = "affiliate_attribution_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, unique=True)
    new_patient_model = Column(String(20), nullable=False, default="FIRST_CLICK")
    returning_patient_model = Column(String(20), nullable=False, default="LAST_CLICK")
    cookie_window_days = Column(Integer, nullable=False, default=30)
    impression_window_hours = Column(Integer, nullable=False, default=24)
    enable_fingerprinting = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class AffiliateCommissionEventRow(Base):
    """Append-only commission ledger entry, one per Stripe event.

    Holds amounts and affiliate ids only, no patient identifiers.
    """
    __tablename__ = "affiliate_commission_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)

    stripe_event_id = Column(String(255), nullable=False)  # idempotency key
    stripe_object_id = Column(String(255), nullable=False, index=True)
    stripe_event_type = Column(String(100), nullable=False)

    event_amount_cents = Column(Integer, nullable=False)
    commission_amount_cents = Column(Integer, nullable=False)
    commission_plan_id = Column(Integer, ForeignKey("affiliate_commission_plans.id"), nullable=True)
    is_recurring = Column(Boolean, default=False, nullable=False)

    status = Column(String(20), nullable=False, default="PENDING", index=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    hold_until = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    reversed_at = Column(DateTime(timezone=True), nullable=True)
    reversal_reason = Column(String(255), nullable=True)
    event_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("clinic_id", "stripe_event_id", name="uq_commission_event_per_clinic"),
        Index("ix_commission_affiliate_status", "affiliate_id", "clinic_id", "status"),
    )
