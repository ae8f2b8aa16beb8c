"""Create clinic, patient, affiliate, touch and commission ledger tables.

Revision ID: 3f9c2a7d1b04
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "3f9c2a7d1b04"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "clinics",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "affiliate_commission_plans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("clinic_id", sa.Integer, sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("plan_type", sa.String(20), nullable=False, server_default="PERCENT"),
        sa.Column("flat_amount_cents", sa.Integer, nullable=True),
        sa.Column("percent_bps", sa.Integer, nullable=True),
        sa.Column("applies_to", sa.String(30), nullable=False, server_default="FIRST_PAYMENT_ONLY"),
        sa.Column("recurring_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("hold_days", sa.Integer, nullable=False, server_default="0"),
        sa.Column("clawback_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "affiliates",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("clinic_id", sa.Integer, sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("display_name", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("commission_plan_id", sa.Integer, sa.ForeignKey("affiliate_commission_plans.id"), nullable=True),
        sa.Column("lifetime_conversions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lifetime_revenue_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "patients",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("clinic_id", sa.Integer, sa.ForeignKey("clinics.id"), nullable=False, index=True),
        sa.Column("attribution_affiliate_id", sa.Integer, sa.ForeignKey("affiliates.id"), nullable=True, index=True),
        sa.Column("attribution_ref_code", sa.String(100), nullable=True),
        sa.Column("attribution_first_touch_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tags", sa.JSON),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_patients_clinic_attribution", "patients", ["clinic_id", "attribution_affiliate_id"])

    op.create_table(
        "affiliate_ref_codes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("clinic_id", sa.Integer, sa.ForeignKey("clinics.id"), nullable=False),
        sa.Column(
            "affiliate_id", sa.Integer, sa.ForeignKey("affiliates.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("ref_code", sa.String(100), nullable=False, index=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("clinic_id", "ref_code", name="uq_ref_code_per_clinic"),
    )
    op.create_table(
        "affiliate_touches",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("clinic_id", sa.Integer, sa.ForeignKey("clinics.id"), nullable=False),
        sa.Column(
            "affiliate_id", sa.Integer, sa.ForeignKey("affiliates.id", ondelete="CASCADE"),
            nullable=True, index=True,
        ),
        sa.Column("ref_code", sa.String(100), nullable=False, index=True),
        sa.Column("touch_type", sa.String(20), nullable=False, server_default="CLICK"),
        sa.Column("visitor_fingerprint", sa.String(64), nullable=True),
        sa.Column("cookie_id", sa.String(100), nullable=True),
        sa.Column("ip_address_hash", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("landing_page", sa.String(1000), nullable=True),
        sa.Column("referrer_url", sa.String(2000), nullable=True),
        sa.Column("utm_source", sa.String(100), nullable=True),
        sa.Column("utm_medium", sa.String(100), nullable=True),
        sa.Column("utm_campaign", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("converted_patient_id", sa.Integer, sa.ForeignKey("patients.id"), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_touches_clinic_fingerprint", "affiliate_touches", ["clinic_id", "visitor_fingerprint"])
    op.create_index("ix_touches_clinic_cookie", "affiliate_touches", ["clinic_id", "cookie_id"])

    op.create_table(
        "affiliate_attribution_configs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("clinic_id", sa.Integer, sa.ForeignKey("clinics.id"), nullable=False, unique=True),
        sa.Column("new_patient_model", sa.String(20), nullable=False, server_default="FIRST_CLICK"),
        sa.Column("returning_patient_model", sa.String(20), nullable=False, server_default="LAST_CLICK"),
        sa.Column("cookie_window_days", sa.Integer, nullable=False, server_default="30"),
        sa.Column("impression_window_hours", sa.Integer, nullable=False, server_default="24"),
        sa.Column("enable_fingerprinting", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "affiliate_commission_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("clinic_id", sa.Integer, sa.ForeignKey("clinics.id"), nullable=False),
        sa.Column(
            "affiliate_id", sa.Integer, sa.ForeignKey("affiliates.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("stripe_event_id", sa.String(255), nullable=False),
        sa.Column("stripe_object_id", sa.String(255), nullable=False, index=True),
        sa.Column("stripe_event_type", sa.String(100), nullable=False),
        sa.Column("event_amount_cents", sa.Integer, nullable=False),
        sa.Column("commission_amount_cents", sa.Integer, nullable=False),
        sa.Column("commission_plan_id", sa.Integer, sa.ForeignKey("affiliate_commission_plans.id"), nullable=True),
        sa.Column("is_recurring", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING", index=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("hold_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reversal_reason", sa.String(255), nullable=True),
        sa.Column("metadata", sa.JSON),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("clinic_id", "stripe_event_id", name="uq_commission_event_per_clinic"),
    )
    op.create_index(
        "ix_commission_affiliate_status", "affiliate_commission_events", ["affiliate_id", "clinic_id", "status"],
    )


def downgrade() -> None:
    op.drop_table("affiliate_commission_events")
    op.drop_table("affiliate_attribution_configs")
    op.drop_table("affiliate_touches")
    op.drop_table("affiliate_ref_codes")
    op.drop_table("patients")
    op.drop_table("affiliates")
    op.drop_table("affiliate_commission_plans")
    op.drop_table("clinics")
