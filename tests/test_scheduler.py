"""Tests for background jobs and startup validation."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from affiliate_attribution.db.affiliate_tables import AffiliateTouchRow
from affiliate_attribution.services.commission_ledger import PaymentEvent, record_payment_commission
from affiliate_attribution.services.scheduler import (
    scheduled_commission_approval,
    scheduled_touch_reconciliation,
)
from affiliate_attribution.startup_checks import validate_settings
from config.settings import settings

from conftest import TestSession


def _broken_factory():
    raise OperationalError("SELECT 1", {}, Exception("db down"))


class TestScheduledJobs:
    @pytest.mark.asyncio
    async def test_commission_approval_job(self, session, seed):
        clinic_id = await seed.clinic()
        plan_id = await seed.plan(clinic_id)
        affiliate_id = await seed.affiliate(clinic_id, commission_plan_id=plan_id)
        patient_id = await seed.patient(clinic_id, attribution_affiliate_id=affiliate_id)
        await record_payment_commission(session, PaymentEvent(
            clinic_id=clinic_id,
            patient_id=patient_id,
            stripe_event_id="evt_1",
            stripe_object_id="ch_1",
            stripe_event_type="charge.succeeded",
            amount_cents=10000,
            occurred_at=datetime.now(timezone.utc) - timedelta(days=1),
        ))

        assert await scheduled_commission_approval(TestSession) == 1

    @pytest.mark.asyncio
    async def test_reconciliation_job_covers_every_clinic(self, session, seed):
        ids = []
        for name in ("A", "B"):
            clinic_id = await seed.clinic(name)
            touch_id = await seed.touch(clinic_id, "LATE", None)
            affiliate_id = await seed.affiliate(clinic_id)
            await seed.ref_code(clinic_id, affiliate_id, "LATE")
            ids.append((touch_id, affiliate_id))

        assert await scheduled_touch_reconciliation(TestSession) == 2

        for touch_id, affiliate_id in ids:
            touch = await session.get(AffiliateTouchRow, touch_id, populate_existing=True)
            assert touch.affiliate_id == affiliate_id

    @pytest.mark.asyncio
    async def test_jobs_swallow_database_errors(self):
        assert await scheduled_commission_approval(_broken_factory) == 0
        assert await scheduled_touch_reconciliation(_broken_factory) == 0


class TestValidateSettings:
    def test_unknown_isolation_level_exits(self, monkeypatch):
        monkeypatch.setattr(settings, "ATTRIBUTION_TX_ISOLATION", "SNAPSHOT")
        with pytest.raises(SystemExit):
            validate_settings()

    def test_weak_isolation_refused_in_production(self, monkeypatch):
        monkeypatch.setattr(settings, "DATABASE_URL", "postgresql://db/clinic")
        monkeypatch.setattr(settings, "ATTRIBUTION_TX_ISOLATION", "READ COMMITTED")
        with pytest.raises(SystemExit):
            validate_settings()

    def test_weak_isolation_tolerated_on_sqlite(self, monkeypatch):
        monkeypatch.setattr(settings, "DATABASE_URL", "sqlite+aiosqlite:///dev.db")
        monkeypatch.setattr(settings, "ATTRIBUTION_TX_ISOLATION", "READ COMMITTED")
        validate_settings()

    def test_warnings(self, monkeypatch):
        monkeypatch.setattr(settings, "DATABASE_URL", "postgresql://db/clinic")
        monkeypatch.setattr(settings, "ATTRIBUTION_TX_ISOLATION", "SERIALIZABLE")
        monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
        monkeypatch.setattr(settings, "CORS_ORIGINS", ["*"])
        warnings = validate_settings()
        assert any("ADMIN_API_KEY" in w for w in warnings)
        assert any("CORS_ORIGINS" in w for w in warnings)
        assert any("TOUCH_IP_HASH_SALT" in w for w in warnings)
