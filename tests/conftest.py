"""Shared test fixtures: single test DB for all test modules."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from affiliate_attribution.db.tables import Base, ClinicRow, PatientRow
from affiliate_attribution.db.affiliate_tables import (
    AffiliateCommissionPlanRow,
    AffiliateRefCodeRow,
    AffiliateRow,
    AffiliateTouchRow,
    AffiliateAttributionConfigRow,
)
from affiliate_attribution.db.engine import get_session
from affiliate_attribution.services.intake_attribution import IntakeAttributionService

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from affiliate_attribution.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

# Services that open their own sessions go through the engine module
import affiliate_attribution.db.engine as _engine_mod
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine


class Seeder:
    """Inserts rows for a test and commits each one. Returns ids."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def _add(self, row):
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            return row.id

    async def clinic(self, name: str = "Test Clinic", id: Optional[int] = None) -> int:
        return await self._add(ClinicRow(id=id, name=name))

    async def plan(self, clinic_id: int, **fields) -> int:
        fields.setdefault("name", "Standard")
        fields.setdefault("plan_type", "PERCENT")
        fields.setdefault("percent_bps", 1000)
        return await self._add(AffiliateCommissionPlanRow(clinic_id=clinic_id, **fields))

    async def affiliate(
        self,
        clinic_id: int,
        display_name: str = "Affiliate",
        status: str = "ACTIVE",
        commission_plan_id: Optional[int] = None,
    ) -> int:
        return await self._add(AffiliateRow(
            clinic_id=clinic_id,
            display_name=display_name,
            status=status,
            commission_plan_id=commission_plan_id,
        ))

    async def ref_code(self, clinic_id: int, affiliate_id: int, code: str, is_active: bool = True) -> int:
        return await self._add(AffiliateRefCodeRow(
            clinic_id=clinic_id, affiliate_id=affiliate_id, ref_code=code, is_active=is_active,
        ))

    async def patient(
        self,
        clinic_id: int,
        attribution_affiliate_id: Optional[int] = None,
        attribution_ref_code: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> int:
        return await self._add(PatientRow(
            clinic_id=clinic_id,
            attribution_affiliate_id=attribution_affiliate_id,
            attribution_ref_code=attribution_ref_code,
            tags=tags or [],
        ))

    async def touch(
        self,
        clinic_id: int,
        ref_code: str,
        affiliate_id: Optional[int],
        created_at: Optional[datetime] = None,
        touch_type: str = "CLICK",
        visitor_fingerprint: Optional[str] = None,
        cookie_id: Optional[str] = None,
    ) -> int:
        return await self._add(AffiliateTouchRow(
            clinic_id=clinic_id,
            affiliate_id=affiliate_id,
            ref_code=ref_code,
            touch_type=touch_type,
            visitor_fingerprint=visitor_fingerprint,
            cookie_id=cookie_id,
            created_at=created_at or datetime.now(timezone.utc),
        ))

    async def attribution_config(self, clinic_id: int, **fields) -> int:
        return await self._add(AffiliateAttributionConfigRow(clinic_id=clinic_id, **fields))


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def session():
    async with TestSession() as s:
        yield s


@pytest_asyncio.fixture
async def seed():
    return Seeder(TestSession)


@pytest_asyncio.fixture
async def intake_service():
    return IntakeAttributionService(TestSession)


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
