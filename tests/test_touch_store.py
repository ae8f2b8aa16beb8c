"""Tests for the affiliate touch store."""
from datetime import datetime, timedelta, timezone

import pytest

from affiliate_attribution.db.affiliate_tables import AffiliateTouchRow
from affiliate_attribution.models import TouchType
from affiliate_attribution.services.touch_store import (
    find_recent_unconverted_clicks,
    find_touches_in_window,
    generate_visitor_fingerprint,
    hash_ip_address,
    mark_touch_converted,
    normalize_ref_code,
    reconcile_unresolved_touches,
    record_touch,
)


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


class TestFingerprint:
    def test_stable_and_short(self):
        a = generate_visitor_fingerprint("Mozilla/5.0", "1.2.3.4", "en-US")
        b = generate_visitor_fingerprint("Mozilla/5.0", "1.2.3.4", "en-US")
        assert a == b
        assert len(a) == 16

    def test_differs_by_ip(self):
        assert generate_visitor_fingerprint("UA", "1.1.1.1") != generate_visitor_fingerprint("UA", "2.2.2.2")

    def test_ip_hash_never_contains_ip(self):
        digest = hash_ip_address("10.0.0.1")
        assert "10.0.0.1" not in digest
        assert len(digest) == 64

    def test_normalize_ref_code(self):
        assert normalize_ref_code("  spring24 ") == "SPRING24"
        assert normalize_ref_code(None) == ""


class TestRecordTouch:
    @pytest.mark.asyncio
    async def test_resolves_clinic_scoped_code(self, session, seed):
        clinic_id = await seed.clinic()
        affiliate_id = await seed.affiliate(clinic_id)
        await seed.ref_code(clinic_id, affiliate_id, "SPRING24")

        touch = await record_touch(
            session, clinic_id, " spring24 ",
            visitor_fingerprint="fp-1", ip_address="1.2.3.4", user_agent="UA",
        )
        await session.commit()

        assert touch.id is not None
        assert touch.affiliate_id == affiliate_id
        assert touch.ref_code == "SPRING24"
        assert touch.touch_type == TouchType.CLICK.value
        assert touch.ip_address_hash == hash_ip_address("1.2.3.4")
        assert touch.converted_at is None

    @pytest.mark.asyncio
    async def test_unknown_code_is_unresolved(self, session, seed):
        clinic_id = await seed.clinic()
        touch = await record_touch(session, clinic_id, "NOBODY")
        assert touch.affiliate_id is None

    @pytest.mark.asyncio
    async def test_code_from_other_clinic_is_unresolved(self, session, seed):
        home = await seed.clinic("Home")
        other = await seed.clinic("Other")
        affiliate_id = await seed.affiliate(other)
        await seed.ref_code(other, affiliate_id, "SHARED")
        touch = await record_touch(session, home, "SHARED")
        assert touch.affiliate_id is None

    @pytest.mark.asyncio
    async def test_fingerprint_derived_from_request(self, session, seed):
        clinic_id = await seed.clinic()
        touch = await record_touch(session, clinic_id, "X1", ip_address="9.9.9.9", user_agent="UA")
        assert touch.visitor_fingerprint == generate_visitor_fingerprint("UA", "9.9.9.9")

    @pytest.mark.asyncio
    async def test_blank_code_rejected(self, session, seed):
        clinic_id = await seed.clinic()
        with pytest.raises(ValueError):
            await record_touch(session, clinic_id, "   ")


class TestFindTouches:
    @pytest.mark.asyncio
    async def test_window_and_identifiers(self, session, seed, now):
        clinic_id = await seed.clinic()
        affiliate_id = await seed.affiliate(clinic_id)
        old = await seed.touch(clinic_id, "A", affiliate_id, now - timedelta(days=40), visitor_fingerprint="fp")
        by_fp = await seed.touch(clinic_id, "A", affiliate_id, now - timedelta(days=10), visitor_fingerprint="fp")
        by_cookie = await seed.touch(clinic_id, "A", affiliate_id, now - timedelta(days=2), cookie_id="ck")
        await seed.touch(clinic_id, "A", affiliate_id, now - timedelta(days=1), visitor_fingerprint="someone-else")

        touches = await find_touches_in_window(session, clinic_id, "fp", "ck", window_days=30, now=now)
        ids = [t.touch_id for t in touches]
        assert ids == [by_fp, by_cookie]
        assert old not in ids

    @pytest.mark.asyncio
    async def test_no_identifiers_returns_empty(self, session, seed):
        clinic_id = await seed.clinic()
        assert await find_touches_in_window(session, clinic_id) == []

    @pytest.mark.asyncio
    async def test_scoped_to_clinic(self, session, seed, now):
        a = await seed.clinic("A")
        b = await seed.clinic("B")
        affiliate_id = await seed.affiliate(b)
        await seed.touch(b, "X", affiliate_id, now - timedelta(days=1), visitor_fingerprint="fp")
        assert await find_touches_in_window(session, a, "fp", now=now) == []

    @pytest.mark.asyncio
    async def test_recent_unconverted_clicks(self, session, seed, now):
        clinic_id = await seed.clinic()
        affiliate_id = await seed.affiliate(clinic_id)
        fresh = await seed.touch(clinic_id, "A", affiliate_id, now - timedelta(minutes=30))
        await seed.touch(clinic_id, "A", affiliate_id, now - timedelta(hours=5))
        await seed.touch(clinic_id, "A", None, now - timedelta(minutes=10))
        await seed.touch(clinic_id, "A", affiliate_id, now - timedelta(minutes=5), touch_type="POSTBACK")

        clicks = await find_recent_unconverted_clicks(session, clinic_id, now - timedelta(hours=2))
        assert [c.id for c in clicks] == [fresh]


class TestMarkConverted:
    @pytest.mark.asyncio
    async def test_converts_once(self, session, seed):
        clinic_id = await seed.clinic()
        affiliate_id = await seed.affiliate(clinic_id)
        first = await seed.patient(clinic_id)
        second = await seed.patient(clinic_id)
        touch_id = await seed.touch(clinic_id, "A", affiliate_id)

        assert await mark_touch_converted(session, touch_id, first) is True
        assert await mark_touch_converted(session, touch_id, second) is False
        await session.commit()

        touch = await session.get(AffiliateTouchRow, touch_id, populate_existing=True)
        assert touch.converted_patient_id == first
        assert touch.converted_at is not None


class TestReconcile:
    @pytest.mark.asyncio
    async def test_fills_affiliate_once_code_exists(self, session, seed):
        clinic_id = await seed.clinic()
        pending = await seed.touch(clinic_id, "LATECODE", None)
        still_unknown = await seed.touch(clinic_id, "NEVER", None)
        affiliate_id = await seed.affiliate(clinic_id)
        await seed.ref_code(clinic_id, affiliate_id, "LATECODE")

        assert await reconcile_unresolved_touches(session, clinic_id) == 1
        await session.commit()

        resolved = await session.get(AffiliateTouchRow, pending, populate_existing=True)
        unresolved = await session.get(AffiliateTouchRow, still_unknown, populate_existing=True)
        assert resolved.affiliate_id == affiliate_id
        assert unresolved.affiliate_id is None

    @pytest.mark.asyncio
    async def test_nothing_to_reconcile(self, session, seed):
        clinic_id = await seed.clinic()
        assert await reconcile_unresolved_touches(session, clinic_id) == 0
