"""Tests for request ID tracing middleware."""
import logging

import pytest

from affiliate_attribution.logging_config import RequestIDFilter
from affiliate_attribution.middleware.request_id import request_id_var


@pytest.mark.asyncio
async def test_response_includes_request_id(client):
    """Every response should have X-Request-ID header."""
    resp = await client.get("/health")
    assert "x-request-id" in resp.headers
    # Should be a valid UUID4-ish string
    rid = resp.headers["x-request-id"]
    assert len(rid) == 36  # UUID format


@pytest.mark.asyncio
async def test_client_request_id_honored(client):
    """A webhook redelivery keeps its X-Request-ID."""
    custom_id = "heyflow-delivery-12345"
    resp = await client.post(
        "/api/v1/affiliate/intake-attribution",
        json={"patient_id": 1, "clinic_id": 1, "promo_code": "X"},
        headers={"X-Request-ID": custom_id},
    )
    assert resp.headers["x-request-id"] == custom_id


@pytest.mark.asyncio
async def test_unique_ids_per_request(client):
    """Each request gets a unique ID."""
    r1 = await client.get("/health")
    r2 = await client.get("/health")
    assert r1.headers["x-request-id"] != r2.headers["x-request-id"]


def test_log_filter_copies_request_id():
    record = logging.LogRecord("t", logging.INFO, __file__, 1, "msg", (), None)
    token = request_id_var.set("rid-1")
    try:
        assert RequestIDFilter().filter(record) is True
    finally:
        request_id_var.reset(token)
    assert record.request_id == "rid-1"
