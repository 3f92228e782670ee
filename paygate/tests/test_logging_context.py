"""Tests for structured logging and request_id propagation."""

import logging
from fastapi.testclient import TestClient

from paygate.core.logging import log_event
from paygate.main import app


def test_request_id_in_response_and_logs(caplog):
    client = TestClient(app)
    with caplog.at_level(logging.INFO, logger="paygate"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert len({r.request_id for r in records}) == 1


def test_request_id_in_error_response():
    client = TestClient(app)
    response = client.post("/api/billing/verify", json={"sessionId": "cs_x"})
    rid = response.headers.get("x-request-id")
    assert response.status_code == 401
    assert rid
    assert response.json()["error"]["request_id"] == rid


def test_log_event_truncates_extra_values(caplog):
    with caplog.at_level(logging.INFO, logger="paygate"):
        log_event("info", "test.event", user_id="u1", extra={"blob": "x" * 2000})
    record = [r for r in caplog.records if r.getMessage() == "test.event"][-1]
    assert record.user_id == "u1"
    assert record.blob.endswith("...<truncated>")
    assert len(record.blob) < 600
