import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from paygate.core.errors import AppError, PaymentNotCompleted, app_error_handler, unhandled_exception_handler
from paygate.core.logging import get_request_id
from paygate.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get("/context")
    async def context():
        return {"request_id": get_request_id()}

    @app.get("/unpaid")
    async def unpaid():
        raise PaymentNotCompleted("Payment has not completed")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("handler crashed")

    return app


def test_context_carries_generated_request_id():
    client = TestClient(_make_app())

    resp = client.get("/context")
    assert resp.status_code == 200
    assert resp.headers["x-request-id"] == resp.json()["request_id"]


def test_app_error_envelope_uses_provided_request_id():
    client = TestClient(_make_app())

    resp = client.get("/unpaid", headers={"X-Request-Id": "rid-unpaid"})
    assert resp.status_code == 402
    assert resp.headers["x-request-id"] == "rid-unpaid"
    assert resp.json()["error"] == {
        "code": "payment_not_completed",
        "message": "Payment has not completed",
        "request_id": "rid-unpaid",
    }


def test_request_id_does_not_leak_after_handler_raises():
    client = TestClient(_make_app(), raise_server_exceptions=False)

    crashed = client.get("/boom", headers={"X-Request-Id": "rid-crash"})
    assert crashed.status_code == 500
    assert crashed.json()["error"]["code"] == "internal_error"
    assert crashed.json()["error"]["request_id"] == "rid-crash"

    after = client.get("/context")
    assert after.json()["request_id"] != "rid-crash"
    assert after.json()["request_id"] == after.headers["x-request-id"]


def test_completion_is_logged_with_latency_bucket(caplog):
    client = TestClient(_make_app())

    with caplog.at_level(logging.INFO, logger="paygate"):
        client.get("/context", headers={"X-Request-Id": "rid-log"})

    records = [r for r in caplog.records if r.getMessage() == "request.complete"]
    assert records
    record = records[-1]
    assert record.request_id == "rid-log"
    assert record.path == "/context"
    assert record.status == 200
    assert record.latency_bucket in {"<10ms", "10-100ms", "100-500ms", "500-1000ms", ">=1000ms"}
