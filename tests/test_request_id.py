"""Tests for request ID middleware."""

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from intake.app.middleware.request_id import RequestIdMiddleware, get_request_id


def make_client() -> TestClient:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": get_request_id(request)}

    return TestClient(app)


def test_generates_request_id():
    resp = make_client().get("/echo")

    request_id = resp.headers["X-Request-ID"]
    assert len(request_id) == 36
    assert resp.json()["request_id"] == request_id


def test_propagates_incoming_request_id():
    resp = make_client().get("/echo", headers={"X-Request-ID": "req-42"})

    assert resp.headers["X-Request-ID"] == "req-42"
    assert resp.json()["request_id"] == "req-42"
