"""Shared fixtures: a scripted identity provider behind httpx.MockTransport."""

import hashlib
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from phone_auth.config import Settings
from phone_auth.main import create_app
from phone_auth.provider import (
    COMPLETE_PATH,
    GET_PHONE_NUMBER_PATH,
    PREPARE_PATH,
    REPORT_INVOCATION_PATH,
    VERIFY_PHONE_NUMBER_PATH,
)
from phone_auth.registry import SessionRegistry

PROVIDER_BASE = "https://provider.test"


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def prepare_body(strategy: str, session_key: str, with_status_url: bool = True) -> dict:
    data = {}
    if strategy == "ts43":
        data = {"protocol": "openid4vp", "request": {"nonce": "n-1"}}
    elif strategy == "desktop":
        data = {"qr_code_url": f"https://carrier.test/qr/{session_key}"}
    elif strategy == "link":
        data = {"url": f"https://carrier.test/auth/{session_key}"}
    if with_status_url and strategy != "ts43":
        data["status_url"] = f"{PROVIDER_BASE}/status/{session_key}"
    return {
        "authentication_strategy": strategy,
        "session": {"session_key": session_key, "nonce": "abc"},
        "data": data,
    }


class FakeProvider:
    """
    Scripted identity provider.

    Keeps the fe_hash it received at prepare time and checks the fe_code it
    gets on complete against it, the way the real provider does.
    """

    def __init__(self):
        self.calls = []
        self.prepare_response = prepare_body("ts43", "sess-ts43")
        self.status_replies = {}
        self.default_status = (200, {"status": "pending"})
        self.status_network_error = False
        self.prepare_error = None
        self.invoke_error = False
        self.fe_hashes = {}
        self.last_prepare = None

    def calls_to(self, path: str):
        return [c for c in self.calls if c["path"] == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = None
        if request.headers.get("content-type", "").startswith("application/json") and request.content:
            body = json.loads(request.content)
        self.calls.append({"method": request.method, "path": path, "json": body, "headers": request.headers})

        if path == "/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok-123", "expires_in": 3600})

        if path == PREPARE_PATH:
            if self.prepare_error:
                status, payload = self.prepare_error
                return httpx.Response(status, json=payload)
            self.last_prepare = body
            reply = json.loads(json.dumps(self.prepare_response))
            self.fe_hashes[reply["session"]["session_key"]] = body.get("fe_hash")
            return httpx.Response(200, json=reply)

        if path == REPORT_INVOCATION_PATH:
            if self.invoke_error:
                return httpx.Response(500, json={"code": "INTERNAL", "message": "boom"})
            return httpx.Response(200, json={"success": True})

        if path in (GET_PHONE_NUMBER_PATH, VERIFY_PHONE_NUMBER_PATH):
            if body.get("credential") == "bad-credential":
                return httpx.Response(
                    422,
                    json={"code": "INVALID_CREDENTIAL", "message": "credential rejected", "request_id": "req-9"},
                )
            if path == VERIFY_PHONE_NUMBER_PATH:
                phone = (self.last_prepare or {}).get("phone_number")
                return httpx.Response(200, json={"phone_number": phone, "verified": True})
            return httpx.Response(200, json={"phone_number": "+15550001111"})

        if path == COMPLETE_PATH:
            expected = self.fe_hashes.get(body["session_key"])
            got = hashlib.sha256(body["fe_code"].encode("utf-8")).hexdigest()
            if expected != got:
                return httpx.Response(403, json={"code": "BINDING_MISMATCH", "message": "fe_code does not match"})
            # the originating tab's next poll sees the approval
            key = body["session_key"]
            self.status_replies[key] = (200, {"status": "approved", "credential": f"vp-token-{key}"})
            return httpx.Response(204)

        if path.startswith("/status/"):
            if self.status_network_error:
                raise httpx.ConnectError("connection refused", request=request)
            key = path.rsplit("/", 1)[-1]
            status, payload = self.status_replies.get(key, self.default_status)
            if isinstance(payload, str):
                return httpx.Response(status, text=payload)
            return httpx.Response(status, json=payload)

        return httpx.Response(404, json={"code": "NOT_FOUND", "message": path})


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        PROVIDER_BASE_URL=PROVIDER_BASE,
        PROVIDER_CLIENT_ID="client-id",
        PROVIDER_CLIENT_SECRET="client-secret",
        AUDIT_DIR=str(tmp_path / "audit"),
        STATUS_DEV_HEADER_VALUE=None,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def registry_clock():
    return FakeClock()


@pytest.fixture
def registry(registry_clock):
    return SessionRegistry(ttl_seconds=300, sweep_interval_seconds=60, clock=registry_clock)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def app(settings, fake_provider, registry):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_provider.handler))
    return create_app(settings, http_client=http_client, registry=registry)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
