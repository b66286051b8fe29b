"""HttpBackendGateway error mapping and status parsing."""

import asyncio

import httpx
import pytest

from phone_auth.errors import (
    BindingViolation,
    ProviderNotConfigured,
    SessionNotFound,
    TransientNetworkError,
    UnexpectedError,
    UpstreamError,
    ValidationError,
    error_from_payload,
)
from phone_auth.gateway import AuthRequest, HttpBackendGateway, PollStatus, PreparedSession, StatusUpdate
from phone_auth.models import Strategy, UseCase


def _gateway(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")
    return HttpBackendGateway(client)


class TestStatusUpdate:
    @pytest.mark.parametrize("raw", ["approved", "APPROVED", "completed", " success "])
    def test_approved(self, raw):
        assert StatusUpdate.from_body({"status": raw}).status is PollStatus.APPROVED

    @pytest.mark.parametrize("raw", ["denied", "rejected", "expired"])
    def test_denied(self, raw):
        assert StatusUpdate.from_body({"status": raw}).status is PollStatus.DENIED

    @pytest.mark.parametrize("body", [{"status": "pending"}, {"status": "in_progress"}, {}, None, ["x"]])
    def test_anything_else_is_pending(self, body):
        assert StatusUpdate.from_body(body).status is PollStatus.PENDING

    def test_credential_is_carried(self):
        assert StatusUpdate.from_body({"status": "approved", "credential": "c"}).credential == "c"


class TestPreparedSession:
    def test_from_response(self):
        session = PreparedSession.from_response(
            {
                "authentication_strategy": "qr",
                "session": {"session_key": "k"},
                "data": {"status_url": "https://p/status/k", "qr_code_url": "https://c/qr"},
            }
        )
        assert session.strategy is Strategy.DESKTOP
        assert session.polling_url == "https://p/status/k"
        assert session.prompt["qr_code_url"] == "https://c/qr"

    def test_missing_session_key(self):
        with pytest.raises(UnexpectedError):
            PreparedSession.from_response({"authentication_strategy": "ts43", "session": {}})

    def test_request_payload_skips_empty_fields(self):
        payload = AuthRequest(use_case=UseCase.VERIFY_PHONE_NUMBER, phone_number="+1555").to_payload()
        assert payload == {"use_case": "VerifyPhoneNumber", "phone_number": "+1555"}


class TestHttpBackendGateway:
    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientNetworkError):
            asyncio.run(_gateway(handler).status("k"))

    def test_error_body_is_rebuilt(self):
        def handler(request):
            return httpx.Response(403, json={"error": "MISSING_BINDING_COOKIE", "message": "no cookie", "status": 403})

        with pytest.raises(BindingViolation):
            asyncio.run(_gateway(handler).complete("k", "agg"))

    def test_invoke_never_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert asyncio.run(_gateway(handler).invoke("k")) is False

    def test_invoke_reports_success(self):
        def handler(request):
            return httpx.Response(200, json={"success": True})

        assert asyncio.run(_gateway(handler).invoke("k")) is True


class TestErrorFromPayload:
    def test_known_codes(self):
        assert isinstance(error_from_payload(404, {"error": "SESSION_NOT_FOUND"}), SessionNotFound)
        assert isinstance(error_from_payload(503, {"error": "PROVIDER_NOT_CONFIGURED"}), ProviderNotConfigured)
        assert isinstance(error_from_payload(400, {"error": "MISSING_REQUIRED_FIELD"}), ValidationError)

    def test_status_check_failed_is_transient(self):
        err = error_from_payload(500, {"error": "STATUS_CHECK_FAILED", "message": "x"})
        assert isinstance(err, TransientNetworkError)
        assert err.code == "STATUS_CHECK_FAILED"

    def test_gateway_statuses_are_transient(self):
        assert isinstance(error_from_payload(502, {}), TransientNetworkError)

    def test_upstream_keeps_request_id(self):
        err = error_from_payload(422, {"error": "INVALID_CREDENTIAL", "message": "m", "requestId": "r-1"})
        assert isinstance(err, UpstreamError)
        assert err.request_id == "r-1"
        assert not err.retryable
        assert err.to_dict()["requestId"] == "r-1"

    def test_non_dict_payload(self):
        err = error_from_payload(418, "teapot")
        assert err.code == "UPSTREAM_ERROR"
        assert err.status == 418
