"""
phone_auth/gateway.py

Client-side collaborators of the AuthenticationOrchestrator.

  - BackendGateway: the five backend calls (prepare, invoke, process, status,
    complete). HttpBackendGateway talks to this package's own HTTP surface.
  - CredentialSource: the platform prompt that turns provider-issued prompt
    parameters into a signed credential string.

The gateway never handles the binding secret: it lives in the client's cookie
jar (the browser's, or httpx's in tests) and rides along on process/complete.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx

from .errors import TransientNetworkError, UnexpectedError, error_from_payload
from .logging import get_logger, preview
from .models import Strategy, UseCase

log = get_logger(__name__)


@dataclass(frozen=True)
class AuthRequest:
    use_case: UseCase
    phone_number: Optional[str] = None
    plmn: Optional[Dict[str, str]] = None
    consent_data: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"use_case": self.use_case.value}
        if self.phone_number:
            payload["phone_number"] = self.phone_number
        if self.plmn:
            payload["plmn"] = dict(self.plmn)
        if self.consent_data:
            payload["consent_data"] = dict(self.consent_data)
        return payload


@dataclass(frozen=True)
class PreparedSession:
    strategy: Strategy
    session_key: str
    session: Dict[str, Any] = field(default_factory=dict)
    polling_url: Optional[str] = None
    prompt: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, body: Dict[str, Any]) -> "PreparedSession":
        session = body.get("session") if isinstance(body.get("session"), dict) else {}
        key = session.get("session_key")
        if not key:
            raise UnexpectedError("prepare response has no session key")
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        return cls(
            strategy=Strategy.from_wire(body.get("authentication_strategy")),
            session_key=str(key),
            session=session,
            polling_url=data.get("status_url") or body.get("status_url"),
            prompt=data,
        )


class PollStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


_APPROVED = {"approved", "completed", "complete", "success", "authenticated"}
_DENIED = {"denied", "rejected", "failed", "expired", "cancelled", "canceled"}


@dataclass(frozen=True)
class StatusUpdate:
    status: PollStatus
    credential: Any = None
    body: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_body(cls, body: Any) -> "StatusUpdate":
        body = body if isinstance(body, dict) else {}
        raw = str(body.get("status") or "").strip().lower()
        if raw in _APPROVED:
            status = PollStatus.APPROVED
        elif raw in _DENIED:
            status = PollStatus.DENIED
        else:
            # unknown/in-progress values keep polling until the deadline
            status = PollStatus.PENDING
        return cls(status=status, credential=body.get("credential"), body=body)


class BackendGateway(Protocol):
    async def prepare(self, request: AuthRequest) -> PreparedSession: ...

    async def invoke(self, session_id: str) -> bool: ...

    async def process(self, use_case: UseCase, session: PreparedSession, credential: Any) -> Dict[str, Any]: ...

    async def status(self, session_id: str) -> StatusUpdate: ...

    async def complete(self, session_key: str, agg_code: str) -> None: ...


class CredentialSource(Protocol):
    async def get_credential(self, prompt: Dict[str, Any]) -> str: ...


class HttpBackendGateway:
    """BackendGateway over httpx against the server in phone_auth.main."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def _request(self, method: str, path: str, json: Any = None) -> httpx.Response:
        try:
            resp = await self.client.request(method, path, json=json)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"network error calling {path}") from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            raise error_from_payload(resp.status_code, payload)
        return resp

    async def prepare(self, request: AuthRequest) -> PreparedSession:
        resp = await self._request("POST", "/api/phone-auth/prepare", request.to_payload())
        return PreparedSession.from_response(resp.json())

    async def invoke(self, session_id: str) -> bool:
        # best-effort metrics call: never raises
        try:
            resp = await self._request("POST", "/api/phone-auth/invoke", {"session_id": session_id})
            return bool(resp.json().get("success"))
        except Exception as e:
            log.debug("invoke_ignored", session=preview(session_id), error=str(e)[:200])
            return False

    async def process(self, use_case: UseCase, session: PreparedSession, credential: Any) -> Dict[str, Any]:
        resp = await self._request(
            "POST",
            "/api/phone-auth/process",
            {"use_case": use_case.value, "session": session.session, "credential": credential},
        )
        return resp.json()

    async def status(self, session_id: str) -> StatusUpdate:
        resp = await self._request("GET", f"/status-proxy/{session_id}")
        return StatusUpdate.from_body(resp.json())

    async def complete(self, session_key: str, agg_code: str) -> None:
        await self._request(
            "POST",
            "/completion-redirect/complete",
            {"session_key": session_key, "agg_code": agg_code},
        )
