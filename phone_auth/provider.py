# phone_auth/provider.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Thin async client for the identity provider. It does no protocol work of its
# own: every call is "POST JSON, return JSON or raise a typed error".
#
#   - Auth: OAuth2 client credentials, token cached until shortly before expiry.
#   - Errors: non-2xx -> UpstreamError with the provider's code/status/request
#     id/details (relayed by the HTTP layer without translation).
#     Network failure -> TransientNetworkError.
#   - The binding secret is passed through as fe_code on process/complete and
#     never logged. Only its hash goes out with prepare.
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional

import httpx

from .config import Settings
from .errors import ProviderNotConfigured, TransientNetworkError, UpstreamError
from .logging import get_logger

log = get_logger(__name__)

PREPARE_PATH = "/magic-auth/v2/auth/prepare"
GET_PHONE_NUMBER_PATH = "/magic-auth/v2/auth/get-phone-number"
VERIFY_PHONE_NUMBER_PATH = "/magic-auth/v2/auth/verify-phone-number"
REPORT_INVOCATION_PATH = "/magic-auth/v2/auth/report-invocation"
COMPLETE_PATH = "/magic-auth/v2/auth/complete"

# refresh the access token this many seconds before it actually expires
TOKEN_LEEWAY_SECONDS = 30


def extract_status_url(response: Dict[str, Any]) -> Optional[str]:
    """
    Pull the polling URL out of a prepare response.

    Desktop and link strategies carry it in data.status_url; some provider
    versions put it at the top level.
    """
    data = response.get("data")
    if isinstance(data, dict):
        url = data.get("status_url")
        if isinstance(url, str) and url:
            return url
    url = response.get("status_url")
    if isinstance(url, str) and url:
        return url
    return None


def session_key_of(response: Dict[str, Any]) -> Optional[str]:
    session = response.get("session")
    if isinstance(session, dict):
        key = session.get("session_key")
        if isinstance(key, str) and key:
            return key
    return None


class ProviderClient:
    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.client = client
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return self.settings.provider_configured

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------
    async def _access_token(self) -> str:
        if not self.configured:
            raise ProviderNotConfigured()

        async with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            try:
                resp = await self.client.post(
                    self.settings.token_url,
                    data={"grant_type": "client_credentials"},
                    auth=(self.settings.PROVIDER_CLIENT_ID, self.settings.PROVIDER_CLIENT_SECRET),
                )
            except httpx.HTTPError as e:
                raise TransientNetworkError(f"token request failed: {e!s}"[:200]) from e

            if resp.status_code >= 400:
                raise _upstream_error(resp)

            body = resp.json()
            self._token = str(body["access_token"])
            expires_in = int(body.get("expires_in", 3600))
            self._token_expires_at = self._clock() + max(expires_in - TOKEN_LEEWAY_SECONDS, 0)
            return self._token

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------
    async def _post(self, path: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        token = await self._access_token()
        url = self.settings.PROVIDER_BASE_URL + path
        try:
            resp = await self.client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            log.error("provider_request_failed", path=path, error=str(e)[:200])
            raise TransientNetworkError("identity provider is unreachable") from e

        if resp.status_code >= 400:
            err = _upstream_error(resp)
            log.error(
                "provider_error",
                path=path,
                code=err.code,
                status=err.status,
                request_id=err.request_id,
            )
            raise err

        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------
    async def prepare(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post(PREPARE_PATH, request) or {}

    async def get_phone_number(self, session: Dict[str, Any], credential: Any, fe_code: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"session": session, "credential": credential}
        if fe_code:
            payload["fe_code"] = fe_code
        return await self._post(GET_PHONE_NUMBER_PATH, payload) or {}

    async def verify_phone_number(self, session: Dict[str, Any], credential: Any, fe_code: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"session": session, "credential": credential}
        if fe_code:
            payload["fe_code"] = fe_code
        return await self._post(VERIFY_PHONE_NUMBER_PATH, payload) or {}

    async def report_invocation(self, session_id: str) -> Dict[str, Any]:
        return await self._post(REPORT_INVOCATION_PATH, {"session_id": session_id}) or {"success": True}

    async def complete(self, session_key: str, fe_code: str, agg_code: str) -> None:
        await self._post(
            COMPLETE_PATH,
            {"session_key": session_key, "fe_code": fe_code, "agg_code": agg_code},
        )


def _upstream_error(resp: httpx.Response) -> UpstreamError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    details = body.get("details")
    return UpstreamError(
        str(body.get("message") or f"provider returned {resp.status_code}"),
        code=str(body.get("code") or body.get("error") or "UPSTREAM_ERROR"),
        status=resp.status_code,
        request_id=body.get("request_id") or body.get("requestId") or resp.headers.get("x-request-id"),
        details=details if isinstance(details, dict) else None,
    )
