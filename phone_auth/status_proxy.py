"""
phone_auth/status_proxy.py

Server-side relay for desktop/QR and redirect polling.

The browser polls /status-proxy/{session_key}; we look up the provider's
status_url in the SessionRegistry and forward one GET. Upstream status codes
and JSON bodies are relayed unchanged. Only failures to make the call at all
(network error, non-JSON body) get our own STATUS_CHECK_FAILED code.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .errors import SessionNotFound, StatusCheckFailed
from .logging import get_logger, preview
from .registry import SessionRegistry

log = get_logger(__name__)


@dataclass(frozen=True)
class StatusResult:
    status_code: int
    body: Any


class StatusPollProxy:
    def __init__(
        self,
        registry: SessionRegistry,
        client: httpx.AsyncClient,
        dev_header_name: Optional[str] = None,
        dev_header_value: Optional[str] = None,
    ):
        self.registry = registry
        self.client = client
        self.dev_header_name = dev_header_name
        self.dev_header_value = dev_header_value

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.dev_header_name and self.dev_header_value:
            headers[self.dev_header_name] = self.dev_header_value
        return headers

    async def poll(self, session_id: str) -> StatusResult:
        status_url = self.registry.get(session_id)
        if not status_url:
            log.warning("status_proxy_session_not_found", session=preview(session_id))
            raise SessionNotFound()

        log.info("status_proxy_polling", session=preview(session_id))

        try:
            response = await self.client.get(status_url, headers=self._headers())
        except httpx.HTTPError as e:
            log.error("status_proxy_request_failed", session=preview(session_id), error=str(e)[:200])
            raise StatusCheckFailed() from e

        try:
            body = response.json()
        except ValueError as e:
            log.error(
                "status_proxy_decode_failed",
                session=preview(session_id),
                upstream_status=response.status_code,
            )
            raise StatusCheckFailed("Failed to decode status response") from e

        log.info("status_proxy_returned", session=preview(session_id), upstream_status=response.status_code)
        return StatusResult(status_code=response.status_code, body=body)
