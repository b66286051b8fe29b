"""
phone_auth/errors.py

Typed error channel shared by the server and the client orchestrator.

Every failure that crosses an HTTP boundary is a PhoneAuthError carrying a
machine code, an HTTP status and a human-readable message. Provider failures
keep the provider's own code/status/request id (UpstreamError) instead of being
translated. Only failures where the upstream call itself could not be made get
one of our codes.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PhoneAuthError(Exception):
    code = "INTERNAL_ERROR"
    status = 500
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "status": self.status,
        }
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(PhoneAuthError):
    """Missing or malformed request field. Always client-fixable."""

    code = "VALIDATION_ERROR"
    status = 400


class SessionNotFound(PhoneAuthError):
    code = "SESSION_NOT_FOUND"
    status = 404

    def __init__(self, message: str = "Session not found. It may have expired or prepare was not called."):
        super().__init__(message)


class BindingViolation(PhoneAuthError):
    """
    The device binding cookie is missing or does not belong to the session.

    Distinct from ValidationError: it signals a cross-browser/cross-device
    replay rather than a malformed request. The secret cannot be recovered,
    so the flow has to restart from prepare.
    """

    code = "MISSING_BINDING_COOKIE"
    status = 403
    retryable = False

    def __init__(
        self,
        message: str = "Device binding cookie is missing. The prepare and complete must happen in the same browser.",
    ):
        super().__init__(message)


class UpstreamError(PhoneAuthError):
    """Structured failure reported by the identity provider (relayed as-is)."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "UPSTREAM_ERROR",
        status: int = 502,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status=status, details=details)
        self.request_id = request_id

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        # provider 4xx are denials/validation; only 5xx can be worth another try
        return self.status >= 500

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.request_id:
            out["requestId"] = self.request_id
        return out


class StatusCheckFailed(PhoneAuthError):
    code = "STATUS_CHECK_FAILED"
    status = 500

    def __init__(self, message: str = "Failed to check status"):
        super().__init__(message)


class TransientNetworkError(PhoneAuthError):
    """The remote side could not be reached. Eligible for bounded silent retry."""

    code = "PROVIDER_UNAVAILABLE"
    status = 503


class ProviderNotConfigured(PhoneAuthError):
    code = "PROVIDER_NOT_CONFIGURED"
    status = 503
    retryable = False

    def __init__(self, message: str = "Provider credentials are not configured. Set PROVIDER_CLIENT_ID and PROVIDER_CLIENT_SECRET."):
        super().__init__(message)


class UnexpectedError(PhoneAuthError):
    """Catch-all. The detail stays in the server log; callers get a generic message."""

    code = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str = "An unexpected error occurred", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


# -----------------------------------------------------------------------------
# Credential source (platform prompt) failures, client side only
# -----------------------------------------------------------------------------
class CredentialDenied(PhoneAuthError):
    """The platform prompt was dismissed or rejected; it can be shown again."""

    code = "CREDENTIAL_DENIED"
    status = 400


class UnsupportedPlatform(PhoneAuthError):
    code = "UNSUPPORTED_PLATFORM"
    status = 400
    retryable = False


class AuthenticationDenied(PhoneAuthError):
    """The provider reported a terminal denial while polling."""

    code = "AUTHENTICATION_DENIED"
    status = 403
    retryable = False


class AuthenticationTimeout(PhoneAuthError):
    code = "TIMEOUT"
    status = 408
    retryable = False


def error_from_payload(status: int, payload: Any) -> PhoneAuthError:
    """
    Rebuild a typed error from an error response body.

    Used by the client gateway so the orchestrator sees the same taxonomy the
    server raised.
    """
    body = payload if isinstance(payload, dict) else {}
    code = str(body.get("error") or body.get("code") or "UPSTREAM_ERROR")
    message = str(body.get("message") or f"request failed with status {status}")
    details = body.get("details") if isinstance(body.get("details"), dict) else None

    if code == SessionNotFound.code:
        return SessionNotFound(message)
    if code == BindingViolation.code:
        return BindingViolation(message)
    if code == ProviderNotConfigured.code:
        return ProviderNotConfigured(message)
    if code == StatusCheckFailed.code:
        # the proxy could not reach the provider; another poll may succeed
        return TransientNetworkError(message, code=code, status=status)
    if status == 400 and code in ("VALIDATION_ERROR", "MISSING_REQUIRED_FIELD", "INVALID_USE_CASE"):
        return ValidationError(message, code=code, details=details)
    if status in (502, 503, 504):
        return TransientNetworkError(message, code=code, status=status, details=details)
    return UpstreamError(
        message,
        code=code,
        status=status,
        request_id=body.get("requestId") or body.get("request_id"),
        details=details,
    )
