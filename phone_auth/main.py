# phone_auth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is "thin" orchestration glue:
#   - It wires HTTP endpoints to the primitives implemented elsewhere.
#   - It MUST NOT generate or compare binding secrets itself (binding.py does).
#   - It keeps no module-level mutable state: the registry, provider client and
#     status proxy are built by create_app() and live on app.state.
#
# Key modules / responsibilities:
#   - config.py       : environment-driven settings
#   - registry.py     : session_key -> status_url with TTL + sweep task
#   - binding.py      : device binding secret / cookie helpers
#   - status_proxy.py : relays browser polls to the provider status_url
#   - provider.py     : identity provider HTTP client (typed errors)
#   - audit.py        : append-only audit log for binding decisions
#   - qr.py           : QR rendering for the desktop strategy
#
# Three strategies, one surface:
#   - ts43 (same device): prepare -> platform prompt -> process
#   - desktop (QR):       prepare -> phone scans QR -> browser polls
#                         /status-proxy/{session_key} -> process
#   - link (redirect):    prepare sets the binding cookie -> carrier redirect
#                         lands on /completion-redirect -> page POSTs
#                         /completion-redirect/complete (cookie attached)
#                         -> original tab's poll resolves -> process
#
# Run with the app factory (no app is built at import time):
#   uvicorn --factory phone_auth.main:create_app
#
# WARNING (DEPLOYMENT):
# - The session registry is in-memory: it is NOT shared across Uvicorn workers
#   or nodes. Run a single worker, or polls will randomly miss sessions.
# -----------------------------------------------------------------------------

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, Response
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError as PydanticValidationError

from . import binding
from .audit import AuditLog, build_common
from .config import Settings, settings as default_settings
from .errors import (
    BindingViolation,
    PhoneAuthError,
    UnexpectedError,
    ValidationError,
)
from .logging import configure_logging, get_logger, preview
from .models import CompleteRequest, PrepareRequest, ProcessRequest, Strategy, UseCase
from .provider import ProviderClient, extract_status_url, session_key_of
from .qr import make_qr_svg_bytes
from .registry import SessionRegistry
from .status_proxy import StatusPollProxy

log = get_logger(__name__)

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

COMPLETION_PAGE_PATH = "/completion-redirect"
COMPLETION_ENDPOINT_PATH = "/completion-redirect/complete"
COMPLETION_STORAGE_PREFIX = "phone_auth_complete_"

# The completion page is reached through a carrier redirect with codes in the
# fragment; it must not be framed, sniffed, cached or leak a Referer.
COMPLETION_PAGE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _require_fields(body: Dict[str, Any], *names: str) -> None:
    missing = [n for n in names if not body.get(n)]
    if missing:
        raise ValidationError(
            f"{', '.join(names)} {'is' if len(names) == 1 else 'are'} required",
            code="MISSING_REQUIRED_FIELD",
            details={"missing": missing},
        )


def _require_use_case(body: Dict[str, Any]) -> None:
    valid = [u.value for u in UseCase]
    if body.get("use_case") not in valid:
        raise ValidationError(
            f"Invalid use_case. Must be 'GetPhoneNumber' or 'VerifyPhoneNumber', got: {body.get('use_case')}",
            code="INVALID_USE_CASE",
        )


def _validation_error(e: PydanticValidationError) -> ValidationError:
    first = e.errors()[0] if e.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()))
    return ValidationError(f"invalid field {field}: {first.get('msg', 'invalid value')}" if field else "invalid request body")


def _audit_request_fields(request: Request) -> Dict[str, Any]:
    return {
        "request_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    provider: Optional[ProviderClient] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    registry: Optional[SessionRegistry] = None,
    audit: Optional[AuditLog] = None,
) -> FastAPI:
    if settings is None:
        settings = default_settings
    configure_logging(settings.LOG_LEVEL)

    owns_client = http_client is None
    client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) if owns_client else http_client

    # explicit None checks: an empty registry is falsy (__len__)
    if registry is None:
        registry = SessionRegistry(
            ttl_seconds=settings.SESSION_TTL_SECONDS,
            sweep_interval_seconds=settings.SESSION_SWEEP_INTERVAL_SECONDS,
        )
    if provider is None:
        provider = ProviderClient(settings, client)
    status_proxy = StatusPollProxy(
        registry,
        client,
        dev_header_name=settings.STATUS_DEV_HEADER_NAME,
        dev_header_value=settings.STATUS_DEV_HEADER_VALUE,
    )
    if audit is None:
        audit = AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry.start()
        if not provider.configured:
            log.warning("provider_not_configured", hint="set PROVIDER_CLIENT_ID and PROVIDER_CLIENT_SECRET")
        try:
            yield
        finally:
            await registry.stop()
            if owns_client:
                await client.aclose()

    app = FastAPI(title="Phone Auth Session Server", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.provider = provider
    app.state.status_proxy = status_proxy
    app.state.audit = audit

    # -------------------------------------------------------------------------
    # Error rendering
    # -------------------------------------------------------------------------
    @app.exception_handler(PhoneAuthError)
    async def phone_auth_error_handler(request: Request, exc: PhoneAuthError):
        return JSONResponse(exc.to_dict(), status_code=exc.status)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # missing, non-JSON or non-object bodies never reach the handlers
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ())) or "request"
        if first.get("type") == "missing":
            err = ValidationError(f"{where} is required", code="MISSING_REQUIRED_FIELD")
        else:
            err = ValidationError(f"invalid {where}: {first.get('msg', 'invalid value')}")
        log.warning("request_validation_failed", path=request.url.path, code=err.code)
        return JSONResponse(err.to_dict(), status_code=err.status)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        log.exception("unexpected_error", path=request.url.path)
        details = {"message": str(exc)[:200]} if settings.ENVIRONMENT == "development" else None
        err = UnexpectedError(details=details)
        return JSONResponse(err.to_dict(), status_code=err.status)

    # -------------------------------------------------------------------------
    # Phase 1: prepare
    # -------------------------------------------------------------------------
    @app.post("/api/phone-auth/prepare")
    async def prepare(request: Request, body: dict = Body(...)):
        _require_fields(body, "use_case")
        _require_use_case(body)
        try:
            req = PrepareRequest.model_validate(body)
        except PydanticValidationError as e:
            raise _validation_error(e)

        log.info("prepare_request", use_case=req.use_case.value)

        payload = req.model_dump(mode="json", exclude_none=True)
        if (
            req.use_case is UseCase.GET_PHONE_NUMBER
            and not req.phone_number
            and req.plmn is None
            and settings.default_plmn
        ):
            log.info("prepare_default_plmn", plmn=settings.default_plmn)
            payload["plmn"] = settings.default_plmn

        # Only the hash leaves the server here; the secret goes out as a cookie.
        secret, fe_hash = binding.new_secret()
        payload["fe_hash"] = fe_hash

        result = await provider.prepare(payload)

        session_key = session_key_of(result)
        try:
            strategy = Strategy.from_wire(result.get("authentication_strategy"))
        except ValueError:
            strategy = None

        log.info(
            "prepare_success",
            strategy=strategy.value if strategy else result.get("authentication_strategy"),
            session=preview(session_key),
        )

        status_url = extract_status_url(result)
        if status_url and session_key:
            registry.put(session_key, status_url)

        # never echo a binding code back to the browser
        result.pop("fe_code", None)

        response = JSONResponse(result)

        if session_key and strategy is Strategy.REDIRECT:
            token = binding.bind(session_key, secret, settings.BINDING_COOKIE_PREFIX)
            binding.set_binding_cookie(
                response,
                token.cookie_name,
                token.secret,
                secure=binding.is_secure_request(request),
                max_age=settings.BINDING_COOKIE_MAX_AGE,
            )
            audit.append_event(
                {
                    **build_common(
                        session_key=session_key,
                        cookie_name=token.cookie_name,
                        strategy=strategy.value,
                        **_audit_request_fields(request),
                    ),
                    "result": "issued",
                    "reason": "binding_cookie_set",
                }
            )
            log.info("binding_cookie_set", session=preview(session_key), cookie=token.cookie_name)

        return response

    # -------------------------------------------------------------------------
    # Best-effort invocation report (never fails the caller)
    # -------------------------------------------------------------------------
    @app.post("/api/phone-auth/invoke")
    async def invoke(request: Request):
        try:
            body = await request.json()
        except ValueError:
            log.warning("invoke_invalid_body")
            return {"success": False, "reason": "invalid_request_body"}

        session_id = body.get("session_id") if isinstance(body, dict) else None
        if not session_id:
            log.warning("invoke_missing_session_id")
            return {"success": False, "reason": "missing_session_id"}

        log.info("invoke_report", session=preview(str(session_id)))
        try:
            result = await provider.report_invocation(str(session_id))
        except Exception as e:
            # metrics call: log it, never surface it
            log.error("invoke_report_failed", session=preview(str(session_id)), error=str(e)[:200])
            return {"success": False, "error": str(e)[:200] or "unknown_error"}

        return {"success": bool(result.get("success", True))}

    # -------------------------------------------------------------------------
    # Phase 3: process
    # -------------------------------------------------------------------------
    @app.post("/api/phone-auth/process")
    async def process(request: Request, body: dict = Body(...)):
        _require_fields(body, "use_case", "session", "credential")
        _require_use_case(body)
        try:
            req = ProcessRequest.model_validate(body)
        except PydanticValidationError as e:
            raise _validation_error(e)

        log.info("process_request", use_case=req.use_case.value)

        # Link strategy: the cookie set at prepare extends binding to this step.
        fe_code = binding.read_binding_cookie(
            request.headers.get("cookie"),
            req.session_key,
            settings.BINDING_COOKIE_PREFIX,
        )
        if fe_code:
            log.info("binding_cookie_found", step="process", session=preview(req.session_key))

        if req.use_case is UseCase.GET_PHONE_NUMBER:
            result = await provider.get_phone_number(req.session, req.credential, fe_code)
            number = str(result.get("phone_number") or "")
            log.info("get_phone_number_success", phone_number=number[:6] + "****" if number else None)
        else:
            result = await provider.verify_phone_number(req.session, req.credential, fe_code)
            log.info("verify_phone_number_success", verified=result.get("verified"))

        # The binding cookie expires on its own (Max-Age); no explicit clearing.
        return result

    # -------------------------------------------------------------------------
    # Desktop / redirect polling proxy
    # -------------------------------------------------------------------------
    @app.get("/status-proxy/{session_id}")
    async def status_proxy_route(session_id: str):
        result = await status_proxy.poll(session_id)
        return JSONResponse(result.body, status_code=result.status_code)

    # -------------------------------------------------------------------------
    # Redirect strategy: completion page + complete
    # -------------------------------------------------------------------------
    @app.get(COMPLETION_PAGE_PATH, response_class=HTMLResponse)
    async def completion_page(request: Request):
        return templates.TemplateResponse(
            request,
            "completion.html",
            {
                "complete_endpoint": COMPLETION_ENDPOINT_PATH,
                "storage_prefix": COMPLETION_STORAGE_PREFIX,
            },
            headers=COMPLETION_PAGE_HEADERS,
        )

    @app.post(COMPLETION_ENDPOINT_PATH)
    async def complete(request: Request, body: dict = Body(...)):
        _require_fields(body, "session_key", "agg_code")
        try:
            req = CompleteRequest.model_validate(body)
        except PydanticValidationError as e:
            raise _validation_error(e)

        fe_code = binding.read_binding_cookie(
            request.headers.get("cookie"),
            req.session_key,
            settings.BINDING_COOKIE_PREFIX,
        )
        if not fe_code:
            log.error("complete_binding_cookie_missing", session=preview(req.session_key))
            audit.append_event(
                {
                    **build_common(
                        session_key=req.session_key,
                        cookie_name=binding.cookie_name(req.session_key, settings.BINDING_COOKIE_PREFIX),
                        **_audit_request_fields(request),
                    ),
                    "result": "denied",
                    "reason": "binding_cookie_missing",
                }
            )
            raise BindingViolation()

        log.info("complete_request", session=preview(req.session_key))
        try:
            await provider.complete(req.session_key, fe_code, req.agg_code)
        except PhoneAuthError as e:
            audit.append_event(
                {
                    **build_common(session_key=req.session_key, **_audit_request_fields(request)),
                    "result": "denied",
                    "reason": "provider_rejected",
                    "code": e.code,
                }
            )
            raise

        audit.append_event(
            {
                **build_common(session_key=req.session_key, **_audit_request_fields(request)),
                "result": "approved",
                "reason": "binding_matched",
            }
        )
        log.info("complete_success", session=preview(req.session_key))

        # The cookie is intentionally kept: process still needs it.
        return Response(status_code=204)

    # -------------------------------------------------------------------------
    # Desktop QR + health
    # -------------------------------------------------------------------------
    @app.get("/api/phone-auth/qr.svg")
    def qr_svg(data: str):
        try:
            svg_bytes = make_qr_svg_bytes(data)
        except ValueError as e:
            raise ValidationError(str(e))
        return Response(content=svg_bytes, media_type="image/svg+xml")

    @app.get("/api/health")
    def health():
        return {
            "status": "ok",
            "provider_configured": provider.configured,
            "sessions": len(registry),
            "sweeper_running": registry.running,
        }

    return app

