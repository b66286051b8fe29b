"""
phone_auth/binding.py

Device binding for the redirect ("link") strategy.

Flow:
  1. prepare: server generates a random secret, sends only SHA-256(secret) to
     the provider, and sets the secret as an HttpOnly cookie scoped to the
     session key.
  2. complete / process: the browser sends the cookie back automatically; the
     server reads it and forwards it to the provider, which compares it with
     the hash it received at prepare time.

The server keeps no state: the provider holds the hash, the browser holds the
secret. A completion coming from a different browser has no cookie and is
rejected as a binding violation.

Rules:
  - the raw secret appears only in Set-Cookie and Cookie headers
    (never in a response body, a URL, a log line or an audit event)
  - cookie names are derived from the session key, so concurrent sessions in
    one browser never collide and retries need no cookie cleanup
  - nothing here raises on malformed input from the client
"""

from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from starlette.requests import Request, cookie_parser
from starlette.responses import Response

DEFAULT_COOKIE_PREFIX = "_bind_"
DEFAULT_MAX_AGE_SECONDS = 300

SECRET_BYTES = 32
_SECRET_RE = re.compile(r"^[0-9a-f]{64}$")
_NAME_SUFFIX_LEN = 32


@dataclass(frozen=True)
class BindingToken:
    secret: str
    cookie_name: str
    hash: str

    def __repr__(self) -> str:
        # keep the secret out of tracebacks and debug dumps
        return f"BindingToken(cookie_name={self.cookie_name!r}, hash={self.hash!r})"


def hash_secret(secret: str) -> str:
    """One-way digest sent to the provider: hex(SHA-256(utf8(secret)))."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def new_secret() -> Tuple[str, str]:
    """
    Generate (secret, hash).

    Separate from issue() because the hash has to go out with the prepare call,
    before the provider has told us the session key.
    """
    secret = secrets.token_hex(SECRET_BYTES)
    return secret, hash_secret(secret)


def cookie_name(session_key: str, prefix: str = DEFAULT_COOKIE_PREFIX) -> str:
    """
    Deterministic cookie name for a session key.

    Session keys are provider-issued and may contain characters that are not
    legal in a cookie name, so we use a truncated SHA-256 hex digest.
    """
    digest = hashlib.sha256(str(session_key).encode("utf-8")).hexdigest()
    return prefix + digest[:_NAME_SUFFIX_LEN]


def bind(session_key: str, secret: str, prefix: str = DEFAULT_COOKIE_PREFIX) -> BindingToken:
    return BindingToken(secret=secret, cookie_name=cookie_name(session_key, prefix), hash=hash_secret(secret))


def issue(session_key: str, prefix: str = DEFAULT_COOKIE_PREFIX) -> BindingToken:
    secret, _ = new_secret()
    return bind(session_key, secret, prefix)


# -----------------------------------------------------------------------------
# Header I/O
# -----------------------------------------------------------------------------
def is_secure_request(request: Request) -> bool:
    """https directly, or https at the edge (first X-Forwarded-Proto hop)."""
    if request.url.scheme == "https":
        return True
    forwarded = request.headers.get("x-forwarded-proto", "")
    return forwarded.split(",")[0].strip().lower() == "https"


def set_binding_cookie(
    response: Response,
    name: str,
    secret: str,
    secure: bool,
    max_age: int = DEFAULT_MAX_AGE_SECONDS,
) -> None:
    response.set_cookie(
        key=name,
        value=secret.lower(),
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )


def read_binding_cookie(
    cookie_header: Optional[str],
    session_key: Optional[str],
    prefix: str = DEFAULT_COOKIE_PREFIX,
) -> Optional[str]:
    """Return the binding secret for session_key, or None if missing/malformed."""
    if not session_key:
        return None
    # same lenient parser Starlette uses for request.cookies
    value = cookie_parser(cookie_header or "").get(cookie_name(session_key, prefix))
    if not value:
        return None
    value = value.lower()
    if not _SECRET_RE.match(value):
        return None
    return value
