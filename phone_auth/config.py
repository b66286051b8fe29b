from typing import Optional
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # identity provider (token exchange + prepare/process/complete)
    PROVIDER_BASE_URL: str = "https://api.provider.invalid"
    PROVIDER_TOKEN_URL: str = ""
    PROVIDER_CLIENT_ID: str = ""
    PROVIDER_CLIENT_SECRET: str = ""
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # session registry (status_url cache for the polling proxy)
    SESSION_TTL_SECONDS: int = 300
    SESSION_SWEEP_INTERVAL_SECONDS: int = 60

    # device binding cookie
    BINDING_COOKIE_PREFIX: str = "_bind_"
    BINDING_COOKIE_MAX_AGE: int = 300

    # optional extra header on outbound status polls
    STATUS_DEV_HEADER_NAME: str = "X-Developer-Env"
    STATUS_DEV_HEADER_VALUE: Optional[str] = None

    # carrier fallback for GetPhoneNumber when neither phone nor PLMN is given
    DEFAULT_PLMN_MCC: str = ""
    DEFAULT_PLMN_MNC: str = ""

    # security telemetry
    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "production"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("PROVIDER_BASE_URL")
    @classmethod
    def normalize_base_url(cls, v: str) -> str:
        """
        PROVIDER_BASE_URL must be an absolute http(s) URL.

        Normalization:
          - strip whitespace and trailing slash
          - lowercase hostname
          - keep port and path prefix, drop query/fragment
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("PROVIDER_BASE_URL must start with http:// or https://")

        if not p.hostname:
            raise ValueError("PROVIDER_BASE_URL must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, p.path.rstrip("/"), "", "", ""))

    @field_validator("BINDING_COOKIE_PREFIX")
    @classmethod
    def normalize_cookie_prefix(cls, v: str) -> str:
        # cookie names are RFC 6265 tokens; keep the prefix to a safe subset
        v = (v or "").strip() or "_bind_"
        if not all(c.isalnum() or c in "_-" for c in v):
            raise ValueError("BINDING_COOKIE_PREFIX may only contain letters, digits, '_' and '-'")
        return v

    @field_validator("SESSION_TTL_SECONDS", "SESSION_SWEEP_INTERVAL_SECONDS", "BINDING_COOKIE_MAX_AGE")
    @classmethod
    def positive_seconds(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of seconds")
        return v

    @field_validator("AUDIT_ENABLED")
    @classmethod
    def normalize_audit_enabled(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return True

    @field_validator("DEFAULT_PLMN_MCC", "DEFAULT_PLMN_MNC")
    @classmethod
    def normalize_plmn_part(cls, v: str) -> str:
        v = (v or "").strip()
        if v and not v.isdigit():
            raise ValueError("PLMN parts must be numeric")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    @property
    def provider_configured(self) -> bool:
        return bool(self.PROVIDER_CLIENT_ID and self.PROVIDER_CLIENT_SECRET)

    @property
    def default_plmn(self) -> Optional[dict]:
        if self.DEFAULT_PLMN_MCC and self.DEFAULT_PLMN_MNC:
            return {"mcc": self.DEFAULT_PLMN_MCC, "mnc": self.DEFAULT_PLMN_MNC}
        return None

    @property
    def token_url(self) -> str:
        return self.PROVIDER_TOKEN_URL or f"{self.PROVIDER_BASE_URL}/oauth2/token"


settings = Settings()
