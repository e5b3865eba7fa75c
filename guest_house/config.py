from typing import Annotated, Optional
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # public origin of this app; provider and email callbacks point here
    APP_BASE_URL: str = "http://localhost:3000"

    # verification provider (tru.ID)
    TRU_CLIENT_ID: str = ""
    TRU_CLIENT_SECRET: str = ""
    TRU_DATA_RESIDENCY: str = "eu"
    TRU_API_BASE_URL: Optional[str] = None
    TRU_SCOPES: Annotated[list[str], NoDecode] = ["phone_check", "subscriber_check", "sim_check", "coverage"]
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # browser cookie session; auth sessions live as long as the cookie
    SESSION_SECRET: str = "changeme"
    SESSION_COOKIE_NAME: str = "tid_gs"
    SESSION_MAX_AGE_SECONDS: int = 300

    # honour X-Forwarded-For for the caller IP (app runs behind a proxy/tunnel)
    TRUST_PROXY: bool = True

    ENVIRONMENT: str = "development"
    LOG_LEVEL: Optional[str] = None

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    @field_validator("APP_BASE_URL")
    @classmethod
    def normalize_base_url(cls, v: str) -> str:
        """
        APP_BASE_URL must be an absolute http(s) URL reachable by the phone.

        Normalization:
          - strip whitespace and trailing slash
          - require http/https and a hostname
          - lowercase hostname, keep port and path
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("APP_BASE_URL must start with http:// or https://")

        if not p.hostname:
            raise ValueError("APP_BASE_URL must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, p.path.rstrip("/"), "", "", ""))

    @field_validator("TRU_API_BASE_URL")
    @classmethod
    def normalize_api_base_url(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip().rstrip("/")
        return v or None

    @field_validator("TRU_DATA_RESIDENCY")
    @classmethod
    def normalize_residency(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not v.isalnum():
            raise ValueError("TRU_DATA_RESIDENCY must be a bare region code such as 'eu' or 'in'")
        return v

    @field_validator("TRU_SCOPES", mode="before")
    @classmethod
    def normalize_scopes(cls, v):
        # accept TRU_SCOPES="coverage,subscriber_check" from env
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            return parts or ["phone_check", "subscriber_check", "sim_check", "coverage"]
        return v

    @field_validator("SESSION_MAX_AGE_SECONDS")
    @classmethod
    def positive_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("SESSION_MAX_AGE_SECONDS must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "production"

    @property
    def log_level(self) -> str:
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.strip().upper()
        return "INFO" if self.is_production else "DEBUG"
