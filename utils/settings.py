"""
utils/settings.py
-----------------
Environment configuration.  ``load_settings()`` validates everything the
service needs up front and raises ``ConfigError`` listing every missing or
malformed variable, so a bad deployment fails at startup rather than on the
first ticket.

Tuning knobs that have safe defaults (rate limits, timeouts, slow-call
thresholds) stay as module constants read with ``_get_int``/``_get_float``
next to the code that uses them.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

load_dotenv()


class ConfigError(RuntimeError):
    """Invalid environment configuration."""


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default

def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _check_url(value: str, schemes: tuple[str, ...]) -> str:
    parsed = urlparse(value.strip())
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ValueError(f"must be a valid URL ({'/'.join(schemes)})")
    return value.strip().rstrip("/")


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    # Ticketing API (OAuth2 client credentials)
    ticketing_api_base_url: str = Field(alias="TICKETING_API_BASE_URL")
    ticketing_token_url: str = Field(alias="TICKETING_TOKEN_URL")
    ticketing_client_id: str = Field(alias="TICKETING_CLIENT_ID", min_length=1)
    ticketing_client_secret: SecretStr = Field(alias="TICKETING_CLIENT_SECRET")

    # Certificate storage
    supabase_url: str = Field(alias="SUPABASE_URL")
    supabase_service_key: SecretStr = Field(alias="SUPABASE_SERVICE_KEY")
    certificates_bucket: str = Field(default="certificates", alias="CERTIFICATES_BUCKET", min_length=1)

    # Processed-tickets store
    database_url: SecretStr = Field(alias="DATABASE_URL")
    db_pool_max: int = Field(default=10, alias="DB_POOL_MAX", ge=1)

    # LLM fallback
    ollama_host: str = Field(default="http://localhost:11434", alias="OLLAMA_HOST")
    extraction_model: str = Field(default="reg-mileage-extractor", alias="EXTRACTION_MODEL", min_length=1)

    # Poll-and-process
    poll_limit: int = Field(default=100, alias="POLL_LIMIT", ge=1, le=500)
    process_concurrency: int = Field(default=1, alias="PROCESS_CONCURRENCY", ge=1)

    @field_validator("ticketing_api_base_url", "ticketing_token_url", "supabase_url", "ollama_host")
    @classmethod
    def _http_url(cls, v: str) -> str:
        return _check_url(v, ("http", "https"))

    @field_validator("database_url")
    @classmethod
    def _postgres_dsn(cls, v: SecretStr) -> SecretStr:
        _check_url(v.get_secret_value(), ("postgres", "postgresql"))
        return v

    def public_view(self) -> Dict[str, Any]:
        """Non-secret settings for /health and startup logs."""
        return {
            "ticketing_api_base_url": self.ticketing_api_base_url,
            "supabase_url": self.supabase_url,
            "certificates_bucket": self.certificates_bucket,
            "db_pool_max": self.db_pool_max,
            "ollama_host": self.ollama_host,
            "extraction_model": self.extraction_model,
            "poll_limit": self.poll_limit,
            "process_concurrency": self.process_concurrency,
        }


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Validate ``env`` (defaults to ``os.environ``) into ``Settings``."""
    source = dict(os.environ if env is None else env)
    # Treat empty strings as unset so defaults and "missing" errors apply
    source = {k: v for k, v in source.items() if v != ""}
    try:
        return Settings.model_validate(source)
    except ValidationError as e:
        problems = []
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"]) or "?"
            problems.append(f"{field}: {err['msg']}")
        raise ConfigError("Invalid environment configuration:\n" + "\n".join(problems)) from e
