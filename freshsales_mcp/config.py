"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables (and a local .env file when present).

Two values are mandatory and have no defaults:
- FRESHSALES_API_KEY: the CRM API key. It doubles as the operator secret the
  OAuth signing key is derived from, unless MCP_OAUTH_SECRET is set.
- FRESHSALES_BASE_URL: the Freshsales domain the tools talk to.

If either is missing, constructing Settings raises a ValidationError and the
server refuses to start. There is no fallback signing secret.
"""

import re

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def normalize_base_url(value: str) -> str:
    """Trim, drop a trailing slash and default the scheme to https."""
    trimmed = value.strip().rstrip("/")
    if not trimmed:
        return ""
    if re.match(r"^https?://", trimmed, re.IGNORECASE):
        return trimmed
    return f"https://{trimmed}"


def ensure_api_base_path(value: str) -> str:
    """Append the Freshsales API path unless the URL already points at an API root."""
    if not value:
        return ""
    if re.search(r"/crm/sales/api$", value, re.IGNORECASE) or re.search(
        r"/api$", value, re.IGNORECASE
    ):
        return value
    return f"{value}/crm/sales/api"


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Server fields map to MCP_* variables (MCP_HOST, MCP_PORT, ...). The CRM
    fields keep the names the Freshsales tooling already uses
    (FRESHSALES_API_KEY, FRESHSALES_BASE_URL); they can also be passed to the
    constructor by field name, which is what the tests do.
    """

    # --- Server settings ---

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # Public base URL of this server, used as the OAuth issuer. When unset the
    # issuer is derived per request from the Host header.
    public_url: str | None = None

    # --- CRM backend ---

    crm_api_key: SecretStr = Field(
        validation_alias=AliasChoices("FRESHSALES_API_KEY", "crm_api_key"),
    )
    crm_base_url: str = Field(
        validation_alias=AliasChoices("FRESHSALES_BASE_URL", "crm_base_url"),
    )

    # --- OAuth ---

    # Optional dedicated operator secret. Rotating it invalidates every
    # outstanding code and access token without touching the CRM key.
    oauth_secret: SecretStr | None = None

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("crm_api_key")
    @classmethod
    def _require_api_key(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("FRESHSALES_API_KEY must not be empty")
        return value

    @field_validator("oauth_secret")
    @classmethod
    def _reject_blank_oauth_secret(cls, value: SecretStr | None) -> SecretStr | None:
        if value is not None and not value.get_secret_value().strip():
            raise ValueError("MCP_OAUTH_SECRET must not be blank when set")
        return value

    @field_validator("crm_base_url")
    @classmethod
    def _normalize_crm_base_url(cls, value: str) -> str:
        url = ensure_api_base_path(normalize_base_url(value))
        if not url:
            raise ValueError("FRESHSALES_BASE_URL must not be empty")
        return url

    @field_validator("public_url")
    @classmethod
    def _strip_public_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().rstrip("/") or None

    @property
    def signing_secret(self) -> str:
        """The operator secret the OAuth signing key is derived from."""
        if self.oauth_secret is not None:
            return self.oauth_secret.get_secret_value()
        return self.crm_api_key.get_secret_value()


def load_settings() -> Settings:
    """Read settings from the environment. Raises ValidationError if incomplete."""
    return Settings()
