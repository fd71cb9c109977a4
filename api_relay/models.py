"""Internal data models for api-relay.

All models use Pydantic v2. Descriptor models arrive from the host as plain
JSON-serializable dicts and are validated strictly; secure-config models are
read from disk and tolerate unknown keys.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


DEFAULT_BASE_URL = "https://api.openai.com/v1"


# =============================================================================
# Request Models
# =============================================================================


class ProxyConfig(BaseModel):
    """Forward proxy URLs for one call. Empty strings mean "no proxy"."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    http_proxy: str | None = Field(default=None, description="Proxy for http:// targets")
    https_proxy: str | None = Field(default=None, description="Proxy for https:// targets")

    @field_validator("http_proxy", "https_proxy")
    @classmethod
    def empty_is_absent(cls, v: str | None) -> str | None:
        if v is not None and v == "":
            return None
        return v

    @property
    def is_empty(self) -> bool:
        return self.http_proxy is None and self.https_proxy is None


class RequestDescriptor(BaseModel):
    """One JSON API call to execute.

    ``body`` is any JSON value; ``None`` means no body is sent. Optional
    collections stay ``None`` when the host omits them.
    """

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(description="API base URL, e.g. https://api.openai.com/v1")
    api_key: str = Field(description="Bearer token")
    method: str = Field(description="HTTP method (case-insensitive)")
    path: str = Field(description="Path joined onto base_url, e.g. /chat/completions")
    body: Any = Field(default=None, description="JSON body (None = no body)")
    additional_headers: dict[str, str] | None = Field(
        default=None, description="Extra headers applied after Authorization"
    )
    proxy_config: ProxyConfig | None = Field(default=None, description="Forward proxies")


class FileUploadDescriptor(BaseModel):
    """One multipart upload to ``<base_url>/files``."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(description="API base URL")
    api_key: str = Field(description="Bearer token")
    file_data: str = Field(description="Base64-encoded file bytes")
    file_name: str = Field(description="File name declared in the multipart part")
    purpose: str = Field(description="Upload purpose, e.g. 'assistants'")
    additional_headers: dict[str, str] | None = Field(
        default=None, description="Extra headers applied after Authorization"
    )
    proxy_config: ProxyConfig | None = Field(default=None, description="Forward proxies")


class ResponseEnvelope(BaseModel):
    """Normalized response returned to the host.

    Header keys are lowercase. Only complete responses are ever wrapped.
    """

    model_config = ConfigDict(extra="forbid")

    status: int = Field(description="HTTP status code")
    body: str = Field(description="Response body as text")
    headers: dict[str, str] = Field(
        default_factory=dict, description="Response headers (lowercase keys)"
    )


# =============================================================================
# Secure Config Models
# =============================================================================


class _SecureModel(BaseModel):
    """Base for on-disk secure config: camelCase keys, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class SecureOrgWhitelistEntry(_SecureModel):
    id: str | None = None
    org_id: str
    org_name: str
    added_at: str | None = None
    added_by: str | None = None
    notes: str | None = None


class SecureFeatureRestrictions(_SecureModel):
    allow_web_search: bool | None = None
    allow_vector_store: bool | None = None
    allow_file_upload: bool | None = None
    allow_chat_file_attachment: bool | None = None


class SecureConfig(_SecureModel):
    """Administrator-managed configuration shipped as ``config.pkg``."""

    version: int | None = None
    org_whitelist: list[SecureOrgWhitelistEntry] = Field(default_factory=list)
    admin_password_hash: str | None = None
    features: SecureFeatureRestrictions | None = None
    signature: str | None = None


class SecureConfigResult(_SecureModel):
    """Located secure config plus the path it was read from (both optional)."""

    config: SecureConfig | None = None
    path: str | None = None


# =============================================================================
# Host Settings Models
# =============================================================================


class RelaySettings(BaseModel):
    """Settings file for the command-line host (YAML)."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(default=DEFAULT_BASE_URL, description="API base URL")
    api_key: str | None = Field(
        default=None, description="Bearer token (supports ${ENV_VAR} substitution)"
    )
    additional_headers: dict[str, str] | None = Field(
        default=None, description="Headers sent with every call"
    )
    proxy: ProxyConfig | None = Field(default=None, description="Forward proxies")
    log_level: str = Field(default="INFO", description="Logging level name")
    log_file: str | None = Field(default=None, description="Optional log file path")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level '{v}'")
        return level
