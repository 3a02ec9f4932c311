"""Client configuration models.

Pydantic v2 models describe every tunable of the client. ``ClientSettings`` is a
``pydantic_settings.BaseSettings`` so deployments can override any field via
``REQFLOW_*`` environment variables (nested fields use ``__``, for example
``REQFLOW_TLS__VERIFY=false``). Per-request overrides travel on the request as
:class:`RequestOptions` and are merged by :meth:`ClientSettings.resolve`.
"""

from __future__ import annotations

import codecs
import hashlib
import json
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ReqFlow import policy

__all__ = [
    "TlsSettings",
    "RequestOptions",
    "ResolvedOptions",
    "ClientSettings",
]


class TlsSettings(BaseModel):
    """TLS trust configuration."""

    model_config = ConfigDict(frozen=True)

    verify: bool = Field(default=True, description="Verify server certificates")
    ca_bundle: Optional[Path] = Field(
        default=None,
        description="PEM bundle used instead of the certifi store",
    )

    @field_validator("ca_bundle", mode="before")
    @classmethod
    def _expand_bundle(cls, value):
        if value in (None, ""):
            return None
        return Path(value).expanduser()


class RequestOptions(BaseModel):
    """Per-request overrides of client settings; ``None`` means inherit."""

    model_config = ConfigDict(frozen=True)

    max_redirects: Optional[int] = Field(default=None, ge=0, le=policy.MAX_REDIRECTS_LIMIT)
    follow_redirects: Optional[bool] = None
    connect_timeout: Optional[float] = Field(default=None, gt=0.0)
    request_timeout: Optional[float] = Field(default=None, gt=0.0)


class ResolvedOptions(BaseModel):
    """Effective settings for one ``execute`` call."""

    model_config = ConfigDict(frozen=True)

    max_redirects: int
    follow_redirects: bool
    connect_timeout: float
    request_timeout: Optional[float]


class ClientSettings(BaseSettings):
    """Settings for :class:`ReqFlow.network.client.Client`."""

    model_config = SettingsConfigDict(
        env_prefix="REQFLOW_",
        env_nested_delimiter="__",
        frozen=True,
        extra="ignore",
    )

    max_redirects: int = Field(
        default=policy.MAX_REDIRECTS,
        ge=0,
        le=policy.MAX_REDIRECTS_LIMIT,
        description="Maximum redirect hops followed per request",
    )
    follow_redirects: bool = Field(default=policy.FOLLOW_REDIRECTS)
    connect_timeout: float = Field(
        default=policy.HTTP_CONNECT_TIMEOUT,
        gt=0.0,
        le=300.0,
        description="Connect timeout in seconds",
    )
    request_timeout: Optional[float] = Field(
        default=policy.HTTP_REQUEST_TIMEOUT,
        gt=0.0,
        description="Deadline for a whole execute call in seconds (None disables)",
    )
    read_timeout: float = Field(default=policy.HTTP_READ_TIMEOUT, gt=0.0, le=3600.0)
    write_timeout: float = Field(default=policy.HTTP_WRITE_TIMEOUT, gt=0.0, le=3600.0)
    pool_timeout: float = Field(default=policy.HTTP_POOL_TIMEOUT, gt=0.0, le=300.0)

    http2: bool = Field(default=policy.HTTP2_ENABLED, description="Enable HTTP/2 support")
    max_connections: int = Field(default=policy.MAX_CONNECTIONS, ge=1, le=4096)
    max_keepalive_connections: int = Field(
        default=policy.MAX_KEEPALIVE_CONNECTIONS, ge=0, le=4096
    )
    keepalive_expiry: float = Field(default=policy.KEEPALIVE_EXPIRY, ge=0.0, le=600.0)

    user_agent: str = Field(default=policy.USER_AGENT, min_length=1)
    default_headers: Dict[str, str] = Field(default_factory=dict)
    decompress: bool = Field(
        default=True,
        description="Advertise Accept-Encoding and decode compressed bodies",
    )
    default_charset: str = Field(default=policy.DEFAULT_CHARSET)
    max_body_bytes: int = Field(default=policy.MAX_BODY_BYTES, ge=0)
    carry_extensions: bool = Field(
        default=True,
        description="Propagate request extensions onto the response",
    )
    strip_sensitive_headers: bool = Field(
        default=True,
        description="Drop credentials when a redirect leaves the original origin",
    )
    tls: TlsSettings = Field(default_factory=TlsSettings)

    @field_validator("default_charset")
    @classmethod
    def _validate_charset(cls, value: str) -> str:
        try:
            codecs.lookup(value)
        except LookupError as exc:
            raise ValueError(f"Unknown charset {value!r}") from exc
        return value.lower()

    def resolve(self, options: Optional[RequestOptions] = None) -> ResolvedOptions:
        """Merge per-request overrides onto these settings."""
        options = options or RequestOptions()
        return ResolvedOptions(
            max_redirects=(
                self.max_redirects if options.max_redirects is None else options.max_redirects
            ),
            follow_redirects=(
                self.follow_redirects
                if options.follow_redirects is None
                else options.follow_redirects
            ),
            connect_timeout=options.connect_timeout or self.connect_timeout,
            request_timeout=options.request_timeout or self.request_timeout,
        )

    def config_hash(self) -> str:
        """Return a stable digest of these settings."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
