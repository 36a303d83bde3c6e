"""Configuration models for http-tester.

All models use Pydantic v2.
"""

from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TesterConfig(BaseModel):
    """Where and how requests are sent.

    ``base_url`` is prefixed verbatim to every request path. ``headers``
    are applied to every builder an HttpTester creates.
    """

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(description="Base URL prefixed to request paths")
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Default request headers (supports ${ENV_VAR} substitution)",
    )
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")
    follow_redirects: bool = Field(default=True, description="Follow redirects by default")

    # TLS
    verify_ssl: bool = Field(default=True, description="Verify server certificates")
    ca_bundle: str | None = Field(default=None, description="Path to CA bundle for verification")
    cert: str | None = Field(default=None, description="Client certificate path (mTLS)")
    key: str | None = Field(default=None, description="Client private key path (mTLS)")
    key_password: str | None = Field(default=None, description="Password for the client key")
    ciphers: str | None = Field(default=None, description="OpenSSL cipher string")

    @model_validator(mode="after")
    def check_client_cert(self) -> Self:
        if (self.cert is None) != (self.key is None):
            raise ValueError("cert and key must be given together")
        if self.key_password is not None and self.key is None:
            raise ValueError("key_password requires key")
        return self
