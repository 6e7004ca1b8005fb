"""Data models for reqengine.

RequestOptions is the single typed configuration structure for one call; it
is validated once at the boundary (see options.py) so the rest of the engine
never probes loosely-typed mappings. The normalized records are Pydantic v2
models so they can be dumped to JSON for the CLI.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field, InstanceOf, field_validator

DEFAULT_TIMEOUT = 30.0


# =============================================================================
# Request-side models
# =============================================================================


@dataclass
class FileUpload:
    """One file attached to a request.

    content is a readable binary stream owned by the caller. The engine
    closes it once the request body has been built, whether or not that
    succeeded. field_name may be left empty; the body builder then names it
    "file" (single upload) or "file1", "file2", ... (several uploads).
    """

    file_name: str
    content: BinaryIO | None
    field_name: str = ""
    mime: str | None = None

    def close(self) -> None:
        if self.content is not None and not self.content.closed:
            self.content.close()


class RequestOptions(BaseModel):
    """Every recognized option for one call, with its default.

    Body modes are mutually exclusive and resolved in a fixed order:
    raw_data > json_body > xml > files > data > none. Empty strings count as
    absent for the string-valued modes.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    data: dict[str, str] | None = Field(default=None, description="Form fields")
    params: dict[str, str] = Field(default_factory=dict, description="Query-string additions")
    files: list[InstanceOf[FileUpload]] = Field(default_factory=list, description="Uploads, in order")
    json_body: str | None = Field(default=None, description="Pre-serialized JSON body")
    xml: str | None = Field(default=None, description="Pre-serialized XML body")
    raw_data: str | None = Field(default=None, description="Verbatim body, no content-type")
    raw_query: str | None = Field(default=None, description="Verbatim query string")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers")
    cookies: list[tuple[str, str]] = Field(default_factory=list, description="(name, value) pairs")
    insecure_skip_verify: bool = Field(default=False, description="Skip TLS certificate checks")
    disable_compression: bool = Field(default=False, description="Ask for identity encoding")
    disable_redirect: bool = Field(default=False, description="Return 3xx responses as-is")
    is_ajax: bool = Field(default=False, description="Send X-Requested-With")
    host: str | None = Field(default=None, description="Virtual host override")
    auth: tuple[str, str] | None = Field(default=None, description="Basic auth (user, password)")
    proxies: dict[str, str] = Field(default_factory=dict, description="Scheme -> proxy URL")
    timeout: float = Field(default=DEFAULT_TIMEOUT, description="Seconds; 0 disables")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v < 0:
            raise ValueError("timeout must not be negative")
        return v

    def close_files(self) -> None:
        """Close every upload stream. Safe to call more than once."""
        for upload in self.files:
            upload.close()


class BodyMode(str, Enum):
    """The one body-construction mode that applies to a request."""

    RAW = "raw"
    JSON = "json"
    XML = "xml"
    FILES = "files"
    FORM = "form"
    EMPTY = "empty"


@dataclass
class BuiltRequest:
    """A request ready to be decorated and sent.

    content is what gets sent; get_body() hands out a fresh stream over the
    same bytes so the body can be shown again without consuming anything.
    """

    method: str
    url: str
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    content: bytes | None = None
    body_mode: BodyMode = BodyMode.EMPTY

    @property
    def get_body(self) -> Callable[[], BinaryIO] | None:
        if self.content is None:
            return None
        content = self.content
        return lambda: io.BytesIO(content)


# =============================================================================
# Normalized records
# =============================================================================


class NormalizedRequest(BaseModel):
    """A captured request, including a best-effort wire-format rendering."""

    model_config = ConfigDict(extra="forbid")

    method: str = Field(description="HTTP method")
    url: str = Field(description="Absolute URL")
    scheme: str = Field(description="URL scheme")
    proto: str = Field(default="HTTP/1.1", description="Protocol string")
    host: str = Field(description="Host override if given, else URL host")
    body: str = Field(default="", description="Body text, empty if not re-readable")
    headers: dict[str, str] = Field(default_factory=dict, description="Joined header values")
    raw_headers: str = Field(default="", description="Name: value lines")
    cookies: dict[str, str] = Field(default_factory=dict, description="Cookie name -> value")
    raw_cookies: str = Field(default="", description="name=value;... text")
    raw: str = Field(default="", description="Reconstructed request text")


class NormalizedResponse(BaseModel):
    """A response plus the request that produced it and the redirect hops before it."""

    model_config = ConfigDict(extra="forbid", ser_json_bytes="base64")

    status_code: int = Field(description="HTTP status code")
    body: bytes = Field(default=b"", description="Decoded response body")
    body_size: int = Field(default=0, description="len(body)")
    headers: dict[str, str] = Field(default_factory=dict, description="Joined header values")
    raw_headers: str = Field(default="", description="Name: value lines")
    cookies: dict[str, str] = Field(default_factory=dict, description="Set-Cookie name -> value")
    raw_cookies: str = Field(default="", description="name=value;... text")
    proto: str = Field(default="HTTP/1.1", description="Protocol string")
    url: str = Field(description="Final URL")
    request: NormalizedRequest = Field(description="The request that produced this response")
    history: list[NormalizedResponse] = Field(
        default_factory=list, description="Earlier redirect hops, oldest first"
    )

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def summary(self) -> dict[str, Any]:
        """Short view used by the CLI and debug logs."""
        return {
            "status_code": self.status_code,
            "url": self.url,
            "body_size": self.body_size,
            "hops": len(self.history),
        }
