"""Options loader - validates option mappings and YAML option files.

A loosely-typed mapping (from a script, a YAML file or the CLI) is checked
once here and turned into RequestOptions; nothing downstream looks at the
raw mapping again. Upload paths are opened here, so the resulting options
own open streams until the body builder closes them.

Recognized keys:
    data, params, files, json, xml, raw_data, raw_query, headers, cookies,
    proxies, timeout, verify, compress, redirect, host, auth, ajax
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from reqengine.errors import OptionParseError
from reqengine.models import DEFAULT_TIMEOUT, FileUpload, RequestOptions
from reqengine.transport import SUPPORTED_PROXY_SCHEMES


class FileSpec(BaseModel):
    """One upload entry in list form: {field, path, mime}."""

    model_config = ConfigDict(extra="forbid")

    field: str = ""
    path: str
    mime: str | None = None


class OptionMapping(BaseModel):
    """Shape of the option mapping before it becomes RequestOptions."""

    model_config = ConfigDict(extra="forbid")

    data: dict[str, str] | None = None
    params: dict[str, str] = Field(default_factory=dict)
    files: dict[str, str] | list[FileSpec] = Field(default_factory=dict)
    json_: str | None = Field(default=None, alias="json")
    xml: str | None = None
    raw_data: str | None = None
    raw_query: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    cookies: dict[str, str] = Field(default_factory=dict)
    proxies: dict[str, str] = Field(default_factory=dict)
    timeout: float = DEFAULT_TIMEOUT
    verify: bool = True
    compress: bool = True
    redirect: bool = True
    host: str | None = None
    auth: list[str] | None = None
    ajax: bool = False

    @field_validator("auth")
    @classmethod
    def validate_auth(cls, v: list[str] | None) -> list[str] | None:
        if v is not None and len(v) != 2:
            raise ValueError("auth must be [username, password]")
        return v

    @field_validator("proxies")
    @classmethod
    def validate_proxies(cls, v: dict[str, str]) -> dict[str, str]:
        for scheme, proxy in v.items():
            check_proxy_url(scheme, proxy)
        return v


def check_proxy_url(scheme: str, proxy: str) -> None:
    """Raise ValueError unless proxy is an absolute http(s) URL with a host."""
    try:
        url = httpx.URL(proxy)
    except httpx.InvalidURL as e:
        raise ValueError(f"invalid proxy URL for {scheme!r}: {e}") from e
    if url.scheme not in SUPPORTED_PROXY_SCHEMES or not url.host:
        raise ValueError(f"invalid proxy URL for {scheme!r}: {proxy!r}")


def _file_specs(files: dict[str, str] | list[FileSpec]) -> list[FileSpec]:
    if isinstance(files, dict):
        return [FileSpec(field=field, path=path) for field, path in files.items()]
    return list(files)


def open_uploads(files: dict[str, str] | list[FileSpec]) -> list[FileUpload]:
    """Open every upload path. On failure the ones already opened are closed."""
    uploads: list[FileUpload] = []
    for spec in _file_specs(files):
        try:
            stream = open(spec.path, "rb")
        except OSError as e:
            for upload in uploads:
                upload.close()
            raise OptionParseError(f"cannot open upload {spec.path!r}: {e}") from e
        uploads.append(
            FileUpload(
                file_name=os.path.basename(spec.path),
                content=stream,
                field_name=spec.field,
                mime=spec.mime,
            )
        )
    return uploads


def parse_options(raw: Mapping[str, Any] | None = None) -> RequestOptions:
    """Validate an option mapping and build RequestOptions.

    Raises:
        OptionParseError: On unknown keys, wrong value types, bad proxy URLs
            or unreadable upload paths.
    """
    if raw is None:
        return RequestOptions()
    if not isinstance(raw, Mapping):
        raise OptionParseError(f"options must be a mapping, got {type(raw).__name__}")

    try:
        mapping = OptionMapping.model_validate(dict(raw))
    except ValidationError as e:
        raise OptionParseError(f"Invalid options: {e}") from e

    uploads = open_uploads(mapping.files)
    try:
        return RequestOptions(
            data=mapping.data,
            params=mapping.params,
            files=uploads,
            json_body=mapping.json_,
            xml=mapping.xml,
            raw_data=mapping.raw_data,
            raw_query=mapping.raw_query,
            headers=mapping.headers,
            cookies=list(mapping.cookies.items()),
            insecure_skip_verify=not mapping.verify,
            disable_compression=not mapping.compress,
            disable_redirect=not mapping.redirect,
            is_ajax=mapping.ajax,
            host=mapping.host,
            auth=tuple(mapping.auth) if mapping.auth is not None else None,
            proxies=mapping.proxies,
            timeout=mapping.timeout,
        )
    except ValidationError as e:
        for upload in uploads:
            upload.close()
        raise OptionParseError(f"Invalid options: {e}") from e


def read_options_file(path: Path) -> dict[str, Any]:
    """Read a YAML option mapping with ${ENV_VAR} substitution, unvalidated."""
    if not path.exists():
        raise OptionParseError(f"Options file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise OptionParseError(f"Invalid YAML in options file: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise OptionParseError("Options file must be a YAML mapping")

    return _substitute_env_vars(raw)


def load_options(path: Path) -> RequestOptions:
    """Load RequestOptions from a YAML option file."""
    return parse_options(read_options_file(path))


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises OptionParseError if a variable is unset."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise OptionParseError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_PATTERN.sub(replacer, s)
