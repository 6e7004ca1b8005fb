"""Normalizer - turns httpx responses and requests into plain records.

The records carry joined header maps, raw header/cookie text and a
best-effort reconstruction of each request as it would appear on the wire.
The reconstruction is for display: header order and casing follow what
httpx holds, and the body is only shown when it can be re-read.
"""

from __future__ import annotations

import io
from typing import BinaryIO, Callable, Iterable

import httpx

from reqengine.models import NormalizedRequest, NormalizedResponse

DEFAULT_PROTO = "HTTP/1.1"


# =============================================================================
# Header and cookie helpers
# =============================================================================


def _header_items(headers: httpx.Headers) -> list[tuple[str, str]]:
    encoding = headers.encoding
    return [(key.decode(encoding), value.decode(encoding)) for key, value in headers.raw]


def group_headers(
    items: Iterable[tuple[str, str]],
    skip: frozenset[str] = frozenset(),
) -> dict[str, list[str]]:
    """Group values by case-insensitive name, keeping the first-seen casing."""
    grouped: dict[str, list[str]] = {}
    names: dict[str, str] = {}
    for name, value in items:
        lower = name.lower()
        if lower in skip:
            continue
        display = names.setdefault(lower, name)
        grouped.setdefault(display, []).append(value)
    return grouped


def join_headers(grouped: dict[str, list[str]]) -> dict[str, str]:
    return {name: ", ".join(values) for name, values in grouped.items()}


def raw_header_text(items: Iterable[tuple[str, str]]) -> str:
    """Name: value lines joined by CRLF, without a trailing CRLF."""
    return "\r\n".join(f"{name}: {value}" for name, value in items)


def response_cookies(headers: httpx.Headers) -> list[tuple[str, str]]:
    """(name, value) of every Set-Cookie header, in order. Attributes are dropped."""
    cookies = []
    for header in headers.get_list("set-cookie"):
        pair = header.split(";", 1)[0]
        name, sep, value = pair.partition("=")
        name = name.strip()
        if sep and name:
            cookies.append((name, value.strip().strip('"')))
    return cookies


def request_cookies(headers: httpx.Headers) -> list[tuple[str, str]]:
    """(name, value) pairs from the Cookie header(s), in order."""
    cookies = []
    for header in headers.get_list("cookie"):
        for pair in header.split(";"):
            name, sep, value = pair.strip().partition("=")
            if sep and name:
                cookies.append((name, value))
    return cookies


def raw_cookie_text(cookies: Iterable[tuple[str, str]]) -> str:
    return ";".join(f"{name}={value}" for name, value in cookies)


# =============================================================================
# Requests
# =============================================================================


def request_host(request: httpx.Request) -> str:
    """Host override if one was set, otherwise the URL host (with port)."""
    return request.headers.get("Host") or request.url.netloc.decode("ascii")


def request_body_reader(request: httpx.Request) -> Callable[[], BinaryIO] | None:
    """A callable returning a fresh stream over the request body.

    None when the body was streamed and never buffered, so it cannot be
    read a second time.
    """
    try:
        content = request.content
    except httpx.RequestNotRead:
        return None
    return lambda: io.BytesIO(content)


def request_body_text(request: httpx.Request) -> str:
    reader = request_body_reader(request)
    if reader is None:
        return ""
    with reader() as stream:
        return stream.read().decode("utf-8", errors="replace")


def raw_request(request: httpx.Request, proto: str = DEFAULT_PROTO) -> str:
    """Reconstruct the request as wire text.

    Request line, Host line, one line per header (first value only when a
    header repeats), blank line, then the body if it can be re-read.
    """
    target = request.url.raw_path.decode("ascii")
    lines = [f"{request.method} {target} {proto}\r\n", f"Host: {request_host(request)}\r\n"]
    grouped = group_headers(_header_items(request.headers), skip=frozenset({"host"}))
    for name, values in grouped.items():
        lines.append(f"{name}: {values[0]}\r\n")
    return "".join(lines) + "\r\n" + request_body_text(request)


def normalize_request(request: httpx.Request, proto: str = DEFAULT_PROTO) -> NormalizedRequest:
    items = [
        (name, value)
        for name, value in _header_items(request.headers)
        if name.lower() != "host"
    ]
    cookies = request_cookies(request.headers)
    return NormalizedRequest(
        method=request.method,
        url=str(request.url),
        scheme=request.url.scheme,
        proto=proto,
        host=request_host(request),
        body=request_body_text(request),
        headers=join_headers(group_headers(items)),
        raw_headers=raw_header_text(items),
        cookies=dict(cookies),
        raw_cookies=raw_cookie_text(cookies),
        raw=raw_request(request, proto),
    )


# =============================================================================
# Responses
# =============================================================================


def redirect_history(response: httpx.Response) -> list[httpx.Response]:
    """Responses that redirected to this one, oldest first. Excludes response itself."""
    return list(response.history)


def _response_body(response: httpx.Response) -> bytes:
    try:
        return response.content
    except httpx.ResponseNotRead:
        return b""


def normalize_response(response: httpx.Response, include_history: bool = True) -> NormalizedResponse:
    """Build the record for response.

    With include_history, each earlier hop is normalized too (hop records
    carry an empty history of their own).
    """
    body = _response_body(response)
    items = _header_items(response.headers)
    cookies = response_cookies(response.headers)
    proto = response.http_version or DEFAULT_PROTO

    history: list[NormalizedResponse] = []
    if include_history:
        history = [normalize_response(hop, include_history=False) for hop in redirect_history(response)]

    return NormalizedResponse(
        status_code=response.status_code,
        body=body,
        body_size=len(body),
        headers=join_headers(group_headers(items)),
        raw_headers=raw_header_text(items),
        cookies=dict(cookies),
        raw_cookies=raw_cookie_text(cookies),
        proto=proto,
        url=str(response.url),
        request=normalize_request(response.request, proto),
        history=history,
    )
