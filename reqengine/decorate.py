"""Request decorator - headers, cookies, host override and basic auth."""

from __future__ import annotations

import httpx

from reqengine.models import BuiltRequest, RequestOptions

# Marks every request as engine-originated. Caller headers may override it.
DIAGNOSTIC_HEADER = ("X-Scanner", "ZERO")
AJAX_HEADER = ("X-Requested-With", "XMLHttpRequest")


def basic_auth_header(username: str, password: str) -> str:
    """Authorization value httpx.BasicAuth would send for these credentials."""
    carrier = httpx.Request("GET", "http://localhost/")
    authed = next(httpx.BasicAuth(username, password).auth_flow(carrier))
    return authed.headers["Authorization"]


def add_cookie(built: BuiltRequest, name: str, value: str) -> None:
    """Append name=value to the Cookie header. Duplicates are kept."""
    pair = f"{name}={value}"
    existing = built.headers.get("Cookie")
    built.headers["Cookie"] = f"{existing}; {pair}" if existing else pair


def decorate_request(built: BuiltRequest, options: RequestOptions) -> BuiltRequest:
    """Apply headers, ajax marker, host override, cookies, then basic auth.

    Mutates and returns built. Basic auth goes last so an Authorization
    header in options.headers is replaced by the auth option.
    """
    name, value = DIAGNOSTIC_HEADER
    built.headers[name] = value

    for key, header_value in options.headers.items():
        built.headers[key] = header_value

    if options.is_ajax:
        name, value = AJAX_HEADER
        built.headers[name] = value

    if options.host:
        built.headers["Host"] = options.host

    for cookie_name, cookie_value in options.cookies:
        add_cookie(built, cookie_name, cookie_value)

    if options.auth is not None:
        built.headers["Authorization"] = basic_auth_header(*options.auth)

    return built
