"""Client orchestrator - builds the per-call client, sends, normalizes.

Each call gets its own httpx.Client: a one-shot cookie jar, the engine
transport (see transport.py) and the redirect policy the options ask for.
The client is closed when the call ends, which closes the transport and
releases its idle connections. A transport injected into Engine is left
open for the caller to reuse and close.

Usage:
    with Engine() as engine:
        response = engine.execute("GET", "https://example.com", RequestOptions())

    future = engine.submit("POST", url, options)   # exactly one result or error
"""

from __future__ import annotations

import functools
import http.cookiejar
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

import httpx

from reqengine.body import build_request
from reqengine.decorate import add_cookie, decorate_request
from reqengine.dialer import Resolver
from reqengine.errors import TransportError
from reqengine.models import BuiltRequest, NormalizedResponse, RequestOptions
from reqengine.normalize import normalize_response, request_cookies
from reqengine.transport import MAX_REDIRECTS, build_transport, client_default_headers

LOGGER = logging.getLogger(__name__)


def build_cookie_jar() -> http.cookiejar.CookieJar:
    """A fresh jar for one call.

    DefaultCookiePolicy refuses cookies whose domain is a bare public
    suffix (".com", ".co.uk") or does not domain-match the request host.
    """
    return http.cookiejar.CookieJar(policy=http.cookiejar.DefaultCookiePolicy())


def _same_site(host: str, origin_host: str) -> bool:
    return host == origin_host or host.endswith("." + origin_host)


def cookie_forwarder(options: RequestOptions, origin_host: str) -> Callable[[httpx.Request], None]:
    """Request hook that carries caller cookies across redirects.

    httpx drops the Cookie header on redirect and rebuilds it from the jar.
    Caller cookies are re-added on hops to the same host or a subdomain,
    unless the jar already supplies a cookie with that name.
    """

    def forward(request: httpx.Request) -> None:
        if not options.cookies or not _same_site(request.url.host, origin_host):
            return
        present = {name for name, _ in request_cookies(request.headers)}
        carrier = BuiltRequest(method=request.method, url=str(request.url), headers=request.headers)
        for name, value in options.cookies:
            if name not in present:
                add_cookie(carrier, name, value)

    return forward


def _log_hop(response: httpx.Response) -> None:
    LOGGER.debug(
        "hop %s %s -> %s",
        response.request.method,
        response.request.url,
        response.status_code,
    )


def build_client(
    options: RequestOptions,
    resolver: Resolver | None = None,
    transport: httpx.BaseTransport | None = None,
    deadline: float | None = None,
    origin_host: str = "",
) -> httpx.Client:
    """Build the one-shot client for a call.

    Args:
        options: Call options.
        resolver: Resolver shared by the caller, or None for system DNS.
        transport: Transport override (tests inject httpx.MockTransport).
        deadline: time.monotonic() value bounding the whole call.
        origin_host: Host of the first request, for cookie forwarding.
    """
    if transport is None:
        transport = build_transport(options, resolver=resolver, deadline=deadline)

    return httpx.Client(
        transport=transport,
        cookies=build_cookie_jar(),
        headers=client_default_headers(options),
        timeout=httpx.Timeout(options.timeout or None),
        follow_redirects=not options.disable_redirect,
        max_redirects=MAX_REDIRECTS,
        trust_env=False,
        event_hooks={
            "request": [cookie_forwarder(options, origin_host)],
            "response": [_log_hop],
        },
    )


def send(client: httpx.Client, built: BuiltRequest) -> httpx.Response:
    """Execute one logical call (possibly several redirect round trips).

    Raises:
        TransportError: On DNS, connect, TLS, timeout, protocol or redirect
            limit failures. history holds the hops that completed first.
    """
    hops: list[httpx.Response] = []
    hooks = client.event_hooks
    hooks["response"] = [*hooks.get("response", []), hops.append]
    client.event_hooks = hooks

    request = client.build_request(built.method, built.url, headers=built.headers, content=built.content)
    try:
        return client.send(request)
    except httpx.HTTPError as e:
        history = [normalize_response(hop, include_history=False) for hop in hops]
        raise TransportError(f"{built.method} {built.url} failed: {e}", history=history) from e


class Engine:
    """Executes requests; optionally on worker threads.

    Args:
        resolver: Resolver used for every call (must be safe for concurrent
            lookups when submit() is used).
        transport: Transport override used instead of the per-call engine
            transport. It is shared by every call and never closed by the
            engine; the caller closes it.
        max_workers: Worker threads for submit().
    """

    def __init__(
        self,
        resolver: Resolver | None = None,
        transport: httpx.BaseTransport | None = None,
        max_workers: int = 4,
    ) -> None:
        self._resolver = resolver
        self._transport = transport
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        """Wait for submitted calls and stop the worker threads."""
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def execute(self, method: str, url: str, options: RequestOptions | None = None) -> NormalizedResponse:
        """Run one call and return the normalized response.

        Raises:
            OptionParseError: If the URL is malformed.
            BodyEncodingError: If the body cannot be built.
            TransportError: If the request fails on the wire.
        """
        options = options or RequestOptions()
        try:
            built = decorate_request(build_request(method, url, options), options)
        finally:
            options.close_files()

        deadline = time.monotonic() + options.timeout if options.timeout > 0 else None
        LOGGER.debug("%s %s (body=%s, timeout=%s)", built.method, built.url, built.body_mode.value, options.timeout)

        client = build_client(
            options,
            resolver=self._resolver,
            transport=self._transport,
            deadline=deadline,
            origin_host=httpx.URL(built.url).host,
        )
        try:
            response = send(client, built)
            result = normalize_response(response)
        finally:
            # Closing the client closes its transport; an injected one is the caller's.
            if self._transport is None:
                client.close()

        LOGGER.debug("%s %s done: %s", built.method, built.url, result.summary())
        return result

    def submit(self, method: str, url: str, options: RequestOptions | None = None) -> Future[NormalizedResponse]:
        """Run execute() on a worker thread.

        The future resolves with exactly one value or one exception.
        """
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="reqengine")
        return self._pool.submit(self.execute, method, url, options)


def execute(
    method: str,
    url: str,
    options: RequestOptions | None = None,
    *,
    resolver: Resolver | None = None,
) -> NormalizedResponse:
    """Run one call with a throwaway Engine."""
    with Engine(resolver=resolver) as engine:
        return engine.execute(method, url, options)


get = functools.partial(execute, "GET")
post = functools.partial(execute, "POST")
put = functools.partial(execute, "PUT")
patch = functools.partial(execute, "PATCH")
delete = functools.partial(execute, "DELETE")
head = functools.partial(execute, "HEAD")
options = functools.partial(execute, "OPTIONS")
