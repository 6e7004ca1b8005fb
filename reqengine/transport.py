"""Transport builder - connection pools, proxy selection, TLS and deadlines.

EngineTransport is an httpx transport that owns one httpcore pool per proxy
it has been asked to use (plus the direct pool), all dialing through the
same ResolvingBackend. The proxy for each request is picked per URL by
select_proxy, the way a proxy-selection callback works: per-scheme proxies
first, otherwise whatever the environment says.

The transport is built fresh for every call and closed when the call ends;
close() shuts every pool down, which releases idle connections explicitly.
"""

from __future__ import annotations

import contextlib
import ipaddress
import ssl
import threading
import time
import urllib.request
from typing import Iterable, Iterator, Mapping

import httpcore
import httpx

from reqengine.dialer import Resolver, ResolvingBackend
from reqengine.models import RequestOptions

MAX_IDLE_CONNECTIONS = 100
IDLE_CONNECTION_TIMEOUT = 90.0
MAX_REDIRECTS = 10

SUPPORTED_PROXY_SCHEMES = ("http", "https")

# Most specific first: the first isinstance match wins.
_HTTPCORE_EXC_MAP: list[tuple[type[Exception], type[httpx.HTTPError]]] = [
    (httpcore.ConnectTimeout, httpx.ConnectTimeout),
    (httpcore.ReadTimeout, httpx.ReadTimeout),
    (httpcore.WriteTimeout, httpx.WriteTimeout),
    (httpcore.PoolTimeout, httpx.PoolTimeout),
    (httpcore.TimeoutException, httpx.TimeoutException),
    (httpcore.ConnectError, httpx.ConnectError),
    (httpcore.ReadError, httpx.ReadError),
    (httpcore.WriteError, httpx.WriteError),
    (httpcore.NetworkError, httpx.NetworkError),
    (httpcore.ProxyError, httpx.ProxyError),
    (httpcore.UnsupportedProtocol, httpx.UnsupportedProtocol),
    (httpcore.LocalProtocolError, httpx.LocalProtocolError),
    (httpcore.RemoteProtocolError, httpx.RemoteProtocolError),
    (httpcore.ProtocolError, httpx.ProtocolError),
]


@contextlib.contextmanager
def _map_httpcore_exceptions(request: httpx.Request) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        for from_exc, to_exc in _HTTPCORE_EXC_MAP:
            if isinstance(exc, from_exc):
                raise to_exc(str(exc), request=request) from exc
        raise


# =============================================================================
# Proxy selection
# =============================================================================


def _is_loopback(host: str) -> bool:
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def environment_proxy(url: httpx.URL) -> httpx.URL | None:
    """Proxy from http_proxy/https_proxy/all_proxy, honoring no_proxy.

    Loopback hosts never go through an environment proxy.
    """
    if _is_loopback(url.host):
        return None

    env = urllib.request.getproxies()
    proxy = env.get(url.scheme) or env.get("all")
    if not proxy:
        return None
    if urllib.request.proxy_bypass(url.host):
        return None
    if "://" not in proxy:
        proxy = f"http://{proxy}"
    return httpx.URL(proxy)


def select_proxy(proxies: Mapping[str, httpx.URL], url: httpx.URL) -> httpx.URL | None:
    """Pick the proxy for url.

    A proxy registered for the URL scheme wins. Without one - including the
    case where proxies were given for other schemes only - the environment
    default applies; a non-matching proxy map never means "no proxy".
    """
    if proxies and url.scheme in proxies:
        return proxies[url.scheme]
    return environment_proxy(url)


# =============================================================================
# TLS and headers
# =============================================================================


def build_ssl_context(insecure_skip_verify: bool) -> ssl.SSLContext:
    return httpx.create_ssl_context(verify=not insecure_skip_verify)


def client_default_headers(options: RequestOptions) -> dict[str, str]:
    """Client-wide headers implied by transport options.

    With compression disabled the client asks for identity encoding instead
    of advertising gzip/deflate. Caller headers still override this.
    """
    if options.disable_compression:
        return {"Accept-Encoding": "identity"}
    return {}


# =============================================================================
# Transport
# =============================================================================


class _DeadlineResponseStream(httpx.SyncByteStream):
    """Response body stream that maps httpcore errors and enforces the total deadline."""

    def __init__(self, stream: Iterable[bytes], request: httpx.Request, deadline: float | None) -> None:
        self._stream = stream
        self._request = request
        self._deadline = deadline

    def __iter__(self) -> Iterator[bytes]:
        with _map_httpcore_exceptions(self._request):
            for chunk in self._stream:
                if self._deadline is not None and time.monotonic() > self._deadline:
                    raise httpx.ReadTimeout("client timeout exceeded while reading body", request=self._request)
                yield chunk

    def close(self) -> None:
        if hasattr(self._stream, "close"):
            self._stream.close()


class EngineTransport(httpx.BaseTransport):
    """httpx transport with per-URL proxy selection over httpcore pools.

    Args:
        proxies: Scheme -> proxy URL.
        ssl_context: Context used for origin connections (and HTTPS proxies).
        backend: Network backend every pool dials through.
        deadline: time.monotonic() value after which the whole call, across
            every redirect hop and body read, must fail with a timeout.
    """

    def __init__(
        self,
        proxies: Mapping[str, httpx.URL],
        ssl_context: ssl.SSLContext,
        backend: httpcore.NetworkBackend,
        deadline: float | None = None,
    ) -> None:
        self._proxies = dict(proxies)
        self._ssl_context = ssl_context
        self._backend = backend
        self._deadline = deadline
        self._pools: dict[str, httpcore.ConnectionPool | httpcore.HTTPProxy] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> EngineTransport:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def pool_count(self) -> int:
        return len(self._pools)

    def _new_pool(self, proxy: httpx.URL | None) -> httpcore.ConnectionPool | httpcore.HTTPProxy:
        pool_kwargs = {
            "ssl_context": self._ssl_context,
            "max_connections": None,
            "max_keepalive_connections": MAX_IDLE_CONNECTIONS,
            "keepalive_expiry": IDLE_CONNECTION_TIMEOUT,
            "http1": True,
            "http2": False,
            "network_backend": self._backend,
        }
        if proxy is None:
            return httpcore.ConnectionPool(**pool_kwargs)

        if proxy.scheme not in SUPPORTED_PROXY_SCHEMES:
            raise httpcore.ProxyError(f"unsupported proxy scheme {proxy.scheme!r}")

        proxy_auth = None
        if proxy.username or proxy.password:
            proxy_auth = (proxy.username, proxy.password)
        return httpcore.HTTPProxy(
            proxy_url=httpcore.URL(
                scheme=proxy.raw_scheme,
                host=proxy.raw_host,
                port=proxy.port,
                target=proxy.raw_path,
            ),
            proxy_auth=proxy_auth,
            **pool_kwargs,
        )

    def _pool_for(self, url: httpx.URL) -> httpcore.ConnectionPool | httpcore.HTTPProxy:
        proxy = select_proxy(self._proxies, url)
        key = str(proxy) if proxy is not None else ""
        with self._lock:
            pool = self._pools.get(key)
            if pool is None:
                pool = self._pools[key] = self._new_pool(proxy)
        return pool

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return self._deadline - time.monotonic()

    def _timeouts(self, request: httpx.Request) -> dict[str, float | None]:
        timeouts: dict[str, float | None] = dict(
            request.extensions.get("timeout") or dict.fromkeys(("connect", "read", "write", "pool"))
        )
        remaining = self._remaining()
        if remaining is None:
            return timeouts
        if remaining <= 0:
            raise httpx.TimeoutException("client timeout exceeded", request=request)
        return {
            phase: remaining if value is None else min(value, remaining)
            for phase, value in timeouts.items()
        }

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        assert isinstance(request.stream, httpx.SyncByteStream)

        extensions = {**request.extensions, "timeout": self._timeouts(request)}
        with _map_httpcore_exceptions(request):
            pool = self._pool_for(request.url)
            core_request = httpcore.Request(
                method=request.method,
                url=httpcore.URL(
                    scheme=request.url.raw_scheme,
                    host=request.url.raw_host,
                    port=request.url.port,
                    target=request.url.raw_path,
                ),
                headers=request.headers.raw,
                content=request.stream,
                extensions=extensions,
            )
            core_response = pool.handle_request(core_request)

        return httpx.Response(
            status_code=core_response.status,
            headers=core_response.headers,
            stream=_DeadlineResponseStream(core_response.stream, request, self._deadline),
            extensions=core_response.extensions,
        )

    def close(self) -> None:
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.close()


def parse_proxies(proxies: Mapping[str, str]) -> dict[str, httpx.URL]:
    return {scheme: httpx.URL(proxy) for scheme, proxy in proxies.items()}


def build_transport(
    options: RequestOptions,
    resolver: Resolver | None = None,
    deadline: float | None = None,
) -> EngineTransport:
    """Assemble the transport for one call from its options."""
    backend = ResolvingBackend(timeout=options.timeout, resolver=resolver, deadline=deadline)
    return EngineTransport(
        proxies=parse_proxies(options.proxies),
        ssl_context=build_ssl_context(options.insecure_skip_verify),
        backend=backend,
        deadline=deadline,
    )
