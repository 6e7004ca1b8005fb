"""Resolving dialer - opens TCP connections through an optional resolver.

ResolvingBackend is the httpcore NetworkBackend used by every pool the
engine builds. When a resolver is configured the host name is replaced by
one resolver-supplied IP before dialing; TLS still uses the original host
name for SNI and certificate checks because httpcore passes it separately
to start_tls. Every connection is wrapped in a DeadlineStream.
"""

from __future__ import annotations

import ipaddress
import logging
import random
import socket
import threading
import time
from typing import Any, Iterable, Protocol

import httpcore

from reqengine.timeout_conn import DeadlineStream, cap_timeout, map_socket_errors

LOGGER = logging.getLogger(__name__)


class Resolver(Protocol):
    """Maps a host name to one IP address. Raises OSError when it cannot."""

    def resolve_one(self, host: str) -> str: ...


class CachingResolver:
    """Thread-safe TTL cache in front of socket.getaddrinfo.

    One instance may be shared by concurrent calls. When a host has several
    A/AAAA records one is picked at random per lookup, which spreads load
    across them.
    """

    def __init__(self, ttl: float = 60.0) -> None:
        self._ttl = ttl
        self._cache: dict[str, tuple[float, list[str]]] = {}
        self._lock = threading.Lock()

    def resolve_one(self, host: str) -> str:
        if _is_ip_literal(host):
            return host
        return random.choice(self.resolve_all(host))

    def resolve_all(self, host: str) -> list[str]:
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(host)
            if cached is not None and cached[0] > now:
                return cached[1]

        addresses = _lookup(host)
        with self._lock:
            self._cache[host] = (now + self._ttl, addresses)
        return addresses

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


def _lookup(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    addresses: list[str] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        address = sockaddr[0]
        if address not in addresses:
            addresses.append(address)
    if not addresses:
        raise socket.gaierror(f"no addresses found for {host!r}")
    return addresses


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


class ResolvingBackend(httpcore.NetworkBackend):
    """Dials host:port, substituting a resolved IP when a resolver is set.

    Args:
        timeout: Per-call timeout in seconds. Bounds the dial and seeds the
            per-operation deadline of every stream. 0/None defers to the
            timeouts httpcore passes in.
        resolver: Optional Resolver; None uses the system resolver.
        deadline: time.monotonic() value for the whole call. Caps every dial
            and is handed to every stream.
    """

    def __init__(
        self,
        timeout: float | None = None,
        resolver: Resolver | None = None,
        deadline: float | None = None,
    ) -> None:
        self._timeout = timeout if timeout and timeout > 0 else None
        self._resolver = resolver
        self._deadline = deadline

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable[tuple[int, int, Any]] | None = None,
    ) -> DeadlineStream:
        address = host
        if self._resolver is not None:
            try:
                address = self._resolver.resolve_one(host)
            except OSError as e:
                raise httpcore.ConnectError(f"cannot resolve {host!r}: {e}") from e
            LOGGER.debug("resolved %s to %s", host, address)

        dial_timeout = self._timeout if self._timeout is not None else timeout
        source_address = None if local_address is None else (local_address, 0)

        exc_map = {socket.timeout: httpcore.ConnectTimeout, OSError: httpcore.ConnectError}
        with map_socket_errors(exc_map):
            dial_timeout = cap_timeout(dial_timeout, self._deadline)
            sock = socket.create_connection((address, port), dial_timeout, source_address=source_address)
            try:
                for option in socket_options or ():
                    sock.setsockopt(*option)
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except OSError:
                sock.close()
                raise

        LOGGER.debug("connected to %s:%s", address, port)
        return DeadlineStream(sock, self._timeout, self._deadline)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)
