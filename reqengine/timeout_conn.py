"""Deadline-enforcing connection - bounds every socket read and write.

A connect timeout alone does not protect against a server that accepts the
connection and then trickles bytes forever. DeadlineStream re-arms the
socket timeout immediately before every individual read and write, so the
configured timeout bounds the gap between any two consecutive I/O
operations rather than the lifetime of the connection. An optional
call deadline caps each of those per-operation timeouts as well.

The stream implements httpcore's NetworkStream interface and is handed to
httpcore's connection pool by ResolvingBackend (see dialer.py).
"""

from __future__ import annotations

import contextlib
import select
import socket
import ssl
import time
from typing import Any, Iterator

import httpcore

# Handshake bound used by start_tls; the idle timeout applies after it.
TLS_HANDSHAKE_TIMEOUT = 10.0


def cap_timeout(timeout: float | None, deadline: float | None) -> float | None:
    """Shrink timeout to what is left before deadline.

    Raises socket.timeout once the deadline has passed, so callers inside
    map_socket_errors surface it as the matching httpcore timeout.
    """
    if deadline is None:
        return timeout
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise socket.timeout("client timeout exceeded")
    return remaining if timeout is None else min(timeout, remaining)


@contextlib.contextmanager
def map_socket_errors(mapping: dict[type[Exception], type[Exception]]) -> Iterator[None]:
    """Translate socket exceptions into httpcore exceptions.

    The first matching entry wins, so list subclasses (socket.timeout)
    before their bases (OSError).
    """
    try:
        yield
    except Exception as exc:
        for from_exc, to_exc in mapping.items():
            if isinstance(exc, from_exc):
                raise to_exc(str(exc) or type(exc).__name__) from exc
        raise


class DeadlineStream(httpcore.NetworkStream):
    """A socket stream whose every read/write gets a fresh deadline.

    Usage:
        stream = DeadlineStream(sock, timeout=5.0)
        stream.write(b"GET / HTTP/1.1\\r\\n\\r\\n")
        data = stream.read(65536)   # ReadTimeout after 5s of silence

    A timeout of zero or None disables the per-operation deadline; the
    timeout httpcore passes for the call is used instead. deadline is an
    absolute time.monotonic() value for the whole call: every operation is
    armed with at most the time left before it, so a peer trickling bytes
    cannot stretch the call past it.
    """

    def __init__(self, sock: socket.socket, timeout: float | None = None, deadline: float | None = None) -> None:
        self._sock = sock
        self._timeout = timeout if timeout and timeout > 0 else None
        self._deadline = deadline

    @property
    def timeout(self) -> float | None:
        return self._timeout

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def _arm(self, call_timeout: float | None) -> None:
        timeout = self._timeout if self._timeout is not None else call_timeout
        # settimeout on a closed socket raises OSError, so no I/O follows.
        self._sock.settimeout(cap_timeout(timeout, self._deadline))

    def read(self, max_bytes: int, timeout: float | None = None) -> bytes:
        exc_map = {socket.timeout: httpcore.ReadTimeout, OSError: httpcore.ReadError}
        with map_socket_errors(exc_map):
            self._arm(timeout)
            return self._sock.recv(max_bytes)

    def write(self, buffer: bytes, timeout: float | None = None) -> None:
        if not buffer:
            return

        exc_map = {socket.timeout: httpcore.WriteTimeout, OSError: httpcore.WriteError}
        with map_socket_errors(exc_map):
            view = memoryview(buffer)
            while view:
                self._arm(timeout)
                sent = self._sock.send(view)
                view = view[sent:]

    def close(self) -> None:
        self._sock.close()

    def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: str | None = None,
        timeout: float | None = None,
    ) -> DeadlineStream:
        if isinstance(self._sock, ssl.SSLSocket):
            # An HTTPS proxy tunnelling to an HTTPS origin needs TLS over TLS,
            # which a plain SSLSocket cannot provide.
            self.close()
            raise httpcore.ConnectError("TLS inside an existing TLS stream is not supported")

        handshake_timeout = TLS_HANDSHAKE_TIMEOUT
        if timeout is not None:
            handshake_timeout = min(timeout, handshake_timeout)

        exc_map = {socket.timeout: httpcore.ConnectTimeout, OSError: httpcore.ConnectError}
        with map_socket_errors(exc_map):
            try:
                self._sock.settimeout(cap_timeout(handshake_timeout, self._deadline))
                tls_sock = ssl_context.wrap_socket(self._sock, server_hostname=server_hostname)
            except Exception:
                self.close()
                raise
        return DeadlineStream(tls_sock, self._timeout, self._deadline)

    def get_extra_info(self, info: str) -> Any:
        if info == "ssl_object" and isinstance(self._sock, ssl.SSLSocket):
            return self._sock._sslobj  # type: ignore[attr-defined]
        if info == "client_addr":
            return self._sock.getsockname()
        if info == "server_addr":
            return self._sock.getpeername()
        if info == "socket":
            return self._sock
        if info == "is_readable":
            return _is_readable(self._sock)
        return None


def _is_readable(sock: socket.socket) -> bool:
    """True when the peer closed the connection or sent unexpected data."""
    if sock.fileno() == -1:
        return True
    readable, _, _ = select.select([sock], [], [], 0)
    return bool(readable)
