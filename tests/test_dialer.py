"""Tests for the resolving dialer.

Tests cover:
- CachingResolver: IP literals, caching within TTL, random pick, errors
- ResolvingBackend: resolver substitution, timeouts, error mapping
- Streams handed back carry the configured per-operation timeout
- The call deadline caps each dial and travels with the stream
"""

from __future__ import annotations

import socket
import time
from unittest.mock import MagicMock, patch

import httpcore
import pytest

from reqengine.dialer import CachingResolver, ResolvingBackend
from reqengine.timeout_conn import DeadlineStream
from tests.conftest import find_free_port


def _addrinfo(*addresses: str) -> list:
    return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (a, 0)) for a in addresses]


class TestCachingResolver:
    """CachingResolver caches getaddrinfo results per host."""

    def test_ip_literal_returned_unchanged(self) -> None:
        resolver = CachingResolver()
        with patch("reqengine.dialer.socket.getaddrinfo") as getaddrinfo:
            assert resolver.resolve_one("10.0.0.1") == "10.0.0.1"
            assert resolver.resolve_one("[::1]") == "[::1]"
        getaddrinfo.assert_not_called()

    def test_lookup_cached_within_ttl(self) -> None:
        resolver = CachingResolver(ttl=60.0)
        with patch("reqengine.dialer.socket.getaddrinfo", return_value=_addrinfo("10.0.0.1")) as getaddrinfo:
            assert resolver.resolve_one("example.test") == "10.0.0.1"
            assert resolver.resolve_one("example.test") == "10.0.0.1"
        assert getaddrinfo.call_count == 1

    def test_expired_entry_looked_up_again(self) -> None:
        resolver = CachingResolver(ttl=0.0)
        with patch("reqengine.dialer.socket.getaddrinfo", return_value=_addrinfo("10.0.0.1")) as getaddrinfo:
            resolver.resolve_one("example.test")
            resolver.resolve_one("example.test")
        assert getaddrinfo.call_count == 2

    def test_duplicate_addresses_collapsed(self) -> None:
        resolver = CachingResolver()
        infos = _addrinfo("10.0.0.1", "10.0.0.1", "10.0.0.2")
        with patch("reqengine.dialer.socket.getaddrinfo", return_value=infos):
            assert resolver.resolve_all("example.test") == ["10.0.0.1", "10.0.0.2"]

    def test_resolve_one_picks_from_all(self) -> None:
        resolver = CachingResolver()
        with patch("reqengine.dialer.socket.getaddrinfo", return_value=_addrinfo("10.0.0.1", "10.0.0.2")):
            picks = {resolver.resolve_one("example.test") for _ in range(50)}
        assert picks <= {"10.0.0.1", "10.0.0.2"}

    def test_empty_result_raises(self) -> None:
        resolver = CachingResolver()
        with patch("reqengine.dialer.socket.getaddrinfo", return_value=[]):
            with pytest.raises(socket.gaierror):
                resolver.resolve_one("example.test")

    def test_clear_drops_cache(self) -> None:
        resolver = CachingResolver(ttl=60.0)
        with patch("reqengine.dialer.socket.getaddrinfo", return_value=_addrinfo("10.0.0.1")) as getaddrinfo:
            resolver.resolve_one("example.test")
            resolver.clear()
            resolver.resolve_one("example.test")
        assert getaddrinfo.call_count == 2


class TestResolvingBackend:
    """ResolvingBackend dials through the resolver and wraps the socket."""

    def test_resolver_address_is_dialed(self) -> None:
        resolver = MagicMock()
        resolver.resolve_one.return_value = "10.1.2.3"
        backend = ResolvingBackend(timeout=5.0, resolver=resolver)

        with patch("reqengine.dialer.socket.create_connection") as create_connection:
            stream = backend.connect_tcp("example.test", 443)

        resolver.resolve_one.assert_called_once_with("example.test")
        create_connection.assert_called_once_with(("10.1.2.3", 443), 5.0, source_address=None)
        assert isinstance(stream, DeadlineStream)
        assert stream.timeout == 5.0

    def test_host_dialed_directly_without_resolver(self) -> None:
        backend = ResolvingBackend()
        with patch("reqengine.dialer.socket.create_connection") as create_connection:
            backend.connect_tcp("example.test", 80, timeout=3.0, local_address="10.0.0.9")
        create_connection.assert_called_once_with(("example.test", 80), 3.0, source_address=("10.0.0.9", 0))

    def test_configured_timeout_wins_over_call_timeout(self) -> None:
        backend = ResolvingBackend(timeout=2.0)
        with patch("reqengine.dialer.socket.create_connection") as create_connection:
            backend.connect_tcp("example.test", 80, timeout=30.0)
        assert create_connection.call_args.args[1] == 2.0

    def test_dial_capped_by_call_deadline(self) -> None:
        """A later redirect hop only gets what is left of the call budget."""
        deadline = time.monotonic() + 1.0
        backend = ResolvingBackend(timeout=30.0, deadline=deadline)
        with patch("reqengine.dialer.socket.create_connection") as create_connection:
            stream = backend.connect_tcp("example.test", 80)
        assert create_connection.call_args.args[1] <= 1.0
        assert stream.timeout == 30.0
        assert stream.deadline == deadline

    def test_dial_after_deadline_is_connect_timeout(self) -> None:
        backend = ResolvingBackend(timeout=30.0, deadline=time.monotonic() - 1.0)
        with patch("reqengine.dialer.socket.create_connection") as create_connection:
            with pytest.raises(httpcore.ConnectTimeout):
                backend.connect_tcp("example.test", 80)
        create_connection.assert_not_called()

    def test_resolver_failure_is_connect_error(self) -> None:
        resolver = MagicMock()
        resolver.resolve_one.side_effect = socket.gaierror("Name or service not known")
        backend = ResolvingBackend(resolver=resolver)
        with pytest.raises(httpcore.ConnectError, match="cannot resolve"):
            backend.connect_tcp("nowhere.test", 80)

    def test_dial_timeout_is_connect_timeout(self) -> None:
        backend = ResolvingBackend(timeout=0.1)
        with patch("reqengine.dialer.socket.create_connection", side_effect=socket.timeout("timed out")):
            with pytest.raises(httpcore.ConnectTimeout):
                backend.connect_tcp("example.test", 80)

    def test_refused_connection_is_connect_error(self) -> None:
        backend = ResolvingBackend(timeout=2.0)
        with pytest.raises(httpcore.ConnectError):
            backend.connect_tcp("127.0.0.1", find_free_port())

    def test_socket_options_applied(self) -> None:
        backend = ResolvingBackend()
        with patch("reqengine.dialer.socket.create_connection") as create_connection:
            backend.connect_tcp("example.test", 80, socket_options=[(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)])
        sock = create_connection.return_value
        sock.setsockopt.assert_any_call(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        sock.setsockopt.assert_any_call(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    def test_connects_to_listening_socket(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]

            resolver = MagicMock()
            resolver.resolve_one.return_value = "127.0.0.1"
            stream = ResolvingBackend(timeout=2.0, resolver=resolver).connect_tcp("service.test", port)
            try:
                assert stream.get_extra_info("server_addr") == ("127.0.0.1", port)
            finally:
                stream.close()
