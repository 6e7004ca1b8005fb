"""Error hierarchy for reqengine.

Every failure the engine reports derives from EngineError so callers can
catch one type. A suppressed redirect is not an error: the 3xx response is
returned as a normal result.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reqengine.models import NormalizedResponse


class EngineError(Exception):
    """Base class for engine errors."""


class OptionParseError(EngineError):
    """Raised before any network activity when options are malformed.

    Covers bad proxy URLs, unreadable upload paths, wrong option types and
    unparseable target URLs.
    """


class BodyEncodingError(EngineError):
    """Raised when the request body cannot be built (missing file content, read failure)."""


class TransportError(EngineError):
    """Raised when the request fails on the wire (DNS, connect, TLS, timeout, reset).

    history holds the normalized responses of every redirect hop that
    completed before the failure, oldest first.
    """

    def __init__(self, message: str, history: list[NormalizedResponse] | None = None) -> None:
        super().__init__(message)
        self.history: list[NormalizedResponse] = history or []
