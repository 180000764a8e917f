"""
map_errors.py - Exception types for the OSM tilemap pipeline.

Transport and decode problems are absorbed close to where they happen and
degrade to partial results. Only running out of sources reaches the caller.
"""

from typing import Optional


class TilemapError(Exception):
    """Base class for all pipeline errors."""


class TransportError(TilemapError):
    """Timeout or connection failure. Retryable on the same or next endpoint."""


class EndpointError(TilemapError):
    """Non-retryable response from one endpoint (bad status or malformed body).

    Ends the tries at that endpoint; the next endpoint is still attempted.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SourceExhausted(TilemapError):
    """Every endpoint of a source (or every source) failed."""

    def __init__(self, message: Optional[str] = None, last_error: Optional[BaseException] = None):
        if message is None:
            message = str(last_error) if last_error is not None else "all sources failed"
        super().__init__(message)
        self.last_error = last_error


class DecodeDegraded(TilemapError):
    """Payload could not be decoded. Never escapes the decoder."""


class InvalidRequest(TilemapError, ValueError):
    """Caller error: bad grid dimensions, bad coordinates, unknown source kind."""


class OutsideArchiveBounds(InvalidRequest):
    """Queried point lies outside a tile archive's declared bounds."""
