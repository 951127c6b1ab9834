"""Exception taxonomy shared by the client session and the server proxy."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by the garden walk relay."""


class DeviceError(RelayError):
    """The capture device is unavailable, was denied, or did not open in time.

    User-actionable: usually needs a microphone permission grant.
    """


class RelayConnectionError(RelayError, ConnectionError):
    """The duplex transport failed to open or dropped unexpectedly.

    Retryable by reconnecting.  Also a builtin ``ConnectionError`` so callers
    catching the builtin keep working.
    """


class UpstreamError(RelayError):
    """The conversational-AI backend refused the session or reported an error."""


class ParseError(RelayError, ValueError):
    """A control message could not be decoded.  Logged and dropped, never fatal."""
