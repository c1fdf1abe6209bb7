"""Exception hierarchy raised by :mod:`enoslink`.

Every error derives from :class:`ClientError` so callers can catch all
library failures with a single ``except`` clause.
"""

from __future__ import annotations


class ClientError(RuntimeError):
    """Base class for all errors raised by the integration client."""


class AuthError(ClientError):
    """Raised when no usable access token could be obtained."""


class EncodingError(ClientError, ValueError):
    """Raised when a request cannot be built, e.g. a device has no identity."""


class TransportError(ClientError, ConnectionError):
    """Raised on socket-level failures.

    Never retried internally; callers may retry the whole operation.
    """


class DecodeError(ClientError):
    """Raised when a response body is malformed or has an unexpected shape."""


class UploadError(ClientError):
    """Raised for a failed presigned-URL upload of a single file.

    Only used inside the indirect upload phase, where it is logged and never
    propagated to the caller of :meth:`Connection.publish`.
    """


class ServerError(ClientError):
    """Raised when the broker answers with a non-2xx HTTP status."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"HTTP {code}: {message}")
        self.code = code
        self.message = message


class BrokerError(ClientError):
    """Raised when a JSON envelope carries ``code != 0``."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"Broker error {code}: {message}")
        self.code = code
        self.message = message
