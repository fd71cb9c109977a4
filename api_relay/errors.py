"""Error taxonomy for request and upload execution.

Every error is terminal: nothing is retried. ``str(error)`` is the message the
host displays, always prefixed with the call's correlation id.
"""

from __future__ import annotations

from enum import Enum


class ExecutionError(Exception):
    """Base class for executor errors."""

    def __init__(self, request_id: str, message: str) -> None:
        self.request_id = request_id
        self.message = message
        super().__init__(f"[Request {request_id}] {message}")


# -----------------------------------------------------------------------------
# Configuration errors (raised before any network I/O)
# -----------------------------------------------------------------------------


class ProxyConfigurationError(ExecutionError):
    """Raised when a proxy URL cannot be used."""

    def __init__(self, request_id: str, scheme: str, url: str, reason: str) -> None:
        self.scheme = scheme
        self.url = url
        super().__init__(
            request_id, f"{scheme} proxy configuration error: {reason} (Proxy: {url})"
        )


class UnsupportedMethodError(ExecutionError):
    """Raised for methods other than GET/POST/PUT/DELETE/PATCH."""

    def __init__(self, request_id: str, method: str) -> None:
        self.method = method
        super().__init__(request_id, f"Unsupported HTTP method: {method}")


class PayloadDecodeError(ExecutionError):
    """Raised when an upload payload is not valid base64."""


# -----------------------------------------------------------------------------
# Transport errors (raised at send time)
# -----------------------------------------------------------------------------


class TransportFailure(str, Enum):
    """Classification of a failed send."""

    DNS = "dns"
    TLS = "tls"
    PROXY_AUTH = "proxy_auth"
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    MALFORMED_REQUEST = "malformed_request"
    DECODE = "decode"
    UNCLASSIFIED = "unclassified"


class TransportError(ExecutionError):
    """Raised when a request could not be sent or answered."""

    def __init__(
        self,
        request_id: str,
        kind: TransportFailure,
        message: str,
        elapsed: float,
        proxy_description: str = "",
    ) -> None:
        self.kind = kind
        self.elapsed = elapsed
        self.proxy_description = proxy_description
        super().__init__(
            request_id, _with_context(message, elapsed, proxy_description)
        )


class UploadFailedError(ExecutionError):
    """Raised when a multipart upload could not be sent."""

    def __init__(
        self,
        request_id: str,
        message: str,
        elapsed: float,
        proxy_description: str = "",
    ) -> None:
        self.elapsed = elapsed
        self.proxy_description = proxy_description
        super().__init__(
            request_id, _with_context(message, elapsed, proxy_description)
        )


# -----------------------------------------------------------------------------
# Post-transfer errors
# -----------------------------------------------------------------------------


class ResponseReadError(ExecutionError):
    """Raised when the connection drops while the body is being read."""


class ResponseTooLargeError(ExecutionError):
    """Raised when a fully read body exceeds the size ceiling."""

    def __init__(self, request_id: str, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            request_id, f"Response too large: {size} bytes (limit: {limit} bytes)"
        )


def _with_context(message: str, elapsed: float, proxy_description: str) -> str:
    text = f"{message} [after {elapsed:.3f}s]"
    if proxy_description:
        text += f" [Active proxy configuration: {proxy_description}]"
    return text
