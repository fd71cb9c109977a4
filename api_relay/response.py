"""Response Normalizer - Converts a fully read httpx response into a ResponseEnvelope."""

from __future__ import annotations

import httpx

from api_relay.errors import ResponseTooLargeError
from api_relay.models import ResponseEnvelope


MAX_RESPONSE_BYTES = 50 * 1024 * 1024
LARGE_RESPONSE_BYTES = 10 * 1024 * 1024


def collect_headers(response: httpx.Response) -> dict[str, str]:
    """Collect response headers into a flat mapping.

    Keys are lowercase. A repeated header keeps its last value. Values that are
    not valid UTF-8 are dropped from the mapping; the response itself is kept.
    """
    headers: dict[str, str] = {}
    for raw_key, raw_value in response.headers.raw:
        try:
            value = raw_value.decode("utf-8")
        except UnicodeDecodeError:
            continue
        headers[raw_key.decode("latin-1").lower()] = value
    return headers


def normalize_response(
    response: httpx.Response,
    request_id: str,
    max_bytes: int = MAX_RESPONSE_BYTES,
) -> ResponseEnvelope:
    """Build a ResponseEnvelope from a response whose body was already read.

    Args:
        response: httpx Response after ``aread()``.
        request_id: Correlation id for error messages.
        max_bytes: Ceiling on the UTF-8 size of the decoded body.

    Returns:
        ResponseEnvelope with any status code.

    Raises:
        ResponseTooLargeError: If the decoded body exceeds max_bytes.
    """
    body = response.text
    size = body_size(body)
    if size > max_bytes:
        raise ResponseTooLargeError(request_id, size, max_bytes)

    return ResponseEnvelope(
        status=response.status_code,
        body=body,
        headers=collect_headers(response),
    )


def body_size(body: str) -> int:
    """Size of a decoded body in UTF-8 bytes."""
    if body.isascii():
        return len(body)
    return len(body.encode("utf-8", errors="surrogatepass"))
