"""Tests for the Response Normalizer."""

import httpx
import pytest

from api_relay.errors import ResponseTooLargeError
from api_relay.response import (
    MAX_RESPONSE_BYTES,
    body_size,
    collect_headers,
    normalize_response,
)


def _response(status: int = 200, content: bytes = b"", headers: list | None = None) -> httpx.Response:
    return httpx.Response(status, content=content, headers=headers or [])


class TestCollectHeaders:
    def test_keys_lowercased(self) -> None:
        response = _response(headers=[("X-Request-ID", "abc"), ("Content-Type", "application/json")])

        headers = collect_headers(response)

        assert headers["x-request-id"] == "abc"
        assert headers["content-type"] == "application/json"
        assert "X-Request-ID" not in headers

    def test_repeated_header_keeps_last_value(self) -> None:
        response = _response(headers=[("Set-Cookie", "a=1"), ("set-cookie", "b=2")])

        assert collect_headers(response)["set-cookie"] == "b=2"

    def test_undecodable_value_dropped(self) -> None:
        """A header that is not valid UTF-8 is left out; the others survive."""
        response = _response(headers=[(b"X-Bad", b"\xff\xfe"), (b"X-Good", b"fine")])

        headers = collect_headers(response)

        assert "x-bad" not in headers
        assert headers["x-good"] == "fine"

    def test_utf8_value_kept(self) -> None:
        response = _response(headers=[(b"X-Note", "café".encode("utf-8"))])

        assert collect_headers(response)["x-note"] == "café"


class TestNormalizeResponse:
    def test_error_status_is_envelope(self) -> None:
        envelope = normalize_response(
            _response(429, b'{"error": "rate limited"}'), "req-1"
        )

        assert envelope.status == 429
        assert envelope.body == '{"error": "rate limited"}'

    def test_empty_body(self) -> None:
        envelope = normalize_response(_response(204), "req-1")

        assert envelope.status == 204
        assert envelope.body == ""

    def test_undecodable_header_does_not_fail_response(self) -> None:
        envelope = normalize_response(
            _response(200, b"ok", headers=[(b"X-Bad", b"\xff")]), "req-1"
        )

        assert envelope.body == "ok"
        assert "x-bad" not in envelope.headers

    def test_over_limit_raises_with_sizes(self) -> None:
        with pytest.raises(ResponseTooLargeError) as exc_info:
            normalize_response(_response(200, b"x" * 101), "req-7", max_bytes=100)

        assert exc_info.value.size == 101
        assert exc_info.value.limit == 100
        assert str(exc_info.value).startswith("[Request req-7] Response too large: 101 bytes")

    def test_at_limit_accepted(self) -> None:
        envelope = normalize_response(_response(200, b"x" * 100), "req-1", max_bytes=100)

        assert len(envelope.body) == 100

    def test_default_limit_is_50_mib(self) -> None:
        assert MAX_RESPONSE_BYTES == 52_428_800


class TestBodySize:
    @pytest.mark.parametrize(
        "body,expected",
        [
            ("", 0),
            ("abc", 3),
            ("é", 2),
            ("日本", 6),
        ],
    )
    def test_utf8_length(self, body: str, expected: int) -> None:
        assert body_size(body) == expected
