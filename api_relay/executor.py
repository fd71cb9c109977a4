"""Executor - Sends described API calls and normalizes the responses.

RequestExecutor sends JSON requests; UploadExecutor sends multipart file
uploads to ``<base_url>/files``. Both build one httpx.AsyncClient per call
(optionally proxied), read the whole body, and return a ResponseEnvelope for
any HTTP status. Only transport, payload and size problems raise.

Nothing is retried. Every call gets its own correlation id, which prefixes
its log lines and error messages.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import socket
import ssl
import time
import uuid
from typing import Any, Callable, MutableMapping

import httpx

from api_relay.errors import (
    ExecutionError,
    PayloadDecodeError,
    ResponseReadError,
    ResponseTooLargeError,
    TransportError,
    TransportFailure,
    UnsupportedMethodError,
    UploadFailedError,
)
from api_relay.models import (
    FileUploadDescriptor,
    ProxyConfig,
    RequestDescriptor,
    ResponseEnvelope,
)
from api_relay.proxy import ProxySettings, resolve_proxies
from api_relay.response import (
    LARGE_RESPONSE_BYTES,
    MAX_RESPONSE_BYTES,
    body_size,
    normalize_response,
)


SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH"})

UPLOAD_PATH = "files"
UPLOAD_CONTENT_TYPE = "application/octet-stream"

# Body previews in log lines
ERROR_BODY_PREVIEW_CHARS = 500
DEBUG_BODY_PREVIEW_CHARS = 1000

# Errors a send can raise before any response exists. InvalidURL and
# UnicodeEncodeError come from request assembly, not the network.
_SEND_ERRORS = (httpx.HTTPError, httpx.InvalidURL, UnicodeEncodeError)

# Best-effort message markers, used only when the exception chain carries no
# structured cause (socket.gaierror, ssl.SSLError).
_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo",
    "name resolution",
    "dns",
    "resolve",
)
_TLS_MARKERS = ("certificate", "ssl", "tls")
_PROXY_AUTH_MARKERS = ("407", "proxy authentication")

ClientFactory = Callable[[ProxySettings], httpx.AsyncClient]


def default_client_factory(proxies: ProxySettings) -> httpx.AsyncClient:
    """Build a fresh client for one call. Redirects are followed."""
    return httpx.AsyncClient(follow_redirects=True, **proxies.client_kwargs())


class RequestLogAdapter(logging.LoggerAdapter):
    """Prefixes every log line with the call's correlation id."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[Request {self.extra['request_id']}] {msg}", kwargs


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_target_url(base_url: str, path: str) -> str:
    """Join base URL and path with exactly one slash. No other normalization."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def build_headers(api_key: str, additional_headers: dict[str, str] | None) -> dict[str, str]:
    """Bearer authorization first, then caller headers (last write wins).

    Header names compare case-insensitively, so a caller-supplied
    ``authorization`` replaces the bearer token.
    """
    headers = {"Authorization": f"Bearer {api_key}"}
    for key, value in (additional_headers or {}).items():
        _set_header(headers, key, value)
    return headers


def _set_header(headers: dict[str, str], key: str, value: str) -> None:
    for existing in [k for k in headers if k.lower() == key.lower()]:
        del headers[existing]
    headers[key] = value


def _drop_header(headers: dict[str, str], key: str) -> bool:
    matches = [k for k in headers if k.lower() == key.lower()]
    for existing in matches:
        del headers[existing]
    return bool(matches)


def mask_api_key(api_key: str) -> str:
    """Show the first and last four characters of keys longer than eight."""
    if len(api_key) > 8:
        return f"{api_key[:4]}...{api_key[-4:]}"
    return "****"


def _preview(body: str, limit: int) -> str:
    if len(body) > limit:
        return f"{body[:limit]}... (truncated, total {len(body)} chars)"
    return body


def _exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def _has_cause(exc: BaseException, *types: type[BaseException]) -> bool:
    return any(isinstance(e, types) for e in _exception_chain(exc))


def classify_transport_error(exc: BaseException) -> tuple[TransportFailure, str]:
    """Map a send failure to a TransportFailure and a diagnostic message.

    httpx exception types decide the class. Within connect failures the
    underlying socket/ssl cause refines it to DNS or TLS; when no such cause
    is chained, message substrings are matched as a best-effort fallback.
    Proxy authentication is only ever detectable from the message.
    """
    detail = str(exc) or type(exc).__name__
    lowered = detail.lower()

    if isinstance(exc, httpx.TimeoutException):
        return TransportFailure.TIMEOUT, f"Request timeout: {detail}"

    if isinstance(exc, (httpx.ConnectError, httpx.ProxyError)):
        if any(marker in lowered for marker in _PROXY_AUTH_MARKERS):
            return (
                TransportFailure.PROXY_AUTH,
                f"Proxy authentication required: {detail} (Check proxy credentials)",
            )
        if _has_cause(exc, socket.gaierror) or (
            not _has_cause(exc, ssl.SSLError)
            and any(marker in lowered for marker in _DNS_MARKERS)
        ):
            return (
                TransportFailure.DNS,
                f"DNS resolution failed: {detail} (Check domain name or DNS settings)",
            )
        if _has_cause(exc, ssl.SSLError) or any(marker in lowered for marker in _TLS_MARKERS):
            return (
                TransportFailure.TLS,
                f"SSL/TLS error: {detail} (Check certificate validity or security settings)",
            )
        return (
            TransportFailure.CONNECTION,
            f"Connection failed: {detail} (Check network/proxy settings)",
        )

    if isinstance(exc, httpx.DecodingError):
        return TransportFailure.DECODE, f"Response decode error: {detail}"

    if isinstance(
        exc,
        (httpx.UnsupportedProtocol, httpx.LocalProtocolError, httpx.InvalidURL, UnicodeEncodeError),
    ):
        return TransportFailure.MALFORMED_REQUEST, f"Request error: {detail}"

    if isinstance(exc, httpx.NetworkError):
        return (
            TransportFailure.CONNECTION,
            f"Connection failed: {detail} (Check network/proxy settings)",
        )

    return TransportFailure.UNCLASSIFIED, f"Failed to send request: {detail}"


class _ExecutorBase:
    """Shared proxy resolution, client lifecycle and body handling."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        client_factory: ClientFactory | None = None,
        max_response_bytes: int = MAX_RESPONSE_BYTES,
    ) -> None:
        """Initialize the executor.

        Args:
            logger: Host-owned logger. Defaults to this module's logger.
            client_factory: Builds the per-call httpx.AsyncClient from the
                            resolved proxies. Defaults to default_client_factory.
            max_response_bytes: Ceiling on decoded response body size.
        """
        self._logger = logger or logging.getLogger(__name__)
        self._client_factory = client_factory or default_client_factory
        self._max_response_bytes = max_response_bytes

    def _call_logger(self, request_id: str) -> RequestLogAdapter:
        return RequestLogAdapter(self._logger, {"request_id": request_id})

    def _resolve_proxies(
        self,
        proxy_config: ProxyConfig | None,
        request_id: str,
        log: RequestLogAdapter,
    ) -> ProxySettings:
        try:
            proxies = resolve_proxies(proxy_config, request_id)
        except ExecutionError as e:
            log.error("%s", e.message)
            raise

        if proxies.active:
            log.info("Proxy configuration applied: %s", proxies.description)
        else:
            log.info("No proxy configuration, connecting directly")
        return proxies

    async def _read_body(
        self,
        response: httpx.Response,
        request_id: str,
        log: RequestLogAdapter,
        send_start: float,
        proxies: ProxySettings,
        read_error_prefix: str,
        decode_as_transport: bool,
    ) -> None:
        """Read the full body, closing the response in every case.

        A content-decoding failure becomes a DECODE TransportError when
        decode_as_transport is set, and a ResponseReadError otherwise.
        """
        try:
            await response.aread()
        except httpx.HTTPError as e:
            if decode_as_transport and isinstance(e, httpx.DecodingError):
                kind, message = classify_transport_error(e)
                error = TransportError(
                    request_id, kind, message, time.perf_counter() - send_start, proxies.description
                )
                log.error("%s", error.message)
                raise error from e
            error = ResponseReadError(request_id, f"{read_error_prefix}: {e}")
            log.error("%s", error.message)
            raise error from e
        finally:
            await response.aclose()

    def _normalize(
        self,
        response: httpx.Response,
        request_id: str,
        log: RequestLogAdapter,
    ) -> ResponseEnvelope:
        try:
            return normalize_response(response, request_id, self._max_response_bytes)
        except ResponseTooLargeError as e:
            log.error("%s", e.message)
            raise


class RequestExecutor(_ExecutorBase):
    """Executes JSON API calls described by RequestDescriptor.

    Usage:
        executor = RequestExecutor(logger=host_logger)
        envelope = await executor.execute(descriptor)
    """

    async def execute(self, descriptor: RequestDescriptor) -> ResponseEnvelope:
        """Execute one request.

        Args:
            descriptor: The call to make.

        Returns:
            ResponseEnvelope for any HTTP status, including 4xx/5xx.

        Raises:
            ProxyConfigurationError: If a proxy URL is malformed.
            UnsupportedMethodError: If the method is not GET/POST/PUT/DELETE/PATCH.
            TransportError: If the request could not be sent.
            ResponseReadError: If the body could not be read.
            ResponseTooLargeError: If the body exceeds the size ceiling.
        """
        request_id = new_request_id()
        log = self._call_logger(request_id)
        start_time = time.perf_counter()
        log.info("Starting new request")

        proxies = self._resolve_proxies(descriptor.proxy_config, request_id, log)

        url = build_target_url(descriptor.base_url, descriptor.path)

        method = descriptor.method.upper()
        if method not in SUPPORTED_METHODS:
            error = UnsupportedMethodError(request_id, descriptor.method)
            log.error("%s", error.message)
            raise error

        headers = build_headers(descriptor.api_key, descriptor.additional_headers)

        content: bytes | None = None
        if descriptor.body is not None:
            headers["Content-Type"] = "application/json"
            content = json.dumps(
                descriptor.body, separators=(",", ":"), ensure_ascii=False
            ).encode("utf-8")

        log.info(
            "%s %s | API Key: %s | Custom Headers: %d | Body Size: %d bytes",
            method,
            url,
            mask_api_key(descriptor.api_key),
            len(descriptor.additional_headers or {}),
            len(content) if content is not None else 0,
        )

        async with self._client_factory(proxies) as client:
            log.info("Sending request...")
            send_start = time.perf_counter()
            try:
                request = client.build_request(method, url, headers=headers, content=content)
                response = await client.send(request, stream=True)
            except _SEND_ERRORS as e:
                elapsed = time.perf_counter() - send_start
                kind, message = classify_transport_error(e)
                error = TransportError(request_id, kind, message, elapsed, proxies.description)
                log.error("%s", message)
                log.error("Request failed after %.3fs", elapsed)
                if proxies.active:
                    log.error("Active proxy configuration: %s", proxies.description)
                raise error from e

            await self._read_body(
                response,
                request_id,
                log,
                send_start,
                proxies,
                "Failed to read response body",
                decode_as_transport=True,
            )
            network_time = time.perf_counter() - send_start

        envelope = self._normalize(response, request_id, log)
        self._log_completion(
            log, envelope, descriptor.path, network_time, time.perf_counter() - start_time
        )
        return envelope

    @staticmethod
    def _log_completion(
        log: RequestLogAdapter,
        envelope: ResponseEnvelope,
        path: str,
        network_time: float,
        total_time: float,
    ) -> None:
        size = body_size(envelope.body)
        log.info(
            "Response received | Status: %d | Size: %d bytes | Network: %.3fs | Total: %.3fs",
            envelope.status,
            size,
            network_time,
            total_time,
        )

        if "/responses" in path:
            log.debug("Response body: %s", _preview(envelope.body, DEBUG_BODY_PREVIEW_CHARS))

        if size > LARGE_RESPONSE_BYTES:
            log.warning("Large response detected: %d MB", size // 1024 // 1024)

        if envelope.status >= 400:
            log.error(
                "OpenAI API error (%d): %s",
                envelope.status,
                _preview(envelope.body, ERROR_BODY_PREVIEW_CHARS),
            )
        else:
            log.info("Request completed successfully")


class UploadExecutor(_ExecutorBase):
    """Uploads base64-encoded files as multipart forms to ``<base_url>/files``."""

    async def upload(self, descriptor: FileUploadDescriptor) -> ResponseEnvelope:
        """Upload one file.

        Raises:
            ProxyConfigurationError: If a proxy URL is malformed.
            PayloadDecodeError: If file_data is not valid base64.
            UploadFailedError: If the upload could not be sent.
            ResponseReadError: If the body could not be read.
            ResponseTooLargeError: If the body exceeds the size ceiling.
        """
        request_id = new_request_id()
        log = self._call_logger(request_id)
        start_time = time.perf_counter()
        log.info("Starting file upload: %s", descriptor.file_name)

        proxies = self._resolve_proxies(descriptor.proxy_config, request_id, log)

        try:
            file_bytes = base64.b64decode(descriptor.file_data, validate=True)
        except (binascii.Error, ValueError) as e:
            error = PayloadDecodeError(request_id, f"Base64 decode error: {e}")
            log.error("%s", error.message)
            raise error from e

        log.info("File size: %d bytes", len(file_bytes))

        url = build_target_url(descriptor.base_url, UPLOAD_PATH)

        # httpx sets the multipart boundary in Content-Type; a caller value would break it.
        headers = build_headers(descriptor.api_key, descriptor.additional_headers)
        if _drop_header(headers, "Content-Type"):
            log.warning("Ignoring caller Content-Type header; multipart uploads set their own")

        files = {"file": (descriptor.file_name, file_bytes, UPLOAD_CONTENT_TYPE)}
        data = {"purpose": descriptor.purpose}

        async with self._client_factory(proxies) as client:
            log.info("Uploading to %s", url)
            send_start = time.perf_counter()
            try:
                request = client.build_request(
                    "POST", url, headers=headers, data=data, files=files
                )
                response = await client.send(request, stream=True)
            except _SEND_ERRORS as e:
                elapsed = time.perf_counter() - send_start
                error = UploadFailedError(
                    request_id,
                    f"Failed to upload file: {str(e) or type(e).__name__}",
                    elapsed,
                    proxies.description,
                )
                log.error("Upload failed: %s", error.message)
                raise error from e

            await self._read_body(
                response,
                request_id,
                log,
                send_start,
                proxies,
                "Failed to read response",
                decode_as_transport=False,
            )
            network_time = time.perf_counter() - send_start

        envelope = self._normalize(response, request_id, log)

        log.info(
            "Upload complete | Status: %d | Network: %.3fs | Total: %.3fs",
            envelope.status,
            network_time,
            time.perf_counter() - start_time,
        )
        if envelope.status >= 400:
            log.error(
                "Upload error (%d): %s",
                envelope.status,
                _preview(envelope.body, ERROR_BODY_PREVIEW_CHARS),
            )
        return envelope


async def execute_request(
    descriptor: RequestDescriptor,
    logger: logging.Logger | None = None,
    client_factory: ClientFactory | None = None,
) -> ResponseEnvelope:
    """Execute one request with a throwaway RequestExecutor."""
    return await RequestExecutor(logger=logger, client_factory=client_factory).execute(descriptor)


async def execute_upload(
    descriptor: FileUploadDescriptor,
    logger: logging.Logger | None = None,
    client_factory: ClientFactory | None = None,
) -> ResponseEnvelope:
    """Upload one file with a throwaway UploadExecutor."""
    return await UploadExecutor(logger=logger, client_factory=client_factory).upload(descriptor)
