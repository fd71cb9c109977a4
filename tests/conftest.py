"""Pytest configuration and fixtures for api-relay tests.

This file provides:
- Descriptor builders with sensible defaults
- MockClientFactory: httpx.MockTransport-backed clients that record proxies
- PortReservation / MockServer: subprocess management for the mock API server
"""

from __future__ import annotations

import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Callable, Generator

import httpx
import pytest

from api_relay.models import FileUploadDescriptor, ProxyConfig, RequestDescriptor
from api_relay.proxy import ProxySettings

# Project root for fixture paths
PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"

TEST_API_KEY = "sk-test-0123456789abcdef"


def make_request_descriptor(
    method: str = "POST",
    path: str = "/chat/completions",
    body: Any = None,
    base_url: str = "https://api.example.com/v1",
    api_key: str = TEST_API_KEY,
    additional_headers: dict[str, str] | None = None,
    proxy_config: ProxyConfig | None = None,
) -> RequestDescriptor:
    """Create a RequestDescriptor for testing.

    Prefer this over constructing RequestDescriptor directly - it provides
    sensible defaults and documents which fields are typically varied in tests.
    """
    return RequestDescriptor(
        base_url=base_url,
        api_key=api_key,
        method=method,
        path=path,
        body=body,
        additional_headers=additional_headers,
        proxy_config=proxy_config,
    )


def make_upload_descriptor(
    file_data: str = "aGVsbG8gd29ybGQ=",  # "hello world"
    file_name: str = "notes.txt",
    purpose: str = "assistants",
    base_url: str = "https://api.example.com/v1",
    api_key: str = TEST_API_KEY,
    additional_headers: dict[str, str] | None = None,
    proxy_config: ProxyConfig | None = None,
) -> FileUploadDescriptor:
    """Create a FileUploadDescriptor for testing."""
    return FileUploadDescriptor(
        base_url=base_url,
        api_key=api_key,
        file_data=file_data,
        file_name=file_name,
        purpose=purpose,
        additional_headers=additional_headers,
        proxy_config=proxy_config,
    )


class MockClientFactory:
    """Client factory serving every request from a handler function.

    Records the ProxySettings each client was built with and every request
    the handler saw, so tests can assert on both without any network.

    Usage:
        factory = MockClientFactory(lambda request: httpx.Response(200, text="ok"))
        executor = RequestExecutor(client_factory=factory)
    """

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self._handler = handler
        self.proxies: list[ProxySettings] = []
        self.requests: list[httpx.Request] = []

    def __call__(self, proxies: ProxySettings) -> httpx.AsyncClient:
        self.proxies.append(proxies)
        return httpx.AsyncClient(transport=httpx.MockTransport(self._record))

    def _record(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    @property
    def calls(self) -> int:
        return len(self.proxies)

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]


def json_handler(status_code: int = 200, payload: Any = None) -> Callable[[httpx.Request], httpx.Response]:
    """Handler returning a fixed JSON response."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload if payload is not None else {"ok": True})

    return handler


def raising_handler(exc: Exception) -> Callable[[httpx.Request], httpx.Response]:
    """Handler raising the given exception as if the transport failed."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise exc

    return handler


@pytest.fixture
def ok_factory() -> MockClientFactory:
    return MockClientFactory(json_handler())


# =============================================================================
# Mock Server Infrastructure
# =============================================================================


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    Usage:
        reservation = PortReservation()
        server = MockServer(reservation)
        server.start()  # calls release() internally, then binds
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def find_free_port() -> int:
    """Find a port nothing is listening on (used for connection-refused tests)."""
    with PortReservation() as reservation:
        return reservation.port


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class MockServer:
    """Manages the mock OpenAI-compatible server subprocess for integration tests."""

    def __init__(self, port: int | PortReservation) -> None:
        if isinstance(port, PortReservation):
            self._reservation = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}/v1"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. "
                f"stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the mock server subprocess. Safe to call multiple times."""
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    pass
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


@pytest.fixture(scope="session")
def mock_openai_server() -> Generator[MockServer, None, None]:
    """Session-scoped mock API server; base_url ends in /v1."""
    with MockServer(PortReservation()) as server:
        yield server
