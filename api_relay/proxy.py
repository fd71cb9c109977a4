"""Proxy Resolver - Turns an optional ProxyConfig into httpx client settings.

HTTP and HTTPS targets are routed independently: each scheme gets its own
transport mount when a proxy is configured for it, and connects directly
otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from api_relay.errors import ProxyConfigurationError
from api_relay.models import ProxyConfig


# Schemes httpx can speak to a forward proxy without optional extras.
_SUPPORTED_PROXY_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class ProxySettings:
    """Validated proxies for one call.

    ``description`` is empty when the call connects directly.
    """

    http: httpx.Proxy | None = None
    https: httpx.Proxy | None = None
    description: str = ""

    @property
    def active(self) -> bool:
        return self.http is not None or self.https is not None

    def mounts(self) -> dict[str, httpx.AsyncBaseTransport]:
        """Build per-scheme transport mounts for httpx.AsyncClient."""
        mounts: dict[str, httpx.AsyncBaseTransport] = {}
        if self.http is not None:
            mounts["http://"] = httpx.AsyncHTTPTransport(proxy=self.http)
        if self.https is not None:
            mounts["https://"] = httpx.AsyncHTTPTransport(proxy=self.https)
        return mounts

    def client_kwargs(self) -> dict[str, Any]:
        """Build kwargs for httpx.AsyncClient.

        Environment proxy variables (HTTP_PROXY, HTTPS_PROXY, NO_PROXY) apply
        only to direct calls. Once any proxy is configured, the unconfigured
        scheme connects directly and NO_PROXY cannot bypass the mounts.
        """
        kwargs: dict[str, Any] = {}
        mounts = self.mounts()
        if mounts:
            kwargs["mounts"] = mounts
            kwargs["trust_env"] = False
        return kwargs


DIRECT = ProxySettings()


def resolve_proxies(proxy_config: ProxyConfig | None, request_id: str) -> ProxySettings:
    """Validate proxy URLs and build ProxySettings.

    Args:
        proxy_config: Proxies from the descriptor, or None for a direct call.
        request_id: Correlation id for error messages.

    Returns:
        ProxySettings (``DIRECT`` when nothing is configured).

    Raises:
        ProxyConfigurationError: If either proxy URL is malformed.
    """
    if proxy_config is None or proxy_config.is_empty:
        return DIRECT

    http_proxy: httpx.Proxy | None = None
    https_proxy: httpx.Proxy | None = None
    parts: list[str] = []

    if proxy_config.http_proxy:
        http_proxy = _parse_proxy(proxy_config.http_proxy, "HTTP", request_id)
        parts.append(f"HTTP Proxy: {mask_proxy_url(proxy_config.http_proxy)}")
    if proxy_config.https_proxy:
        https_proxy = _parse_proxy(proxy_config.https_proxy, "HTTPS", request_id)
        parts.append(f"HTTPS Proxy: {mask_proxy_url(proxy_config.https_proxy)}")

    return ProxySettings(http=http_proxy, https=https_proxy, description=", ".join(parts))


def mask_proxy_url(url: str) -> str:
    """Hide the password of a proxy URL; other URLs pass through unchanged."""
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return url
    if not parsed.password:
        return url
    return str(parsed.copy_with(password="****"))


def _parse_proxy(url: str, scheme_label: str, request_id: str) -> httpx.Proxy:
    # httpx quotes spaces in hosts rather than rejecting them, so check first.
    for ch in url:
        if ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F:
            raise ProxyConfigurationError(
                request_id, scheme_label, url, "URL contains whitespace or control characters"
            )

    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise ProxyConfigurationError(request_id, scheme_label, url, str(e)) from e

    if parsed.scheme not in _SUPPORTED_PROXY_SCHEMES:
        raise ProxyConfigurationError(
            request_id,
            scheme_label,
            url,
            f"unsupported proxy scheme '{parsed.scheme}' (expected http or https)",
        )
    if not parsed.host:
        raise ProxyConfigurationError(request_id, scheme_label, url, "missing proxy host")

    try:
        return httpx.Proxy(url)
    except (httpx.InvalidURL, ValueError) as e:
        raise ProxyConfigurationError(request_id, scheme_label, url, str(e)) from e
