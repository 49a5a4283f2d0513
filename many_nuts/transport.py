"""Pluggable HTTP transports and auth providers for talking to mints."""

from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from .types import InvalidInputError, MintError, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class Transport(Protocol):
    """Request/response channel to a mint's HTTP API."""

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]: ...

    async def aclose(self) -> None: ...


class AuthProvider(Protocol):
    """Supplies headers for auth-gated mint endpoints (NUT-21/22)."""

    async def headers_for(self, method: str, path: str) -> dict[str, str]: ...


class ClearAuth:
    """Static clear-auth token sent on every request."""

    def __init__(self, token: str) -> None:
        self.token = token

    async def headers_for(self, method: str, path: str) -> dict[str, str]:
        return {"Clear-auth": self.token}


class HttpTransport:
    """httpx-backed transport. A SOCKS/HTTP proxy may be set for hidden services."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        proxy: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.proxy = proxy
        self.client = client or httpx.AsyncClient(timeout=timeout, proxy=proxy)

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self.client.request(
                method, url, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout talking to {url}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach {url}: {e}") from e

        if response.status_code >= 500:
            raise NetworkError(f"Mint unavailable ({response.status_code}) at {url}")

        if response.status_code >= 400:
            detail, code = response.text, None
            try:
                body = response.json()
                detail = body.get("detail", detail)
                code = body.get("code")
            except ValueError:
                pass
            raise MintError(f"Mint returned {response.status_code}: {detail}", code=code)

        try:
            return response.json()
        except ValueError as e:
            raise MintError(f"Mint returned invalid JSON from {url}") from e

    async def aclose(self) -> None:
        await self.client.aclose()


def is_onion(url: str) -> bool:
    host = urlparse(url).hostname or ""
    return host.endswith(".onion")


class TransportSelector:
    """Chooses the transport for a mint URL at construction time.

    Hidden-service mints go through ``tor_proxy``; everything else uses a
    direct client. Without a configured proxy ``.onion`` mints are refused.
    """

    def __init__(self, *, timeout: float = DEFAULT_TIMEOUT, tor_proxy: str | None = None) -> None:
        self.timeout = timeout
        self.tor_proxy = tor_proxy

    def __call__(self, mint_url: str) -> Transport:
        if is_onion(mint_url):
            if not self.tor_proxy:
                raise InvalidInputError(
                    f"{mint_url} is a hidden service but no TOR_PROXY is configured"
                )
            logger.debug("Routing %s through %s", mint_url, self.tor_proxy)
            return HttpTransport(timeout=self.timeout, proxy=self.tor_proxy)
        return HttpTransport(timeout=self.timeout)
