"""Shared HTTP plumbing for the region and identity clients.

Both backends speak JSON over HTTPS with a strict status-code contract:
every call names the codes it accepts, and any other response becomes a
BackendStatusError carrying the code. Cancellation of the calling task
aborts the in-flight request.
"""

from __future__ import annotations

import logging
import ssl
from collections.abc import Awaitable, Callable
from typing import Any, Self

import httpx

from .config import DEFAULT_REQUEST_TIMEOUT_SECONDS, TLSConfig
from .errors import BackendStatusError

logger = logging.getLogger(__name__)

TokenSource = Callable[[], Awaitable[str]]

# Called when the backend rejects a token, before the request is retried
TokenInvalidator = Callable[[], None]

# Response bodies quoted in errors are cut to this length
MAX_ERROR_BODY_LENGTH = 512


def ssl_context(tls: TLSConfig) -> ssl.SSLContext:
    """Build a client TLS context, presenting a certificate when configured."""
    context = ssl.create_default_context(
        cafile=str(tls.ca_file) if tls.ca_file is not None else None
    )
    if tls.client_cert_file is not None and tls.client_key_file is not None:
        context.load_cert_chain(str(tls.client_cert_file), str(tls.client_key_file))
    return context


class BackendClient:
    """Async JSON client bound to one backend service.

    The underlying httpx client is created lazily so a client can be
    constructed before the event loop runs; use ``async with`` or call
    ``aclose()`` to release connections.
    """

    def __init__(
        self,
        base_url: str,
        token_source: TokenSource | None = None,
        on_unauthorized: TokenInvalidator | None = None,
        tls: TLSConfig | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token_source = token_source
        self._on_unauthorized = on_unauthorized
        self._tls = tls or TLSConfig()
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            if self._transport is not None:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url, timeout=self._timeout, transport=self._transport
                )
            else:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url, timeout=self._timeout, verify=ssl_context(self._tls)
                )
        return self._client

    async def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token_source is not None:
            headers["Authorization"] = f"Bearer {await self._token_source()}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        expected: tuple[int, ...],
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Execute a request and enforce its status-code contract.

        A 401 invalidates the token and the request is sent once more with
        a freshly issued one.

        Raises:
            BackendStatusError: If the response code is not in ``expected``.
            httpx.RequestError: If the request could not be completed.
        """
        resp = await self.client.request(
            method, path, headers=await self._headers(), json=json, params=params
        )

        if resp.status_code == 401 and self._on_unauthorized is not None:
            logger.info(
                "Token rejected, retrying with a fresh one",
                extra={"method": method, "path": path},
            )
            self._on_unauthorized()
            resp = await self.client.request(
                method, path, headers=await self._headers(), json=json, params=params
            )

        if resp.status_code not in expected:
            logger.debug(
                "Unexpected backend response",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": resp.status_code,
                    "expected": list(expected),
                },
            )
            raise BackendStatusError(
                resp.status_code,
                f"{method} {path} expected {'/'.join(map(str, expected))}: "
                f"{resp.text[:MAX_ERROR_BODY_LENGTH]}",
            )

        return resp
