"""Async HTTP client for the Selling Partner API and the LWA token endpoint."""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from sqp_orchestrator.models.data_models import utc_now

USER_AGENT = "sqp-orchestrator/1.0.0 (Language=Python)"
ACCESS_TOKEN_HEADER = "x-amz-access-token"
DATE_HEADER = "x-amz-date"


class AsyncHTTPClient:
    """
    Async HTTP client wrapper around httpx.AsyncClient.

    Owns the connection settings every SP-API call shares:
    - base URL, so callers pass endpoint paths; absolute URLs (the LWA
      token endpoint, pre-signed document URLs) go out unchanged
    - user agent and JSON accept headers on every request
    - per-call access token, sent with its x-amz-date request timestamp
    - connect/read/write/pool timeouts and an optional transport override
    """

    def __init__(
        self,
        base_url: str = "",
        user_agent: str = USER_AGENT,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        write_timeout: float = 10.0,
        pool_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize HTTP client.

        Args:
            base_url: SP-API host that relative paths resolve against
            user_agent: User-Agent sent with every request
            connect_timeout: Connection timeout in seconds
            read_timeout: Read timeout in seconds
            write_timeout: Write timeout in seconds
            pool_timeout: Pool timeout in seconds
            transport: Optional transport override (tests, mock servers)
            clock: UTC clock for the x-amz-date header
        """
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.pool_timeout = pool_timeout
        self.transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        timeout = httpx.Timeout(
            connect=self.connect_timeout,
            read=self.read_timeout,
            write=self.write_timeout,
            pool=self.pool_timeout
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"user-agent": self.user_agent, "accept": "application/json"},
            timeout=timeout,
            transport=self.transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    def auth_headers(self, access_token: str) -> Dict[str, str]:
        """Headers that authorize one SP-API call."""
        return {
            ACCESS_TOKEN_HEADER: access_token,
            DATE_HEADER: self._clock().strftime("%Y%m%dT%H%M%SZ"),
        }

    async def request(
        self,
        method: str,
        url: str,
        access_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Perform a request, adding SP-API auth headers when a token is given.

        Args:
            method: HTTP method
            url: Endpoint path (joined to base_url) or absolute URL
            access_token: LWA access token; None sends an unauthenticated request
            headers: Extra headers for this request
            **kwargs: Additional arguments for httpx

        Returns:
            HTTP response
        """
        merged = dict(headers or {})
        if access_token is not None:
            merged.update(self.auth_headers(access_token))
        return await self._require_client().request(method, url, headers=merged, **kwargs)

    async def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
        **kwargs
    ) -> httpx.Response:
        return await self.request("GET", url, access_token=access_token, params=params, **kwargs)

    async def post(
        self,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
        **kwargs
    ) -> httpx.Response:
        return await self.request("POST", url, access_token=access_token, json=json, **kwargs)
