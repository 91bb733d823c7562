"""Access token provider with a per-seller TTL cache."""

from typing import Awaitable, Callable, Dict, Mapping, Optional, Protocol, Tuple

from sqp_orchestrator.fetcher.delay import Clock, MonotonicClock
from sqp_orchestrator.fetcher.http_client import AsyncHTTPClient
from sqp_orchestrator.models.data_models import AuthOverrides
from sqp_orchestrator.models.errors import AuthError, ConfigurationError
from sqp_orchestrator.monitoring.logger import StructuredLogger

# Returns (access_token, expires_in_seconds)
TokenFetcher = Callable[[str], Awaitable[Tuple[str, float]]]


class TokenProvider(Protocol):
    async def build_auth_overrides(self, seller_id: str, force_refresh: bool = False) -> AuthOverrides:
        ...


class CachedTokenProvider:
    """Caches access tokens per seller until the TTL (or the token's own expiry) passes."""

    def __init__(
        self,
        fetch_token: TokenFetcher,
        ttl_seconds: float = 3000.0,
        clock: Optional[Clock] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self._fetch_token = fetch_token
        self.ttl_seconds = ttl_seconds
        self.clock = clock or MonotonicClock()
        self.logger = logger
        self._cache: Dict[str, AuthOverrides] = {}

    async def build_auth_overrides(self, seller_id: str, force_refresh: bool = False) -> AuthOverrides:
        """
        Return credentials for seller_id.

        Args:
            seller_id: Amazon seller id
            force_refresh: Bypass the cache (used after a 401/403)

        Returns:
            AuthOverrides with a valid access token
        """
        now = self.clock.now()
        cached = self._cache.get(seller_id)
        if cached and not force_refresh and cached.expires_at > now:
            return cached

        token, expires_in = await self._fetch_token(seller_id)
        auth = AuthOverrides(
            access_token=token,
            seller_id=seller_id,
            expires_at=now + min(self.ttl_seconds, expires_in),
        )
        self._cache[seller_id] = auth
        if self.logger:
            self.logger.log("token_refreshed", seller=seller_id, forced=force_refresh)
        return auth

    def invalidate(self, seller_id: str) -> None:
        self._cache.pop(seller_id, None)


class LwaTokenFetcher:
    """Exchanges a seller's refresh token for an access token at the LWA endpoint."""

    def __init__(
        self,
        http_client: AsyncHTTPClient,
        token_url: str,
        client_id: str,
        client_secret: str,
        refresh_tokens: Mapping[str, str],
    ):
        self.http_client = http_client
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_tokens = refresh_tokens

    async def __call__(self, seller_id: str) -> Tuple[str, float]:
        refresh_token = self.refresh_tokens.get(seller_id)
        if not refresh_token:
            raise ConfigurationError(f"No refresh token configured for seller {seller_id}")

        response = await self.http_client.post(
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        if response.status_code in (400, 401, 403):
            raise AuthError(f"LWA token exchange rejected: {response.text[:200]}",
                            status_code=response.status_code)
        response.raise_for_status()
        body = response.json()
        return body["access_token"], float(body.get("expires_in", 3600))
