"""OAuth token management for the epayment.kz gateway.

The gateway issues client-credentials tokens that live for a limited time.
One GatewayTokenManager is shared by every request in the process, so the
cached token is read without locking and refreshed under a single lock with
a re-check, which keeps concurrent callers from each requesting a token when
the cached one goes stale.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from library_payments.adapters.epayment_types import TokenResponse
from library_payments.config import Settings, settings
from library_payments.exceptions import GatewayAuthenticationError
from library_payments.metrics import gateway_token_refreshes_total

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CachedToken:
    """Access token and the clock reading at which it expires."""

    access_token: str
    expires_at: float


class GatewayTokenManager:
    """Acquires, caches and proactively refreshes the gateway access token."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        oauth_url: str,
        client_id: str,
        client_secret: str,
        terminal: str,
        scope: str,
        expiry_margin_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the token manager.

        Args:
            http_client: Shared HTTP client used for the token exchange
            oauth_url: Gateway OAuth token endpoint
            client_id: Merchant client ID
            client_secret: Merchant client secret
            terminal: Merchant terminal ID
            scope: Space-separated OAuth scopes
            expiry_margin_seconds: Refresh this long before the token expires
            clock: Monotonic clock in seconds, injectable for tests
        """
        self._http = http_client
        self._oauth_url = oauth_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._terminal = terminal
        self._scope = scope
        self._margin = expiry_margin_seconds
        self._clock = clock

        # Replaced as a whole, never mutated
        self._token: Optional[CachedToken] = None
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, http_client: httpx.AsyncClient, config: Settings = settings) -> "GatewayTokenManager":
        return cls(
            http_client=http_client,
            oauth_url=config.epayment_oauth_endpoint,
            client_id=config.epayment_client_id,
            client_secret=config.epayment_client_secret,
            terminal=config.epayment_terminal,
            scope=config.epayment_oauth_scope,
            expiry_margin_seconds=config.epayment_token_expiry_margin_seconds,
        )

    def _is_fresh(self, token: Optional[CachedToken]) -> bool:
        return token is not None and self._clock() < token.expires_at - self._margin

    async def get_token(self) -> str:
        """
        Return a valid access token, refreshing it if needed.

        Returns:
            Bearer access token

        Raises:
            GatewayAuthenticationError: If the token exchange fails
        """
        token = self._token
        if self._is_fresh(token):
            return token.access_token

        async with self._refresh_lock:
            # Another task may have refreshed while we waited for the lock
            token = self._token
            if self._is_fresh(token):
                return token.access_token

            token = await self._request_token()
            self._token = token
            return token.access_token

    def invalidate(self) -> None:
        """Drop the cached token so the next call performs a fresh exchange."""
        self._token = None

    async def _request_token(self) -> CachedToken:
        form = {
            "grant_type": "client_credentials",
            "scope": self._scope,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "terminal": self._terminal,
        }

        try:
            response = await self._http.post(self._oauth_url, data=form)
        except httpx.HTTPError as e:
            gateway_token_refreshes_total.labels(outcome="transport_error").inc()
            logger.error("gateway_token_request_failed", error=str(e), error_type=type(e).__name__)
            raise GatewayAuthenticationError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            gateway_token_refreshes_total.labels(outcome="rejected").inc()
            logger.error("gateway_token_rejected", status_code=response.status_code)
            raise GatewayAuthenticationError(
                f"Token request rejected with HTTP {response.status_code}",
                http_status=response.status_code,
            )

        try:
            payload = TokenResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            gateway_token_refreshes_total.labels(outcome="malformed").inc()
            logger.error("gateway_token_malformed", error=str(e))
            raise GatewayAuthenticationError("Token response could not be parsed") from e

        gateway_token_refreshes_total.labels(outcome="success").inc()
        logger.info("gateway_token_refreshed", expires_in=payload.expires_in, scope=payload.scope)

        return CachedToken(
            access_token=payload.access_token,
            expires_at=self._clock() + payload.expires_in,
        )
