"""
Carrier-aggregator session.

Holds the bearer token shared by the rate and label clients. The token is
obtained lazily on first use and refreshed on 401/403. Refresh is
single-flight: concurrent callers that all saw the same stale token wait
on one login instead of each issuing their own.

All calls go through the Manuable proxy, which addresses endpoints with an
``?endpoint=<name>`` query parameter and injects account credentials when
none are configured here.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from enviadores.core.config import settings
from enviadores.core.exceptions import AuthError, TransientError
from enviadores.core.http_client import AUTH_STATUSES, create_async_client

logger = logging.getLogger(__name__)


class AggregatorSession:
    """
    Authenticated access to the aggregator API.

    Usage:
        session = AggregatorSession()
        response = await session.request("POST", "rates", json=payload)
        await session.close()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        session_endpoint: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.AGGREGATOR_PROXY_URL
        self.timeout = timeout or settings.AGGREGATOR_TIMEOUT_SECONDS
        self.email = email if email is not None else settings.AGGREGATOR_EMAIL
        self.password = password if password is not None else settings.AGGREGATOR_PASSWORD
        self.session_endpoint = session_endpoint or settings.AGGREGATOR_SESSION_ENDPOINT
        self._transport = transport

        self._token: Optional[str] = None
        self._http_client: Optional[httpx.AsyncClient] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = create_async_client(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def logout(self) -> None:
        self._token = None

    async def _login(self) -> Dict[str, Any]:
        """Call the session endpoint. Caller must hold _refresh_lock."""
        client = self._get_http_client()
        body: Dict[str, str] = {}
        if self.email and self.password:
            body = {"email": self.email, "password": self.password}

        try:
            response = await client.post(
                self.base_url,
                params={"endpoint": self.session_endpoint},
                json=body,
            )
        except httpx.RequestError as e:
            logger.error(f"[AGGREGATOR] Login request failed: {e.__class__.__name__}")
            raise TransientError(
                message="Could not reach the carrier aggregator",
                details={"reason": str(e)},
            ) from e

        if response.status_code >= 400:
            logger.error(f"[AGGREGATOR] Login rejected: {response.status_code}")
            raise AuthError(
                message="Authentication with the carrier aggregator failed",
                details={"status": response.status_code},
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise AuthError(message="Aggregator session response did not include a token")

        self._token = token
        logger.info("[AGGREGATOR] Session token obtained")
        return data

    async def login(self) -> Dict[str, Any]:
        """Force a fresh login, replacing any current token."""
        async with self._refresh_lock:
            self._token = None
            return await self._login()

    async def ensure_token(self) -> str:
        """Return the current token, logging in first if there is none."""
        if self._token:
            return self._token

        async with self._refresh_lock:
            # Another caller may have logged in while we waited
            if not self._token:
                await self._login()
            return self._token

    async def refresh(self, stale_token: Optional[str]) -> str:
        """
        Replace a token the server rejected.

        If the token already changed since the caller used it, someone else
        refreshed it and that token is returned without a second login.
        """
        async with self._refresh_lock:
            if self._token and self._token != stale_token:
                return self._token
            self._token = None
            await self._login()
            return self._token

    async def request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Make an authenticated request, re-logging in once on 401/403.

        Returns the response for any other status; the caller decides what
        it means. Raises AuthError if the retried request is still rejected
        and lets httpx.RequestError through for the caller to classify.
        """
        client = self._get_http_client()
        query = {"endpoint": endpoint}
        if params:
            query.update(params)

        token = await self.ensure_token()
        response = await client.request(
            method,
            self.base_url,
            params=query,
            json=json,
            headers={"Authorization": f"Bearer {token}"},
        )
        logger.debug(f"[AGGREGATOR] {method} {endpoint} -> {response.status_code}")

        if response.status_code not in AUTH_STATUSES:
            return response

        logger.warning(f"[AGGREGATOR] {endpoint}: {response.status_code}, re-authenticating once")
        token = await self.refresh(token)
        response = await client.request(
            method,
            self.base_url,
            params=query,
            json=json,
            headers={"Authorization": f"Bearer {token}"},
        )

        if response.status_code in AUTH_STATUSES:
            logger.error(f"[AGGREGATOR] {endpoint}: still {response.status_code} after re-login")
            raise AuthError(
                message="Carrier aggregator rejected our credentials",
                details={"status": response.status_code, "endpoint": endpoint},
            )
        return response
