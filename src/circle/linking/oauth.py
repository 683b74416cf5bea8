"""Discord OAuth2 client for the identify scope."""

import asyncio
import logging
from typing import Any, Optional
from urllib.parse import urlencode

import aiohttp

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api"
AUTHORIZE_URL = f"{DISCORD_API_BASE}/oauth2/authorize"
TOKEN_URL = f"{DISCORD_API_BASE}/oauth2/token"
ME_URL = f"{DISCORD_API_BASE}/users/@me"
SCOPE = "identify"


class OAuthError(RuntimeError):
    """Discord rejected or failed an OAuth request."""


class DiscordOAuthClient:
    """Builds authorize URLs and talks to the token and identity endpoints.

    Requests are single attempts; a failed exchange is reported to the
    user rather than retried, since authorization codes are single-use.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 10.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def authorize_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": SCOPE,
            "state": state,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict:
        async def _send(session: aiohttp.ClientSession) -> dict:
            async with session.request(method, url, **kwargs) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise OAuthError(f"{method} {url} returned {response.status}: {body[:200]}")
                return await response.json()

        try:
            if self._session is not None:
                return await _send(self._session)
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                return await _send(session)
        except asyncio.TimeoutError as e:
            raise OAuthError(f"{method} {url} timed out") from e
        except aiohttp.ClientError as e:
            raise OAuthError(f"{method} {url} failed: {e}") from e

    async def exchange_code(self, code: str, redirect_uri: str) -> str:
        """Trade an authorization code for an access token.

        Raises:
            OAuthError: On a non-2xx response, a transport error or a
                response without access_token
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        payload = await self._request(
            "POST",
            TOKEN_URL,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        token = payload.get("access_token")
        if not token:
            raise OAuthError("token response carried no access_token")
        return token

    async def fetch_identity(self, access_token: str) -> str:
        """Discord user id for an access token.

        Raises:
            OAuthError: On request failure or a response without id
        """
        payload = await self._request(
            "GET",
            ME_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        user_id = payload.get("id")
        if not user_id:
            raise OAuthError("discord user id missing")
        return str(user_id)
