"""
Spotify accounts-service client: authorize URL, code exchange, refresh.

Supports both flavours of the Authorization Code flow:
  - with a client secret (HTTP Basic auth on the token endpoint)
  - PKCE, when no secret is configured (client_id + code_verifier in the body)

Usage:
    oauth = SpotifyOAuth(session, client_id, client_secret, redirect_uri)
    url = oauth.authorize_url(state, scopes, code_challenge=None)
    tokens = await oauth.exchange_code(code, code_verifier=None)
    tokens = await oauth.refresh(refresh_token)

Failures raise OAuthError with the HTTP status (0 for network errors) and
the ``error`` code from the response body.
"""

import asyncio
import base64
import hashlib
import logging
import os
import urllib.parse

import aiohttp

from ..errors import OAuthError

log = logging.getLogger(__name__)

ACCOUNTS_URL = "https://accounts.spotify.com"
REQUEST_TIMEOUT = 10

DEFAULT_SCOPES = ("user-read-currently-playing user-read-playback-state "
                  "user-read-email user-read-private")


def generate_code_verifier(length=128):
    """Generate a random code verifier string (43-128 chars, URL-safe)."""
    raw = os.urandom(length)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")[:length]


def generate_code_challenge(verifier):
    """Generate a code challenge from a verifier (S256 method)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class SpotifyOAuth:
    def __init__(self, session: aiohttp.ClientSession, client_id: str,
                 client_secret: str | None, redirect_uri: str,
                 accounts_url: str = ACCOUNTS_URL):
        self._session = session
        self.client_id = client_id
        self.client_secret = client_secret or None
        self.redirect_uri = redirect_uri
        self.accounts_url = accounts_url.rstrip("/")

    @property
    def uses_pkce(self) -> bool:
        return self.client_secret is None

    @property
    def token_url(self) -> str:
        return f"{self.accounts_url}/api/token"

    def authorize_url(self, state: str, scopes: str, code_challenge: str | None = None) -> str:
        """Build the Spotify authorization URL."""
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": scopes,
            "state": state,
        }
        if code_challenge:
            params["code_challenge_method"] = "S256"
            params["code_challenge"] = code_challenge
        return f"{self.accounts_url}/authorize?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: str | None = None) -> dict:
        """Exchange an authorization code for access + refresh tokens.

        Returns dict with 'access_token', 'refresh_token', 'expires_in', etc.
        """
        body = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        if code_verifier:
            body["code_verifier"] = code_verifier
        return await self._token_request(body)

    async def refresh(self, refresh_token: str) -> dict:
        """Mint a new access token.

        Returns dict with 'access_token', 'expires_in' and optionally a
        rotated 'refresh_token'.
        """
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def _token_request(self, body: dict) -> dict:
        auth = None
        if self.client_secret:
            auth = aiohttp.BasicAuth(self.client_id, self.client_secret)
        else:
            body["client_id"] = self.client_id

        try:
            async with self._session.post(
                self.token_url,
                data=body,
                auth=auth,
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            ) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                if resp.status != 200 or not isinstance(data, dict):
                    data = data if isinstance(data, dict) else {}
                    raise OAuthError(resp.status, data.get("error", ""),
                                     data.get("error_description", ""))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OAuthError(0, description=str(e) or e.__class__.__name__) from e

        if "access_token" not in data:
            raise OAuthError(resp.status, description="response has no access_token")
        return data
