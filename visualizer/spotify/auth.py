"""
Spotify token management, the one place for token refresh.

TokenManager.get_valid_token(user_id) returns an access token that is good
for at least ``skew`` more seconds, refreshing and persisting it first when
needed.  Refreshes are single-flight per user: concurrent callers for the
same user wait on one lock and then see the freshly stored record.
"""

import asyncio
import logging
import time

from ..errors import OAuthError, ReauthRequired, TokenNotFound, TransientAuthError

log = logging.getLogger(__name__)

DEFAULT_SKEW = 60  # seconds before expiry at which we refresh


class TokenManager:
    """Hands out valid access tokens backed by a TokenStore."""

    def __init__(self, store, oauth, skew: float = DEFAULT_SKEW, clock=time.time):
        self.store = store
        self.oauth = oauth
        self.skew = skew
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def save_grant(self, user_id: str, token_data: dict):
        """Persist a fresh token response from the code exchange."""
        now = self._clock()
        return await self.store.save(
            user_id,
            token_data["access_token"],
            token_data["refresh_token"],
            now + int(token_data.get("expires_in", 3600)),
            now=now,
        )

    async def get_valid_token(self, user_id: str) -> str:
        """Get a valid access token, refreshing if needed."""
        async with self._lock_for(user_id):
            record = await self.store.get(user_id)
            if record is None:
                raise TokenNotFound(user_id)
            if not record.expires_within(self.skew, self._clock()):
                return record.access_token
            log.info("Token for user %s expired or expiring soon, refreshing", user_id)
            record = await self._refresh(record)
            return record.access_token

    async def _refresh(self, record):
        user_id = record.user_id
        try:
            result = await self.oauth.refresh(record.refresh_token)
        except OAuthError as e:
            if e.error == "invalid_grant":
                log.error("Spotify refresh token for %s revoked, re-authentication required",
                          user_id)
                raise ReauthRequired(user_id, str(e)) from e
            log.warning("Token refresh for %s failed (%s): %s",
                        user_id, e.status or "network", e.error or e.description)
            raise TransientAuthError(user_id, str(e), status=e.status) from e

        now = self._clock()
        expires_in = int(result.get("expires_in", 3600))

        # Spotify only sometimes rotates the refresh token
        refresh_token = result.get("refresh_token") or record.refresh_token
        if refresh_token != record.refresh_token:
            log.info("Refresh token rotated for user %s", user_id)

        saved = await self.store.save(
            user_id, result["access_token"], refresh_token, now + expires_in, now=now)
        log.info("Access token refreshed for %s (expires in %ds)", user_id, expires_in)
        return saved
