"""
Token storage for Spotify OAuth credentials.

One row per Spotify user id in a SQLite table.  Every write is an upsert
keyed on ``user_id`` so a user can never end up with two rows; the later
write wins.

Location: ``database.path`` / $DATABASE_PATH (default ./db/visualizer.db).
"""

import logging
import os
import time
from dataclasses import dataclass

import aiosqlite

log = logging.getLogger(__name__)

TABLE_NAME = "spotify_tokens"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    user_id TEXT PRIMARY KEY,
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at REAL NOT NULL,
    updated_at REAL NOT NULL
)
"""

_UPSERT = f"""
INSERT INTO {TABLE_NAME} (user_id, access_token, refresh_token, expires_at, updated_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(user_id) DO UPDATE SET
    access_token = excluded.access_token,
    refresh_token = excluded.refresh_token,
    expires_at = excluded.expires_at,
    updated_at = excluded.updated_at
"""

_COLUMNS = "user_id, access_token, refresh_token, expires_at, updated_at"


@dataclass(frozen=True)
class TokenRecord:
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: float
    updated_at: float = 0.0

    def expires_within(self, seconds: float, now: float | None = None) -> bool:
        """True if the access token is expired or will be within *seconds*."""
        if now is None:
            now = time.time()
        return now >= self.expires_at - seconds


class TokenStore:
    """SQLite-backed token table (aiosqlite)."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    async def init(self):
        """Create the table (and its directory) if missing."""
        d = os.path.dirname(self.db_path)
        if d:
            os.makedirs(d, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(_SCHEMA)
            await db.commit()
        log.info("Token store ready at %s", self.db_path)

    async def get(self, user_id: str) -> TokenRecord | None:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE user_id = ?", (user_id,))
            row = await cur.fetchone()
        return TokenRecord(*row) if row else None

    async def save(self, user_id: str, access_token: str, refresh_token: str,
                   expires_at: float, now: float | None = None) -> TokenRecord:
        """Insert or replace the record for *user_id* and return it."""
        record = TokenRecord(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            updated_at=time.time() if now is None else now,
        )
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(_UPSERT, (
                record.user_id, record.access_token, record.refresh_token,
                record.expires_at, record.updated_at))
            await db.commit()
        log.info("Tokens saved for user %s", user_id)
        return record

