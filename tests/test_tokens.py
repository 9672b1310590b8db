"""Tests for the SQLite token store"""

import aiosqlite

from visualizer.spotify.tokens import TABLE_NAME, TokenRecord


async def _row_count(store, user_id):
    async with aiosqlite.connect(store.db_path) as db:
        cur = await db.execute(f"SELECT COUNT(*) FROM {TABLE_NAME} WHERE user_id = ?", (user_id,))
        (count,) = await cur.fetchone()
    return count


class TestTokenStore:
    async def test_missing_user_returns_none(self, store):
        assert await store.get("nobody") is None

    async def test_save_and_get(self, store):
        saved = await store.save("u1", "A1", "R1", 2000.0, now=1000.0)
        assert saved == TokenRecord("u1", "A1", "R1", 2000.0, 1000.0)
        assert await store.get("u1") == saved

    async def test_upsert_keeps_a_single_row(self, store):
        await store.save("u1", "A1", "R1", 2000.0, now=1000.0)
        await store.save("u1", "A2", "R2", 5000.0, now=4000.0)

        assert await _row_count(store, "u1") == 1
        record = await store.get("u1")
        assert record.access_token == "A2"
        assert record.refresh_token == "R2"
        assert record.expires_at == 5000.0

    async def test_users_are_independent(self, store):
        await store.save("u1", "A1", "R1", 2000.0)
        await store.save("u2", "B1", "S1", 3000.0)
        assert (await store.get("u1")).access_token == "A1"
        assert (await store.get("u2")).access_token == "B1"

    async def test_init_creates_directory(self, tmp_path):
        from visualizer.spotify.tokens import TokenStore
        nested = TokenStore(str(tmp_path / "a" / "b" / "tokens.db"))
        await nested.init()
        assert (tmp_path / "a" / "b" / "tokens.db").exists()


class TestTokenRecord:
    def test_expires_within(self):
        record = TokenRecord("u1", "A", "R", expires_at=1000.0)
        assert record.expires_within(60, now=950.0)
        assert record.expires_within(60, now=940.0)
        assert not record.expires_within(60, now=939.0)
        assert record.expires_within(0, now=1000.0)
