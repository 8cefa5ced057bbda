"""Swappable structured-record stores for profiles and per-user data.

Toggle via STORAGE_BACKEND env var:
  STORAGE_BACKEND=sqlite      (default, DB_PATH)
  STORAGE_BACKEND=supabase    (requires SUPABASE_URL + SUPABASE_SERVICE_ROLE_KEY)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import aiosqlite
from supabase import Client, create_client

_log = logging.getLogger(__name__)

_JSON_COLUMNS = ("personality_tiles",)
_BOOL_COLUMNS = ("preference_chosen", "has_personality_insights", "onboarding_completed")
PROFILE_COLUMNS = (
    "id", "full_name", "avatar_url", "gender", "personality_tiles",
    "preference_chosen", "has_personality_insights", "onboarding_completed",
    "created_at", "updated_at",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Protocol ─────────────────────────────────────────────────────────────────

@runtime_checkable
class RecordStore(Protocol):
    """Profile rows keyed by user id, user_data rows keyed by (user id, data type)."""

    async def get_profile(self, user_id: str) -> dict[str, Any] | None: ...

    async def create_profile(self, user_id: str, **fields: Any) -> dict[str, Any]: ...

    async def update_profile(self, user_id: str, **fields: Any) -> dict[str, Any] | None:
        """Apply `fields` and return the updated row, or None if absent."""
        ...

    async def delete_profile(self, user_id: str) -> None: ...

    async def get_user_data(self, user_id: str, data_type: str) -> str | None: ...

    async def upsert_user_data(self, user_id: str, data_type: str, content: str) -> None:
        """Update the existing (user_id, data_type) row, else insert one."""
        ...

    async def delete_user_data(self, user_id: str, data_type: str | None = None) -> None: ...


# ── SQLiteRecordStore ────────────────────────────────────────────────────────

class SQLiteRecordStore:
    """Profiles and user_data in a local SQLite file via aiosqlite."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ready = False

    async def _ensure_tables(self, db: aiosqlite.Connection) -> None:
        if self._ready:
            return
        await db.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id                       TEXT PRIMARY KEY,
                full_name                TEXT,
                avatar_url               TEXT,
                gender                   TEXT,
                personality_tiles        TEXT,
                preference_chosen        INTEGER NOT NULL DEFAULT 0,
                has_personality_insights INTEGER NOT NULL DEFAULT 0,
                onboarding_completed     INTEGER NOT NULL DEFAULT 0,
                created_at               TEXT NOT NULL,
                updated_at               TEXT NOT NULL
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS user_data (
                user_id    TEXT NOT NULL,
                data_type  TEXT NOT NULL,
                content    TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, data_type)
            )
        """)
        await db.commit()
        self._ready = True

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path)

    @staticmethod
    def _row_to_profile(row: aiosqlite.Row) -> dict[str, Any]:
        profile = dict(zip(PROFILE_COLUMNS, row))
        for col in _JSON_COLUMNS:
            if profile[col] is not None:
                profile[col] = json.loads(profile[col])
        for col in _BOOL_COLUMNS:
            profile[col] = bool(profile[col])
        return profile

    @staticmethod
    def _to_columns(fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - set(PROFILE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)}")
        row = dict(fields)
        for col in _JSON_COLUMNS:
            if col in row and row[col] is not None:
                row[col] = json.dumps(row[col], ensure_ascii=False)
        for col in _BOOL_COLUMNS:
            if col in row:
                row[col] = int(bool(row[col]))
        return row

    async def get_profile(self, user_id: str) -> dict[str, Any] | None:
        async with self._connect() as db:
            await self._ensure_tables(db)
            async with db.execute(
                f"SELECT {', '.join(PROFILE_COLUMNS)} FROM profiles WHERE id = ?", (user_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_profile(row) if row else None

    async def create_profile(self, user_id: str, **fields: Any) -> dict[str, Any]:
        now = _now()
        row = self._to_columns({**fields, "id": user_id, "created_at": now, "updated_at": now})
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        async with self._connect() as db:
            await self._ensure_tables(db)
            await db.execute(
                f"INSERT OR IGNORE INTO profiles ({cols}) VALUES ({marks})", tuple(row.values())
            )
            await db.commit()
        return await self.get_profile(user_id)

    async def update_profile(self, user_id: str, **fields: Any) -> dict[str, Any] | None:
        row = self._to_columns({**fields, "updated_at": _now()})
        assignments = ", ".join(f"{col} = ?" for col in row)
        async with self._connect() as db:
            await self._ensure_tables(db)
            cursor = await db.execute(
                f"UPDATE profiles SET {assignments} WHERE id = ?", (*row.values(), user_id)
            )
            if cursor.rowcount == 0:
                return None
            await db.commit()
        return await self.get_profile(user_id)

    async def delete_profile(self, user_id: str) -> None:
        async with self._connect() as db:
            await self._ensure_tables(db)
            await db.execute("DELETE FROM profiles WHERE id = ?", (user_id,))
            await db.commit()

    async def get_user_data(self, user_id: str, data_type: str) -> str | None:
        async with self._connect() as db:
            await self._ensure_tables(db)
            async with db.execute(
                "SELECT content FROM user_data WHERE user_id = ? AND data_type = ?",
                (user_id, data_type),
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else None

    async def upsert_user_data(self, user_id: str, data_type: str, content: str) -> None:
        async with self._connect() as db:
            await self._ensure_tables(db)
            await db.execute(
                """INSERT INTO user_data (user_id, data_type, content, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT (user_id, data_type)
                   DO UPDATE SET content = excluded.content, updated_at = excluded.updated_at""",
                (user_id, data_type, content, _now()),
            )
            await db.commit()

    async def delete_user_data(self, user_id: str, data_type: str | None = None) -> None:
        async with self._connect() as db:
            await self._ensure_tables(db)
            if data_type is None:
                await db.execute("DELETE FROM user_data WHERE user_id = ?", (user_id,))
            else:
                await db.execute(
                    "DELETE FROM user_data WHERE user_id = ? AND data_type = ?",
                    (user_id, data_type),
                )
            await db.commit()


# ── SupabaseRecordStore ──────────────────────────────────────────────────────

class SupabaseRecordStore:
    """Profiles and user_data tables in Supabase Postgres.

    supabase-py is synchronous; calls run in a worker thread.
    """

    def __init__(self, client: Client) -> None:
        self.client = client

    async def get_profile(self, user_id: str) -> dict[str, Any] | None:
        response = await asyncio.to_thread(
            self.client.table("profiles").select("*").eq("id", user_id).execute
        )
        return response.data[0] if response.data else None

    async def create_profile(self, user_id: str, **fields: Any) -> dict[str, Any]:
        data = {**fields, "id": user_id}
        response = await asyncio.to_thread(
            self.client.table("profiles").upsert(data, ignore_duplicates=True).execute
        )
        if response.data:
            return response.data[0]
        return await self.get_profile(user_id)

    async def update_profile(self, user_id: str, **fields: Any) -> dict[str, Any] | None:
        data = {**fields, "updated_at": _now()}
        response = await asyncio.to_thread(
            self.client.table("profiles").update(data).eq("id", user_id).execute
        )
        return response.data[0] if response.data else None

    async def delete_profile(self, user_id: str) -> None:
        await asyncio.to_thread(self.client.table("profiles").delete().eq("id", user_id).execute)

    async def get_user_data(self, user_id: str, data_type: str) -> str | None:
        response = await asyncio.to_thread(
            self.client.table("user_data")
            .select("content")
            .eq("user_id", user_id)
            .eq("data_type", data_type)
            .limit(1)
            .execute
        )
        return response.data[0]["content"] if response.data else None

    async def upsert_user_data(self, user_id: str, data_type: str, content: str) -> None:
        existing = await asyncio.to_thread(
            self.client.table("user_data")
            .select("id")
            .eq("user_id", user_id)
            .eq("data_type", data_type)
            .execute
        )
        if existing.data:
            await asyncio.to_thread(
                self.client.table("user_data")
                .update({"content": content, "updated_at": _now()})
                .eq("id", existing.data[0]["id"])
                .execute
            )
        else:
            await asyncio.to_thread(
                self.client.table("user_data")
                .insert({"user_id": user_id, "data_type": data_type, "content": content})
                .execute
            )

    async def delete_user_data(self, user_id: str, data_type: str | None = None) -> None:
        query = self.client.table("user_data").delete().eq("user_id", user_id)
        if data_type is not None:
            query = query.eq("data_type", data_type)
        await asyncio.to_thread(query.execute)


# ── Factory ──────────────────────────────────────────────────────────────────

def supabase_client() -> Client:
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in environment")
    return create_client(url, key)


def make_record_store(client: Client | None = None) -> RecordStore:
    backend = os.getenv("STORAGE_BACKEND", "sqlite").lower()

    if backend == "sqlite":
        db_path = os.getenv("DB_PATH", "city_scout.db")
        _log.info("record store: sqlite db=%s", db_path)
        return SQLiteRecordStore(db_path)

    if backend == "supabase":
        _log.info("record store: supabase")
        return SupabaseRecordStore(client or supabase_client())

    raise ValueError(f"Unknown STORAGE_BACKEND={backend!r}. Use 'sqlite' or 'supabase'.")
