"""Swappable blob stores for per-user files under `user_data/<user_id>/`.

Follows STORAGE_BACKEND like the record stores:
  sqlite   -> LocalBlobStore rooted at BLOB_DIR (default ./user_files)
  supabase -> SupabaseBlobStore on the SUPABASE_BUCKET bucket (default user_files)
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Protocol, runtime_checkable

from storage3.exceptions import StorageApiError
from supabase import Client

from city_scout.storage.records import supabase_client

_log = logging.getLogger(__name__)

BUCKET_FILE_SIZE_LIMIT = 5 * 1024 * 1024
ALLOWED_MIME_TYPES = ["application/json", "text/csv", "text/plain"]


def _check_segment(kind: str, value: str) -> str:
    if "/" in value or "\\" in value or value in ("", ".", ".."):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return value


def user_folder(user_id: str) -> str:
    return f"user_data/{_check_segment('user id', user_id)}"


def object_path(user_id: str, name: str) -> str:
    return f"{user_folder(user_id)}/{_check_segment('object name', name)}"


@runtime_checkable
class BlobStore(Protocol):
    async def upload(self, user_id: str, name: str, content: bytes, content_type: str) -> None:
        """Write (or overwrite) one object in the user's folder."""
        ...

    async def download(self, user_id: str, name: str) -> bytes | None:
        """Return the object bytes, or None if it does not exist."""
        ...

    async def remove(self, user_id: str, names: list[str]) -> None: ...

    async def list_objects(self, user_id: str) -> list[str]: ...


# ── LocalBlobStore ───────────────────────────────────────────────────────────

class LocalBlobStore:
    """Files on local disk, mirroring the bucket layout."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, user_id: str, name: str) -> Path:
        return self.root / object_path(user_id, name)

    async def upload(self, user_id: str, name: str, content: bytes, content_type: str) -> None:
        path = self._path(user_id, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, content)
        _log.debug("saved %s (%s, %d bytes)", path, content_type, len(content))

    async def download(self, user_id: str, name: str) -> bytes | None:
        path = self._path(user_id, name)
        if not path.exists():
            return None
        return await asyncio.to_thread(path.read_bytes)

    async def remove(self, user_id: str, names: list[str]) -> None:
        for name in names:
            self._path(user_id, name).unlink(missing_ok=True)

    async def list_objects(self, user_id: str) -> list[str]:
        folder = self.root / user_folder(user_id)
        if not folder.exists():
            return []
        return sorted(p.name for p in folder.iterdir() if p.is_file())


# ── SupabaseBlobStore ────────────────────────────────────────────────────────

class SupabaseBlobStore:
    """Objects in a private Supabase Storage bucket."""

    def __init__(self, client: Client, bucket: str = "user_files") -> None:
        self.client = client
        self.bucket = bucket
        self._bucket_checked = False

    async def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        try:
            await asyncio.to_thread(self.client.storage.get_bucket, self.bucket)
        except StorageApiError:
            _log.info("creating storage bucket %s", self.bucket)
            await asyncio.to_thread(
                self.client.storage.create_bucket,
                self.bucket,
                options={
                    "public": False,
                    "allowed_mime_types": ALLOWED_MIME_TYPES,
                    "file_size_limit": BUCKET_FILE_SIZE_LIMIT,
                },
            )
        self._bucket_checked = True

    async def upload(self, user_id: str, name: str, content: bytes, content_type: str) -> None:
        await self._ensure_bucket()
        await asyncio.to_thread(
            self.client.storage.from_(self.bucket).upload,
            object_path(user_id, name),
            content,
            {"content-type": content_type, "upsert": "true"},
        )
        _log.info("saved %s for user %s", name, user_id)

    async def download(self, user_id: str, name: str) -> bytes | None:
        try:
            return await asyncio.to_thread(
                self.client.storage.from_(self.bucket).download,
                object_path(user_id, name),
            )
        except StorageApiError as exc:
            _log.info("could not download %s for user %s: %s", name, user_id, exc)
            return None

    async def remove(self, user_id: str, names: list[str]) -> None:
        if not names:
            return
        paths = [object_path(user_id, name) for name in names]
        await asyncio.to_thread(self.client.storage.from_(self.bucket).remove, paths)

    async def list_objects(self, user_id: str) -> list[str]:
        entries = await asyncio.to_thread(
            self.client.storage.from_(self.bucket).list, user_folder(user_id)
        )
        return sorted(e["name"] for e in entries if e.get("name"))


# ── Factory ──────────────────────────────────────────────────────────────────

def make_blob_store(client: Client | None = None) -> BlobStore:
    backend = os.getenv("STORAGE_BACKEND", "sqlite").lower()

    if backend == "sqlite":
        return LocalBlobStore(os.getenv("BLOB_DIR", "user_files"))

    if backend == "supabase":
        return SupabaseBlobStore(client or supabase_client(), os.getenv("SUPABASE_BUCKET", "user_files"))

    raise ValueError(f"Unknown STORAGE_BACKEND={backend!r}. Use 'sqlite' or 'supabase'.")
