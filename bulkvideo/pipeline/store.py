"""
Durable store for batches, items, scenes and rendered outputs.

Backed by Supabase (service role, bypasses RLS). Every mutation is a
single-row write scoped to the targeted record, so a regeneration running
next to a batch never touches sibling rows. The supabase client is
synchronous; calls run in a worker thread to keep the event loop free.

Tables: batch_jobs, video_items, scenes, rendered_outputs, users.
"""

import os
import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

import httpx
from pydantic import BaseModel
from supabase import create_client, Client

from ..errors import StoreUnavailableError
from .models import BatchJob, RenderedOutput, Scene, VideoItem

logger = logging.getLogger(__name__)

# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def _get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_db(value: Any) -> Any:
    """Make model/enum values JSON-safe for PostgREST."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_to_db(v) for v in value]
    return value


def _row(model: BaseModel) -> dict:
    return model.model_dump(mode="json", exclude_none=True)


class SupabaseBatchStore:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        return self._client or _get_service_client()

    async def _execute(self, query):
        try:
            return await asyncio.to_thread(query.execute)
        except (httpx.HTTPError, OSError) as e:
            logger.error(f"Durable store unreachable: {e}", exc_info=True)
            raise StoreUnavailableError(f"Durable store unreachable: {e}") from e

    async def _get_one(self, table: str, record_id: str) -> dict:
        res = await self._execute(self.client.table(table).select("*").eq("id", record_id).limit(1))
        if not res.data:
            raise LookupError(f"{table} record {record_id} not found")
        return res.data[0]

    async def _update(self, table: str, record_id: str, fields: dict) -> dict:
        payload = {k: _to_db(v) for k, v in fields.items()}
        payload["updated_at"] = _now_iso()
        res = await self._execute(self.client.table(table).update(payload).eq("id", record_id))
        if not res.data:
            raise LookupError(f"{table} record {record_id} not found")
        return res.data[0]

    async def _insert(self, table: str, rows: list[dict]) -> list[dict]:
        now = _now_iso()
        for row in rows:
            row.setdefault("created_at", now)
            row.setdefault("updated_at", now)
        res = await self._execute(self.client.table(table).insert(rows))
        return res.data or []

    # ── Users ────────────────────────────────────────────────────────────

    async def resolve_user_id(self, external_id: str) -> Optional[str]:
        """Map an auth-provider identity onto the internal user id."""
        res = await self._execute(
            self.client.table("users").select("id").eq("external_id", external_id).limit(1)
        )
        return res.data[0]["id"] if res.data else None

    # ── Batches ──────────────────────────────────────────────────────────

    async def create_batch(self, batch: BatchJob) -> BatchJob:
        rows = await self._insert("batch_jobs", [_row(batch)])
        return BatchJob(**rows[0])

    async def get_batch(self, batch_id: str) -> BatchJob:
        return BatchJob(**await self._get_one("batch_jobs", batch_id))

    # ── Items ────────────────────────────────────────────────────────────

    async def create_items(self, items: list[VideoItem]) -> list[VideoItem]:
        if not items:
            return []
        rows = await self._insert("video_items", [_row(i) for i in items])
        return sorted((VideoItem(**r) for r in rows), key=lambda i: i.row_index)

    async def get_item(self, item_id: str) -> VideoItem:
        return VideoItem(**await self._get_one("video_items", item_id))

    async def list_items(self, batch_id: str, status: Optional[str] = None) -> list[VideoItem]:
        query = self.client.table("video_items").select("*").eq("batch_id", batch_id)
        if status:
            query = query.eq("status", _to_db(status))
        res = await self._execute(query.order("row_index"))
        return [VideoItem(**r) for r in res.data or []]

    async def update_item(self, item_id: str, **fields) -> VideoItem:
        return VideoItem(**await self._update("video_items", item_id, fields))

    # ── Scenes ───────────────────────────────────────────────────────────

    async def create_scene(self, scene: Scene) -> Scene:
        rows = await self._insert("scenes", [_row(scene)])
        return Scene(**rows[0])

    async def get_scene(self, scene_id: str) -> Scene:
        return Scene(**await self._get_one("scenes", scene_id))

    async def list_scenes(self, item_id: str) -> list[Scene]:
        res = await self._execute(
            self.client.table("scenes").select("*").eq("item_id", item_id).order("order")
        )
        return [Scene(**r) for r in res.data or []]

    async def update_scene(self, scene_id: str, **fields) -> Scene:
        return Scene(**await self._update("scenes", scene_id, fields))

    async def delete_scenes(self, item_id: str) -> int:
        res = await self._execute(self.client.table("scenes").delete().eq("item_id", item_id))
        return len(res.data or [])

    # ── Rendered outputs ─────────────────────────────────────────────────

    async def get_output(self, item_id: str, fmt: str) -> Optional[RenderedOutput]:
        res = await self._execute(
            self.client.table("rendered_outputs").select("*")
            .eq("item_id", item_id).eq("format", fmt).limit(1)
        )
        return RenderedOutput(**res.data[0]) if res.data else None

    async def list_outputs(self, item_id: str) -> list[RenderedOutput]:
        res = await self._execute(
            self.client.table("rendered_outputs").select("*").eq("item_id", item_id).order("format")
        )
        return [RenderedOutput(**r) for r in res.data or []]

    async def list_batch_outputs(self, batch_id: str) -> list[RenderedOutput]:
        res = await self._execute(
            self.client.table("rendered_outputs").select("*").eq("batch_id", batch_id)
        )
        return [RenderedOutput(**r) for r in res.data or []]

    async def upsert_output(self, item_id: str, batch_id: str, fmt: str, **fields) -> RenderedOutput:
        """Create or update the single output row for (item, format)."""
        existing = await self.get_output(item_id, fmt)
        if existing:
            return RenderedOutput(**await self._update("rendered_outputs", existing.id, fields))
        row = {"id": str(uuid4()), "item_id": item_id, "batch_id": batch_id, "format": fmt}
        row.update({k: _to_db(v) for k, v in fields.items()})
        rows = await self._insert("rendered_outputs", [row])
        return RenderedOutput(**rows[0])

    async def delete_outputs(self, item_id: str) -> int:
        res = await self._execute(self.client.table("rendered_outputs").delete().eq("item_id", item_id))
        return len(res.data or [])
