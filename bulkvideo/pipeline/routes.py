"""
FastAPI routes for bulk video generation.

Batch Endpoints:
  POST /bulk-video/import                        — Parse CSV / sheet, create batch + items
  POST /bulk-video/{batch_id}/generate           — Run all pending items (background)
  GET  /bulk-video/{batch_id}                    — Batch, item statuses and counts
  POST /bulk-video/{batch_id}/regenerate         — Reset + rerun selected items (background)
  POST /bulk-video/{batch_id}/render             — Re-render completed items (background)
  GET  /bulk-video/{batch_id}/render-status      — Per-format render progress
  POST /bulk-video/{batch_id}/download           — Signed links or a streamed ZIP

Repair Endpoints:
  POST /bulk-video/items/{item_id}/regenerate               — Reset + rerun one item
  POST /bulk-video/scenes/{scene_id}/regenerate-content     — New image for one scene
  POST /bulk-video/scenes/{scene_id}/regenerate-animation   — New clip for one scene
  GET  /bulk-video/scenes/{scene_id}/animation-history      — Current + previous clips
  POST /bulk-video/items/{item_id}/render                   — Re-render all / missing / one format
  GET  /bulk-video/items/{item_id}/outputs                  — Rendered outputs with signed URLs

Misc:
  GET  /bulk-video/presets               — Style presets, animation templates, providers
  POST /bulk-video/storage/refresh-url   — Fresh signed URL for a stored artifact
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException
from fastapi.responses import StreamingResponse

from ..errors import QuotaExceededError, RateLimitedError, StoreUnavailableError
from ..presets import ANIMATION_TEMPLATES, STYLE_PRESETS, get_animation_template, get_preset, get_presets_by_category
from ..provider_factory import ALLOWED_PROVIDERS, ProviderFactory
from .animate import SceneAnimator
from .history import current_entry
from .models import (
    BatchImportRequest,
    BatchImportResponse,
    BatchJob,
    BatchRegenerateRequest,
    BatchRenderRequest,
    BatchStatusResponse,
    DownloadRequest,
    RefreshUrlRequest,
    RegenerateAnimationRequest,
    RegenerateContentRequest,
    RenderRequest,
    RenderStatus,
    VideoItem,
    VideoStatus,
)
from .orchestrator import BulkJobOrchestrator, resolve_settings
from .packager import PackageEntry, build_download_links, entry_name, slugify, stream_zip, unique_entry_names
from .parser import fetch_sheet_rows, parse_table, read_csv_text
from .render import MultiFormatRenderer, normalize_format
from .scene_gen import MotionPromptWriter, SceneContentGenerator
from .storage import AssetStoreGateway, key_owner, logo_key
from .store import SupabaseBatchStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bulk-video", tags=["bulk-video"])


# ── Dependencies (lazy singletons, overridable in tests) ─────────────────────

_store: Optional[SupabaseBatchStore] = None
_gateway: Optional[AssetStoreGateway] = None
_orchestrator: Optional[BulkJobOrchestrator] = None


def get_store() -> SupabaseBatchStore:
    global _store
    if _store is None:
        _store = SupabaseBatchStore()
    return _store


def get_gateway() -> AssetStoreGateway:
    global _gateway
    if _gateway is None:
        _gateway = AssetStoreGateway()
    return _gateway


def get_orchestrator() -> BulkJobOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        store, gateway = get_store(), get_gateway()
        _orchestrator = BulkJobOrchestrator(
            store,
            SceneContentGenerator(gateway),
            SceneAnimator(store, gateway),
            MultiFormatRenderer(store, gateway),
            motion=MotionPromptWriter(gateway),
        )
    return _orchestrator


async def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    store=Depends(get_store),
) -> str:
    """Resolve the caller's auth identity to an internal user id."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        user_id = await store.resolve_user_id(x_user_id)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not user_id:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user_id


def ensure_owner(record, user_id: str):
    if record.user_id != user_id:
        raise PermissionError("You do not have access to this resource")


def _http_error(e: Exception, action: str) -> HTTPException:
    """Map pipeline errors onto HTTP statuses; unexpected ones are logged."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, QuotaExceededError):
        return HTTPException(status_code=402, detail=str(e))
    if isinstance(e, RateLimitedError):
        return HTTPException(status_code=429, detail=str(e))
    if isinstance(e, StoreUnavailableError):
        logger.error(f"{action} failed, store unavailable: {e}", exc_info=True)
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, PermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, LookupError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


async def _owned_item(store, item_id: str, user_id: str) -> VideoItem:
    item = await store.get_item(item_id)
    ensure_owner(item, user_id)
    return item


async def _owned_batch(store, batch_id: str, user_id: str) -> BatchJob:
    batch = await store.get_batch(batch_id)
    ensure_owner(batch, user_id)
    return batch


# ── Presets ──────────────────────────────────────────────────────────────────

@router.get("/presets")
async def list_presets():
    categories = sorted({p["category"] for p in STYLE_PRESETS.values()})
    return {
        "style_presets": {c: get_presets_by_category(c) for c in categories},
        "animation_templates": list(ANIMATION_TEMPLATES.values()),
        "providers": [
            {
                "id": provider,
                "durations": list(ProviderFactory.get_capabilities(provider).durations),
                "resolutions": list(ProviderFactory.get_capabilities(provider).resolutions),
            }
            for provider in ALLOWED_PROVIDERS
        ],
    }


# ── A. Import ────────────────────────────────────────────────────────────────

@router.post("/import", response_model=BatchImportResponse)
async def import_batch(
    request: BatchImportRequest,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    gateway=Depends(get_gateway),
):
    """
    Create a batch from CSV text or a Google Sheet.

    Errors:
      - 400: Missing/unknown columns, unknown provider, bad numbers or formats
    """
    try:
        if bool(request.csv_text) == bool(request.sheet_url):
            raise ValueError("Provide exactly one of csv_text or sheet_url")
        if request.default_duration <= 0 or request.default_scene_count <= 0:
            raise ValueError("default_duration and default_scene_count must be positive")
        if request.default_style_preset:
            get_preset(request.default_style_preset)
        if request.animation_template:
            get_animation_template(request.animation_template)
        formats = list(dict.fromkeys(normalize_format(f) for f in request.default_formats))
        if not formats:
            raise ValueError("At least one default format is required")

        if request.csv_text:
            rows = read_csv_text(request.csv_text)
        else:
            rows = await fetch_sheet_rows(request.sheet_url)
        result = parse_table(rows, request.column_mapping)

        batch_id = str(uuid4())
        logo_ref = None
        if request.brand_logo_url:
            logo_ref = await _store_logo(gateway, batch_id, request.brand_logo_url)

        batch = await store.create_batch(BatchJob(
            id=batch_id,
            user_id=user_id,
            name=request.name,
            description=request.description,
            default_formats=formats,
            default_duration=request.default_duration,
            default_scene_count=request.default_scene_count,
            default_image_style=request.default_image_style,
            default_style_preset=request.default_style_preset,
            default_animation_provider=request.default_animation_provider,
            camera_fixed=request.camera_fixed,
            animation_template=request.animation_template,
            brand_logo_ref=logo_ref,
            logo_position=request.logo_position,
        ))

        items = await store.create_items([
            VideoItem(
                id=str(uuid4()),
                batch_id=batch.id,
                user_id=user_id,
                row_index=spec.row_index,
                text_content=spec.text_content,
                product_image_url=gateway.persistable_ref(spec.product_image_url) if spec.product_image_url else None,
                custom_image_style=spec.image_style,
                custom_formats=spec.video_formats,
                custom_animation_provider=spec.animation_provider,
                custom_duration=spec.duration,
                custom_scene_count=spec.scene_count,
            )
            for spec in result.specs
        ])
        logger.info(f"Batch {batch.id} imported: {len(items)} items, {len(result.warnings)} warnings")
        return BatchImportResponse(batch=batch, item_count=len(items), warnings=result.warnings)
    except Exception as e:
        raise _http_error(e, "Batch import")


async def _store_logo(gateway: AssetStoreGateway, batch_id: str, url: str) -> str:
    if gateway.is_store_url(url):
        return gateway.persistable_ref(url)
    ref = await gateway.copy_from_url(url, logo_key(batch_id), content_type="image/png")
    return ref.uri


# ── B. Generate ──────────────────────────────────────────────────────────────

@router.post("/{batch_id}/generate")
async def generate_batch(
    batch_id: str,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    orchestrator=Depends(get_orchestrator),
):
    """
    Start processing every pending item, and any item a dead run left
    generating. Returns immediately; poll GET /{batch_id}.
    """
    try:
        await _owned_batch(store, batch_id, user_id)
        pending = [
            item for item in await store.list_items(batch_id)
            if item.status == VideoStatus.PENDING
            or (item.status == VideoStatus.GENERATING and not orchestrator.is_item_active(item.id))
        ]
        if not pending:
            return {"message": "Nothing to generate", "batch_id": batch_id, "pending": 0}
        await orchestrator.run_batch_background(batch_id)
        return {"message": "Batch generation started", "batch_id": batch_id, "pending": len(pending)}
    except Exception as e:
        raise _http_error(e, "Batch generate")


# ── C. Status ────────────────────────────────────────────────────────────────

@router.get("/{batch_id}", response_model=BatchStatusResponse)
async def get_batch_status(
    batch_id: str,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
):
    try:
        batch = await _owned_batch(store, batch_id, user_id)
        items = await store.list_items(batch_id)
        counts = {status: 0 for status in VideoStatus}
        for item in items:
            counts[item.status] += 1
        return BatchStatusResponse(
            batch=batch,
            items=items,
            total=len(items),
            completed=counts[VideoStatus.COMPLETED],
            failed=counts[VideoStatus.FAILED],
            pending=counts[VideoStatus.PENDING],
            generating=counts[VideoStatus.GENERATING],
        )
    except Exception as e:
        raise _http_error(e, "Batch status")


@router.get("/{batch_id}/render-status")
async def get_render_status(
    batch_id: str,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
):
    """Render progress over the formats every completed item should have."""
    try:
        batch = await _owned_batch(store, batch_id, user_id)
        items = await store.list_items(batch_id, status=VideoStatus.COMPLETED)
        recorded: dict[tuple[str, str], RenderStatus] = {
            (o.item_id, o.format): o.status for o in await store.list_batch_outputs(batch_id)
        }

        counts = {status: 0 for status in RenderStatus}
        rows = []
        for item in items:
            formats = {
                fmt: recorded.get((item.id, fmt), RenderStatus.PENDING)
                for fmt in resolve_settings(item, batch).formats
            }
            for status in formats.values():
                counts[status] += 1
            rows.append({"item_id": item.id, "row_index": item.row_index, "formats": formats})

        return {
            "batch_id": batch_id,
            "is_rendering": counts[RenderStatus.RENDERING] > 0,
            "total": sum(counts.values()),
            "completed": counts[RenderStatus.COMPLETED],
            "failed": counts[RenderStatus.FAILED],
            "rendering": counts[RenderStatus.RENDERING],
            "pending": counts[RenderStatus.PENDING],
            "items": rows,
        }
    except Exception as e:
        raise _http_error(e, "Render status")


# ── C2. Batch-wide repair ────────────────────────────────────────────────────

@router.post("/{batch_id}/regenerate")
async def regenerate_batch_items(
    batch_id: str,
    request: BatchRegenerateRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    orchestrator=Depends(get_orchestrator),
):
    """
    Reset the selected items and run them again in the background.
    Items that are currently generating are skipped and listed as such.

    Errors:
      - 400: Empty selection
      - 404: An id that is not an item of this batch
    """
    try:
        if not request.item_ids:
            raise ValueError("item_ids must not be empty")
        await _owned_batch(store, batch_id, user_id)
        known = {item.id for item in await store.list_items(batch_id)}
        wanted = list(dict.fromkeys(request.item_ids))
        unknown = [item_id for item_id in wanted if item_id not in known]
        if unknown:
            raise LookupError(f"Not items of batch {batch_id}: {', '.join(unknown)}")

        busy = [item_id for item_id in wanted if orchestrator.is_item_active(item_id)]
        started = [item_id for item_id in wanted if item_id not in busy]
        for item_id in started:
            background_tasks.add_task(orchestrator.regenerate_item, item_id)
        logger.info(f"[{batch_id}] regenerating {len(started)} items, {len(busy)} busy")
        return {
            "message": f"Started regenerating {len(started)} items",
            "batch_id": batch_id,
            "started": started,
            "skipped": busy,
        }
    except Exception as e:
        raise _http_error(e, "Batch regenerate")


@router.post("/{batch_id}/render")
async def render_batch(
    batch_id: str,
    request: BatchRenderRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    orchestrator=Depends(get_orchestrator),
):
    """
    Re-render completed items (all of them, or the selected `item_ids`) in
    the background. mode=missing only renders formats without a completed
    output. Poll GET /{batch_id}/render-status.
    """
    try:
        await _owned_batch(store, batch_id, user_id)
        wanted = set(request.item_ids)
        items = [
            item for item in await store.list_items(batch_id, status=VideoStatus.COMPLETED)
            if not wanted or item.id in wanted
        ]
        for item in items:
            background_tasks.add_task(orchestrator.render_item, item.id, mode=request.mode)
        logger.info(f"[{batch_id}] rendering {len(items)} items ({request.mode.value})")
        return {
            "message": f"Started rendering {len(items)} items",
            "batch_id": batch_id,
            "item_ids": [item.id for item in items],
        }
    except Exception as e:
        raise _http_error(e, "Batch render")


# ── D. Item / scene repair ───────────────────────────────────────────────────

@router.post("/items/{item_id}/regenerate")
async def regenerate_item(
    item_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    orchestrator=Depends(get_orchestrator),
):
    """Clear the item's scenes and outputs and run it again from scratch."""
    try:
        await _owned_item(store, item_id, user_id)
        if orchestrator.is_item_active(item_id):
            raise ValueError("Item is currently generating")
        background_tasks.add_task(orchestrator.regenerate_item, item_id)
        return {"message": "Item regeneration started", "item_id": item_id}
    except Exception as e:
        raise _http_error(e, "Item regenerate")


@router.post("/scenes/{scene_id}/regenerate-content")
async def regenerate_scene_content(
    scene_id: str,
    request: RegenerateContentRequest,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    orchestrator=Depends(get_orchestrator),
):
    try:
        scene = await store.get_scene(scene_id)
        await _owned_item(store, scene.item_id, user_id)
        return await orchestrator.regenerate_scene_content(
            scene_id, prompt=request.prompt, reanimate=request.reanimate,
        )
    except Exception as e:
        raise _http_error(e, "Scene content regenerate")


@router.post("/scenes/{scene_id}/regenerate-animation")
async def regenerate_scene_animation(
    scene_id: str,
    request: RegenerateAnimationRequest,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    orchestrator=Depends(get_orchestrator),
):
    """
    New animation for one scene; the previous clip moves into history.

    Errors:
      - 400: Unknown provider or unsupported parameters
      - 402: Provider out of credits
      - 429: Provider rate limit
    """
    try:
        scene = await store.get_scene(scene_id)
        await _owned_item(store, scene.item_id, user_id)
        return await orchestrator.regenerate_scene_animation(
            scene_id,
            provider=request.provider,
            prompt=request.prompt,
            allow_fallback=request.fallback,
        )
    except Exception as e:
        raise _http_error(e, "Scene animation regenerate")


@router.get("/scenes/{scene_id}/animation-history")
async def get_animation_history(
    scene_id: str,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    gateway=Depends(get_gateway),
):
    try:
        scene = await store.get_scene(scene_id)
        await _owned_item(store, scene.item_id, user_id)
        current = current_entry(scene)
        return {
            "scene_id": scene.id,
            "current": current.model_dump() if current else None,
            "current_url": gateway.resolve_read_url(scene.animation_ref) if scene.animation_ref else None,
            "history": [
                {**entry.model_dump(), "url": gateway.resolve_read_url(entry.video_ref)}
                for entry in reversed(scene.animation_history)
            ],
        }
    except Exception as e:
        raise _http_error(e, "Animation history")


# ── E. Render / outputs ──────────────────────────────────────────────────────

@router.post("/items/{item_id}/render")
async def render_item(
    item_id: str,
    request: RenderRequest,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    orchestrator=Depends(get_orchestrator),
):
    """Re-render an item. With `format`, only that output is replaced."""
    try:
        await _owned_item(store, item_id, user_id)
        outputs = await orchestrator.render_item(item_id, fmt=request.format, mode=request.mode)
        return {"item_id": item_id, "outputs": outputs}
    except Exception as e:
        raise _http_error(e, "Item render")


@router.get("/items/{item_id}/outputs")
async def list_item_outputs(
    item_id: str,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    gateway=Depends(get_gateway),
):
    try:
        await _owned_item(store, item_id, user_id)
        outputs = await store.list_outputs(item_id)
        return {
            "item_id": item_id,
            "outputs": [
                {
                    **output.model_dump(),
                    "url": gateway.presign(output.artifact_ref) if output.artifact_ref else None,
                }
                for output in outputs
            ],
        }
    except Exception as e:
        raise _http_error(e, "List outputs")


# ── F. Download ──────────────────────────────────────────────────────────────

@router.post("/{batch_id}/download")
async def download_batch(
    batch_id: str,
    request: DownloadRequest,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    gateway=Depends(get_gateway),
):
    """
    All completed outputs of a batch (or the selected `output_ids`).

    mode=links → JSON list of signed download URLs
    mode=zip   → application/zip, streamed while it is built
    """
    try:
        if request.mode not in ("links", "zip"):
            raise ValueError("mode must be 'links' or 'zip'")
        batch = await _owned_batch(store, batch_id, user_id)
        entries = await _package_entries(store, batch, request.output_ids)
        if not entries:
            raise LookupError("No completed videos to download")
    except Exception as e:
        raise _http_error(e, "Batch download")

    if request.mode == "links":
        return {"batch_id": batch_id, "files": build_download_links(entries, gateway)}

    filename = f"{slugify(batch.name)}.zip"
    return StreamingResponse(
        stream_zip(entries, gateway),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def _package_entries(store, batch: BatchJob, output_ids: list[str]) -> list[PackageEntry]:
    rows = {item.id: item.row_index for item in await store.list_items(batch.id)}
    wanted = set(output_ids)
    outputs = [
        o for o in await store.list_batch_outputs(batch.id)
        if o.status == RenderStatus.COMPLETED and o.artifact_ref and (not wanted or o.id in wanted)
    ]
    outputs.sort(key=lambda o: (rows.get(o.item_id, 0), o.format))
    names = unique_entry_names(entry_name(batch.name, rows.get(o.item_id, 0), o.format) for o in outputs)
    return [PackageEntry(name=name, artifact_ref=o.artifact_ref) for name, o in zip(names, outputs)]


# ── G. Storage ───────────────────────────────────────────────────────────────

@router.post("/storage/refresh-url")
async def refresh_url(
    request: RefreshUrlRequest,
    user_id: str = Depends(get_current_user),
    store=Depends(get_store),
    gateway=Depends(get_gateway),
):
    """
    Re-sign an expired URL (or an s3:// ref) produced by the asset store.

    Errors:
      - 400: Not a URL of one of the store's buckets
      - 403: The artifact belongs to another user's item or batch
    """
    try:
        ref = gateway.extract_ref(request.url)
        await _ensure_artifact_owner(store, ref.key, user_id)
        return {"url": gateway.presign(ref), "ref": ref.uri}
    except Exception as e:
        raise _http_error(e, "Refresh URL")


async def _ensure_artifact_owner(store, key: str, user_id: str):
    try:
        kind, owner_id = key_owner(key)
    except ValueError:
        raise PermissionError("You do not have access to this resource")
    if kind == "item":
        await _owned_item(store, owner_id, user_id)
    elif kind == "batch":
        await _owned_batch(store, owner_id, user_id)
