"""
BulkJobOrchestrator — drives every row of a batch to a finished video.

Per item, strictly in order:
  Step 1: Scene content  (prompt + still image for every scene)
  Step 2: Animation      (image-to-video per scene)
  Step 3: Render         (one output per requested format)

Items run concurrently under a per-run semaphore. A failing item is marked
failed with its error and never stops its siblings; only an unreachable
durable store stops the run from scheduling more items. Single-item and
single-scene regeneration share a separate, tighter semaphore so they can
run next to a batch without starving it.

An item is claimed before it is worked on: the claim re-reads it, skips it
if another run already took it or finished it, and clears leftovers from
an interrupted attempt. Items left `generating` by a run that died count
as resumable, so the next run (or an item regenerate) starts them over.
"""

import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Collection, Optional, Union
from uuid import uuid4

from .. import metrics
from ..animation_provider import AnimationProviderId
from ..errors import StoreUnavailableError
from ..provider_factory import parse_provider
from .models import (
    BatchJob,
    BatchProgress,
    BatchRunSummary,
    ItemSettings,
    RenderedOutput,
    RenderMode,
    RenderStatus,
    Scene,
    SceneStatus,
    VideoItem,
    VideoStatus,
)
from .prompt_builder import build_motion_prompt, image_aspect_ratio, is_category_image

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = int(os.getenv("BULK_CONCURRENCY", "3"))
REGEN_CONCURRENCY = 1
RESUMABLE_STATUSES = (VideoStatus.PENDING, VideoStatus.GENERATING)

ProgressCallback = Callable[[BatchProgress], Union[None, Awaitable[None]]]


def resolve_settings(item: VideoItem, batch: BatchJob) -> ItemSettings:
    """Item overrides win over batch defaults."""
    return ItemSettings(
        image_style=(item.custom_image_style or "").strip() or batch.default_image_style,
        style_preset=batch.default_style_preset,
        formats=item.custom_formats or batch.default_formats,
        provider=item.custom_animation_provider or batch.default_animation_provider,
        duration=item.custom_duration or batch.default_duration,
        scene_count=item.custom_scene_count or batch.default_scene_count,
        resolution=batch.default_resolution,
        camera_fixed=batch.camera_fixed,
        animation_template=batch.animation_template,
    )


def summarize_scene_failures(scenes: list[Scene]) -> Optional[str]:
    failed = [s for s in scenes if s.status != SceneStatus.COMPLETED]
    if not failed:
        return None
    first = next((s.error for s in failed if s.error), "unknown error")
    if len(failed) == len(scenes):
        return f"All scenes failed to generate: {first}"
    return f"{len(failed)} out of {len(scenes)} scenes failed to generate: {first}"


class _RunState:
    """Counters for one run; handed to the progress callback, never shared."""

    def __init__(self, batch_id: str, total: int, on_progress: Optional[ProgressCallback]):
        self.batch_id = batch_id
        self.total = total
        self.completed = 0
        self.failed = 0
        self.aborted = asyncio.Event()
        self._on_progress = on_progress

    async def report(self, item: VideoItem, stage: str, status: VideoStatus, error: Optional[str] = None):
        if status == VideoStatus.COMPLETED:
            self.completed += 1
        elif status == VideoStatus.FAILED:
            self.failed += 1

        logger.info(
            f"[{self.batch_id}] row {item.row_index} {status.value} → {stage} "
            f"({self.completed + self.failed}/{self.total})"
        )
        if self._on_progress is None:
            return
        progress = BatchProgress(
            batch_id=self.batch_id,
            item_id=item.id,
            row_index=item.row_index,
            stage=stage,
            status=status,
            total=self.total,
            completed=self.completed,
            failed=self.failed,
            error=error,
        )
        try:
            result = self._on_progress(progress)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")


class BulkJobOrchestrator:
    """
    Usage:
        orchestrator = BulkJobOrchestrator(store, content, animator, renderer)

        # Whole batch (pending items), progress per stage transition
        summary = await orchestrator.run_batch(batch_id, on_progress=print)

        # Repair one thing without touching the rest
        await orchestrator.regenerate_item(item_id)
        await orchestrator.regenerate_scene_animation(scene_id, provider="runway")
        await orchestrator.render_item(item_id, fmt="1080x1920")
    """

    def __init__(
        self,
        store,
        content,
        animator,
        renderer,
        concurrency: int = DEFAULT_CONCURRENCY,
        regen_concurrency: int = REGEN_CONCURRENCY,
        motion=None,
    ):
        if concurrency < 1 or regen_concurrency < 1:
            raise ValueError("Concurrency limits must be at least 1")
        self.store = store
        self.content = content
        self.animator = animator
        self.renderer = renderer
        self.motion = motion
        self.concurrency = concurrency
        self._regen_slots = asyncio.Semaphore(regen_concurrency)
        self._background: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()

    def is_item_active(self, item_id: str) -> bool:
        """True while a run or a regenerate in this process holds the item."""
        return item_id in self._in_flight

    @asynccontextmanager
    async def _claimed(
        self, item_id: str, statuses: Optional[Collection[VideoStatus]] = None
    ) -> AsyncIterator[Optional[VideoItem]]:
        """
        Hold an item for the duration of the block.

        Yields None when the item is already held, or when its current status
        is not in `statuses`. A claimed item starts over: scenes and outputs
        left by an earlier attempt are deleted.
        """
        if item_id in self._in_flight:
            yield None
            return
        self._in_flight.add(item_id)
        try:
            item = await self.store.get_item(item_id)
            if statuses is not None and item.status not in statuses:
                yield None
                return
            await self.store.delete_scenes(item_id)
            await self.store.delete_outputs(item_id)
            yield item
        finally:
            self._in_flight.discard(item_id)

    # ── Whole batch ──────────────────────────────────────────────────────

    async def run_batch(
        self,
        batch_id: str,
        on_progress: Optional[ProgressCallback] = None,
        render: bool = True,
    ) -> BatchRunSummary:
        """
        Process every pending item of a batch, plus items a dead run left
        generating.

        Args:
            batch_id:    The batch to run.
            on_progress: Called with a BatchProgress at every stage transition.
            render:      Render all formats as the last stage of each item.

        Returns:
            BatchRunSummary with completed / failed counts.

        Raises:
            StoreUnavailableError after in-flight items finish, if the
            durable store became unreachable during the run.
        """
        batch = await self.store.get_batch(batch_id)
        items = [
            item for item in await self.store.list_items(batch_id)
            if item.status in RESUMABLE_STATUSES and not self.is_item_active(item.id)
        ]
        state = _RunState(batch_id, len(items), on_progress)
        slots = asyncio.Semaphore(self.concurrency)
        store_error: list[StoreUnavailableError] = []

        logger.info(f"[{batch_id}] starting batch run: {len(items)} items, concurrency {self.concurrency}")

        async def worker(item: VideoItem):
            async with slots:
                if state.aborted.is_set():
                    return
                try:
                    async with self._claimed(item.id, RESUMABLE_STATUSES) as claimed:
                        if claimed is None:
                            logger.info(f"[{batch_id}] row {item.row_index} taken elsewhere, skipping")
                            state.total -= 1
                            return
                        await self._process_item(claimed, batch, state, render)
                except StoreUnavailableError as e:
                    if not state.aborted.is_set():
                        logger.error(f"[{batch_id}] store unavailable, no further items will start: {e}")
                    state.aborted.set()
                    store_error.append(e)

        await asyncio.gather(*(worker(item) for item in items))

        summary = BatchRunSummary(
            batch_id=batch_id,
            total=state.total,
            completed=state.completed,
            failed=state.failed,
            aborted=state.aborted.is_set(),
        )
        logger.info(
            f"[{batch_id}] batch run finished: {summary.completed} completed, "
            f"{summary.failed} failed{' (aborted)' if summary.aborted else ''}"
        )
        if store_error:
            raise store_error[0]
        return summary

    # ── One item ─────────────────────────────────────────────────────────

    async def _process_item(self, item: VideoItem, batch: BatchJob, state: _RunState, render: bool):
        started = time.time()
        metrics.inc_counter("items.started")
        metrics.adjust_gauge("active_items", 1)
        try:
            item = await self.store.update_item(item.id, status=VideoStatus.GENERATING, error=None)
            await state.report(item, "started", VideoStatus.GENERATING)

            error = await self._run_stages(item, batch, state, render)
        except StoreUnavailableError as e:
            await self._release_interrupted(item, e)
            raise
        except Exception as e:
            logger.error(f"Item {item.id} (row {item.row_index}) failed: {e}", exc_info=True)
            error = str(e) or type(e).__name__
        finally:
            metrics.adjust_gauge("active_items", -1)

        if error:
            await self.store.update_item(item.id, status=VideoStatus.FAILED, error=error)
            metrics.inc_counter("items.failed")
            metrics.record_error("item", "ItemFailed", error, item.id)
            await state.report(item, "failed", VideoStatus.FAILED, error)
        else:
            await self.store.update_item(item.id, status=VideoStatus.COMPLETED, error=None)
            metrics.inc_counter("items.completed")
            metrics.record_latency("item", (time.time() - started) * 1000)
            await state.report(item, "completed", VideoStatus.COMPLETED)

    async def _release_interrupted(self, item: VideoItem, cause: StoreUnavailableError):
        """Best effort: hand an interrupted item back to the queue."""
        try:
            await self.store.update_item(item.id, status=VideoStatus.PENDING, error=f"Interrupted: {cause}")
            logger.warning(f"Item {item.id} (row {item.row_index}) interrupted, back to pending")
        except StoreUnavailableError as e:
            logger.warning(f"Item {item.id} (row {item.row_index}) left generating, store unavailable: {e}")

    async def _run_stages(self, item: VideoItem, batch: BatchJob, state: _RunState, render: bool) -> Optional[str]:
        """Returns an error message when the item must be marked failed."""
        settings = resolve_settings(item, batch)

        # ── Step 1: Scene content ────────────────────────────────────
        scenes = await self._generate_content(item, batch, settings)
        await state.report(item, "content", VideoStatus.GENERATING)

        # ── Step 2: Animation ────────────────────────────────────────
        scenes = await self._animate_scenes(item, settings, scenes)
        await state.report(item, "animation", VideoStatus.GENERATING)

        failure = summarize_scene_failures(scenes)
        if failure:
            return failure

        # ── Step 3: Render ───────────────────────────────────────────
        if render:
            outputs = await self.renderer.render_item(item, batch, formats=settings.formats)
            await state.report(item, "render", VideoStatus.GENERATING)
            broken = [o.format for o in outputs if o.status != RenderStatus.COMPLETED]
            if broken:
                return f"Rendering failed for formats: {', '.join(broken)}"

        return None

    async def _generate_content(self, item: VideoItem, batch: BatchJob, settings: ItemSettings) -> list[Scene]:
        scenes = []
        for order in range(settings.scene_count):
            start = time.time()
            try:
                content = await self.content.generate(item, batch, settings, order)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.error(f"Item {item.id} scene {order}: content failed: {e}", exc_info=True)
                metrics.record_error("content", type(e).__name__, str(e), item.id)
                scene = Scene(
                    id=str(uuid4()), item_id=item.id, order=order,
                    status=SceneStatus.FAILED, error=f"Image generation failed: {e}",
                )
            else:
                metrics.record_latency("content", (time.time() - start) * 1000)
                scene = Scene(
                    id=str(uuid4()), item_id=item.id, order=order,
                    prompt=content.prompt, image_ref=content.image_ref,
                    status=SceneStatus.PENDING,
                )
            scenes.append(await self.store.create_scene(scene))
        return scenes

    async def _animate_scenes(self, item: VideoItem, settings: ItemSettings, scenes: list[Scene]) -> list[Scene]:
        result = []
        for scene in scenes:
            if scene.status == SceneStatus.FAILED or not scene.image_ref:
                result.append(scene)
                continue
            start = time.time()
            try:
                scene = await self._animate(scene, item, settings)
                metrics.record_latency("animation", (time.time() - start) * 1000)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.error(f"Item {item.id} scene {scene.order}: animation failed: {e}")
                scene = await self.store.get_scene(scene.id)
                if scene.status != SceneStatus.FAILED:
                    scene = await self.store.update_scene(scene.id, status=SceneStatus.FAILED, error=str(e))
            result.append(scene)
        return result

    async def _animate(
        self,
        scene: Scene,
        item: VideoItem,
        settings: ItemSettings,
        provider: Optional[AnimationProviderId] = None,
        prompt: Optional[str] = None,
        allow_fallback: Optional[bool] = None,
    ) -> Scene:
        provider = provider or settings.provider
        caps = self.animator.capabilities(provider)
        motion_prompt = (prompt or "").strip() or await self._motion_prompt(scene, item, settings)
        resolution = settings.resolution if settings.resolution in caps.resolutions else None
        return await self.animator.animate_scene(
            scene,
            provider=provider,
            motion_prompt=motion_prompt,
            duration=caps.normalize_duration(settings.scene_duration),
            resolution=resolution,
            camera_fixed=settings.camera_fixed and caps.supports_camera_fixed,
            aspect_ratio=image_aspect_ratio(settings.formats),
            allow_fallback=allow_fallback,
        )

    async def _motion_prompt(self, scene: Scene, item: VideoItem, settings: ItemSettings) -> str:
        is_product = not is_category_image(item.product_image_url)
        if self.motion is not None:
            return await self.motion.write(scene.image_ref, item.text_content, settings, is_product=is_product)
        return build_motion_prompt(
            settings.image_style,
            is_product=is_product,
            preset_id=settings.style_preset,
            template_id=settings.animation_template,
        )

    # ── Regeneration entry points ────────────────────────────────────────

    async def regenerate_item(
        self,
        item_id: str,
        on_progress: Optional[ProgressCallback] = None,
        render: bool = True,
    ) -> VideoItem:
        """
        Reset one item (scenes and outputs cleared, back to pending) and run it again.

        Works in any status, including `generating` left behind by a dead run.
        Raises ValueError while a run or another regenerate holds the item.
        """
        item = await self.store.get_item(item_id)
        batch = await self.store.get_batch(item.batch_id)

        async with self._regen_slots:
            async with self._claimed(item_id) as claimed:
                if claimed is None:
                    raise ValueError(f"Item {item_id} is currently generating")
                item = await self.store.update_item(item_id, status=VideoStatus.PENDING, error=None)
                logger.info(f"Item {item_id} reset for regeneration")

                state = _RunState(batch.id, 1, on_progress)
                await self._process_item(item, batch, state, render)

        return await self.store.get_item(item_id)

    async def regenerate_scene_animation(
        self,
        scene_id: str,
        provider: Optional[str] = None,
        prompt: Optional[str] = None,
        allow_fallback: bool = False,
    ) -> Scene:
        """
        Re-animate one scene. Only that scene's record changes: its current
        animation moves into history. Existing outputs are left as they are
        and must be re-rendered explicitly.
        """
        provider_id = parse_provider(provider) if provider else None
        scene = await self.store.get_scene(scene_id)
        item = await self.store.get_item(scene.item_id)
        batch = await self.store.get_batch(item.batch_id)
        settings = resolve_settings(item, batch)

        async with self._regen_slots:
            scene = await self.store.get_scene(scene_id)
            return await self._animate(
                scene, item, settings,
                provider=provider_id, prompt=prompt, allow_fallback=allow_fallback,
            )

    async def regenerate_scene_content(
        self,
        scene_id: str,
        prompt: Optional[str] = None,
        reanimate: bool = True,
    ) -> Scene:
        """New still image (and prompt) for one scene, then optionally a new animation."""
        scene = await self.store.get_scene(scene_id)
        item = await self.store.get_item(scene.item_id)
        batch = await self.store.get_batch(item.batch_id)
        settings = resolve_settings(item, batch)

        async with self._regen_slots:
            try:
                content = await self.content.generate(item, batch, settings, scene.order, prompt=prompt)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.error(f"Scene {scene_id}: content regeneration failed: {e}", exc_info=True)
                await self.store.update_scene(scene_id, status=SceneStatus.FAILED, error=f"Image generation failed: {e}")
                raise

            scene = await self.store.update_scene(
                scene_id, prompt=content.prompt, image_ref=content.image_ref, error=None,
            )
            if not reanimate:
                return scene
            return await self._animate(scene, item, settings)

    async def render_item(
        self,
        item_id: str,
        fmt: Optional[str] = None,
        mode: RenderMode = RenderMode.ALL,
    ) -> list[RenderedOutput]:
        """Render an item's formats, or exactly one format when `fmt` is given."""
        item = await self.store.get_item(item_id)
        batch = await self.store.get_batch(item.batch_id)

        async with self._regen_slots:
            if fmt:
                return [await self.renderer.render_format(item, batch, fmt)]
            settings = resolve_settings(item, batch)
            return await self.renderer.render_item(item, batch, formats=settings.formats, mode=mode)

    async def run_batch_background(self, batch_id: str, on_progress: Optional[ProgressCallback] = None):
        """Fire-and-forget wrapper for run_batch."""
        task = asyncio.create_task(self.run_batch(batch_id, on_progress=on_progress))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_task_failure)
        return task


def _log_task_failure(task: asyncio.Task):
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Background batch run failed: {task.exception()}", exc_info=task.exception())
