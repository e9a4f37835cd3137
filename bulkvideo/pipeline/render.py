"""
Multi-Format Renderer — scene clips → one finished video per target format.

For an item whose scenes all have a completed animation:
  1. Download every scene clip (signed URLs are refreshed on expiry)
  2. Concatenate them once, in scene order, into a master clip
  3. Per format: center-crop to the target aspect, resize, overlay the
     brand logo if the batch has one, encode, upload

Each format has its own RenderedOutput row and its own failure; a broken
format is recorded and the next one still renders.
"""

import os
import re
import time
import asyncio
import logging
import tempfile
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from .. import metrics
from ..errors import InputValidationError
from .models import (
    BatchJob,
    LogoPosition,
    RenderedOutput,
    RenderMode,
    RenderStatus,
    SceneStatus,
    VideoItem,
)
from .storage import AssetStoreGateway, render_key

logger = logging.getLogger(__name__)

LOGO_PADDING = 20
DEFAULT_FPS = 30
MAX_LOGO_FRACTION = 0.25  # logo never wider/taller than a quarter of the frame

FORMAT_PATTERN = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")

ENCODE_PARAMS = ["-crf", "18", "-pix_fmt", "yuv420p", "-movflags", "+faststart"]


# ── Geometry ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CropBox:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class LogoOverlay:
    path: str
    width: int
    height: int
    position: LogoPosition


def parse_format(fmt: str) -> tuple[int, int]:
    """'1080x1920' → (1080, 1920). H.264 needs positive, even dimensions."""
    match = FORMAT_PATTERN.match(fmt or "")
    if not match:
        raise InputValidationError(f"Invalid format {fmt!r}, expected WIDTHxHEIGHT")
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0 or width % 2 or height % 2:
        raise InputValidationError(f"Invalid format {fmt!r}, dimensions must be positive and even")
    return width, height


def normalize_format(fmt: str) -> str:
    width, height = parse_format(fmt)
    return f"{width}x{height}"


def calculate_crop(src_w: int, src_h: int, dst_w: int, dst_h: int) -> CropBox:
    """Largest centered box of the target aspect that fits in the source."""
    target = dst_w / dst_h
    if src_w / src_h > target:
        height = src_h
        width = min(src_w, round(src_h * target))
    else:
        width = src_w
        height = min(src_h, round(src_w / target))
    width -= width % 2
    height -= height % 2
    return CropBox(x=(src_w - width) // 2, y=(src_h - height) // 2, width=width, height=height)


def fit_logo(logo_w: int, logo_h: int, video_w: int, video_h: int) -> tuple[int, int]:
    """Scale the logo down (keeping aspect) so it fits MAX_LOGO_FRACTION of the frame."""
    scale = min(1.0, (video_w * MAX_LOGO_FRACTION) / logo_w, (video_h * MAX_LOGO_FRACTION) / logo_h)
    return max(2, int(logo_w * scale)), max(2, int(logo_h * scale))


def calculate_logo_position(
    position: LogoPosition,
    logo_w: int,
    logo_h: int,
    video_w: int,
    video_h: int,
    padding: int = LOGO_PADDING,
) -> tuple[int, int]:
    if position == LogoPosition.TOP_LEFT:
        return padding, padding
    if position == LogoPosition.TOP_RIGHT:
        return video_w - logo_w - padding, padding
    if position == LogoPosition.BOTTOM_LEFT:
        return padding, video_h - logo_h - padding
    if position == LogoPosition.BOTTOM_RIGHT:
        return video_w - logo_w - padding, video_h - logo_h - padding
    return (video_w - logo_w) // 2, (video_h - logo_h) // 2


# ── Composition (moviepy / ffmpeg) ───────────────────────────────────────────

class MoviePyCompositor:
    """Blocking moviepy work, pushed to a worker thread so other items keep moving."""

    async def concatenate(self, clip_paths: list[str], output_path: str):
        await asyncio.to_thread(self._concatenate, clip_paths, output_path)

    async def render_format(
        self,
        master_path: str,
        output_path: str,
        width: int,
        height: int,
        logo: Optional[LogoOverlay] = None,
    ):
        await asyncio.to_thread(self._render_format, master_path, output_path, width, height, logo)

    def _concatenate(self, clip_paths: list[str], output_path: str):
        # Lazy import to avoid crashing if ffmpeg is not installed
        from moviepy import VideoFileClip, concatenate_videoclips

        clips = [VideoFileClip(p) for p in clip_paths]
        try:
            fps = max((c.fps or DEFAULT_FPS) for c in clips)
            master = concatenate_videoclips(clips, method="compose")
            master.write_videofile(
                output_path, codec="libx264", audio=False, fps=fps,
                ffmpeg_params=ENCODE_PARAMS, logger=None,
            )
        finally:
            for clip in clips:
                clip.close()

    def _render_format(self, master_path, output_path, width, height, logo):
        from moviepy import CompositeVideoClip, ImageClip, VideoFileClip

        clip = VideoFileClip(master_path)
        try:
            box = calculate_crop(clip.w, clip.h, width, height)
            framed = clip.cropped(x1=box.x, y1=box.y, width=box.width, height=box.height)
            framed = framed.resized(new_size=(width, height))

            if logo:
                logo_w, logo_h = fit_logo(logo.width, logo.height, width, height)
                overlay = (
                    ImageClip(logo.path)
                    .resized(new_size=(logo_w, logo_h))
                    .with_duration(framed.duration)
                    .with_position(calculate_logo_position(logo.position, logo_w, logo_h, width, height))
                )
                framed = CompositeVideoClip([framed, overlay], size=(width, height))

            framed.write_videofile(
                output_path, codec="libx264", audio=False, fps=clip.fps or DEFAULT_FPS,
                preset="medium", ffmpeg_params=ENCODE_PARAMS, logger=None,
            )
        finally:
            clip.close()


# ── Renderer ─────────────────────────────────────────────────────────────────

class MultiFormatRenderer:
    def __init__(self, store, gateway: AssetStoreGateway, compositor=None):
        self.store = store
        self.gateway = gateway
        self.compositor = compositor or MoviePyCompositor()

    async def render_item(
        self,
        item: VideoItem,
        batch: BatchJob,
        formats: Optional[list[str]] = None,
        mode: RenderMode = RenderMode.ALL,
    ) -> list[RenderedOutput]:
        """
        Render every requested format of one item.

        Args:
            item:    The item; every scene must have a completed animation.
            batch:   Owning batch (defaults, brand logo).
            formats: Formats to render; defaults to the item's formats.
            mode:    "missing" skips formats that already have a completed output.

        Returns:
            The RenderedOutput rows touched, one per rendered format.
        """
        targets = [normalize_format(f) for f in (formats or item.custom_formats or batch.default_formats)]
        targets = list(dict.fromkeys(targets))

        if mode == RenderMode.MISSING:
            existing = {o.format: o for o in await self.store.list_outputs(item.id)}
            targets = [
                f for f in targets
                if f not in existing or existing[f].status != RenderStatus.COMPLETED
            ]
            if not targets:
                logger.info(f"Item {item.id}: all formats already rendered")
                return []

        scenes = await self.store.list_scenes(item.id)
        incomplete = [s.order for s in scenes if s.status != SceneStatus.COMPLETED or not s.animation_ref]
        if not scenes or incomplete:
            raise ValueError(
                f"Item {item.id} is not ready to render: scenes {incomplete or 'missing'} "
                "have no completed animation"
            )

        outputs = []
        with tempfile.TemporaryDirectory(prefix=f"render-{item.id}-") as workdir:
            try:
                master_path = await self._build_master(item, scenes, workdir)
                logo = await self._fetch_logo(batch, workdir)
            except Exception as e:
                logger.error(f"Item {item.id}: master clip failed: {e}", exc_info=True)
                for fmt in targets:
                    outputs.append(await self.store.upsert_output(
                        item.id, item.batch_id, fmt, status=RenderStatus.FAILED, error=str(e)
                    ))
                return outputs

            for fmt in targets:
                outputs.append(await self._render_one(item, fmt, master_path, logo, workdir))

        return outputs

    async def render_format(self, item: VideoItem, batch: BatchJob, fmt: str) -> RenderedOutput:
        """Re-render exactly one format; other formats' outputs are not touched."""
        outputs = await self.render_item(item, batch, formats=[fmt])
        return outputs[0]

    async def _build_master(self, item: VideoItem, scenes, workdir: str) -> str:
        clip_paths = []
        for scene in sorted(scenes, key=lambda s: s.order):
            path = os.path.join(workdir, f"scene-{scene.order}.mp4")
            with open(path, "wb") as f:
                await self.gateway.download_to(scene.animation_ref, f)
            clip_paths.append(path)

        master_path = os.path.join(workdir, "master.mp4")
        await self.compositor.concatenate(clip_paths, master_path)
        logger.info(f"Item {item.id}: master clip built from {len(clip_paths)} scenes")
        return master_path

    async def _fetch_logo(self, batch: BatchJob, workdir: str) -> Optional[LogoOverlay]:
        if not batch.brand_logo_ref:
            return None
        path = os.path.join(workdir, "logo.png")
        with open(path, "wb") as f:
            await self.gateway.download_to(batch.brand_logo_ref, f)
        return LogoOverlay(path, batch.logo_width, batch.logo_height, batch.logo_position)

    async def _render_one(self, item, fmt, master_path, logo, workdir) -> RenderedOutput:
        previous = await self.store.get_output(item.id, fmt)
        await self.store.upsert_output(item.id, item.batch_id, fmt, status=RenderStatus.RENDERING, error=None)
        start = time.time()
        try:
            width, height = parse_format(fmt)
            out_path = os.path.join(workdir, f"{fmt}.mp4")
            await self.compositor.render_format(master_path, out_path, width, height, logo)
            ref = await self.gateway.upload_file(out_path, render_key(item.id, fmt, uuid4().hex[:8]))
        except Exception as e:
            logger.error(f"Item {item.id}: render {fmt} failed: {e}", exc_info=True)
            metrics.inc_counter("renders.failed")
            metrics.record_error("render", type(e).__name__, str(e), item.id)
            return await self.store.upsert_output(
                item.id, item.batch_id, fmt, status=RenderStatus.FAILED, error=str(e)
            )

        metrics.inc_counter("renders.completed")
        metrics.record_latency("render", (time.time() - start) * 1000)
        logger.info(f"Item {item.id}: rendered {fmt} → {ref.uri}")
        output = await self.store.upsert_output(
            item.id, item.batch_id, fmt,
            status=RenderStatus.COMPLETED, artifact_ref=ref.uri, error=None,
        )
        if previous and previous.artifact_ref and previous.artifact_ref != ref.uri:
            await self._discard(previous.artifact_ref)
        return output

    async def _discard(self, artifact_ref: str):
        try:
            await self.gateway.delete(artifact_ref)
        except Exception as e:
            logger.warning(f"Could not delete replaced render {artifact_ref}: {e}")
