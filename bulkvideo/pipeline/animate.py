"""
Scene animation — image-to-video through the selected provider.

Turns a scene's still image into a clip, copies the clip into the asset
store, and records it as the scene's current animation while pushing the
previous one into history. Provider and parameters are validated before
anything is written or sent.
"""

import os
import random
import logging
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import uuid4

from .. import metrics
from ..animation_provider import AnimationProviderId
from ..errors import AnimationError
from ..provider_factory import ProviderFactory, parse_provider
from .history import record_animation
from .models import AnimationHistoryEntry, Scene, SceneStatus
from .storage import S3_VIDEOS_BUCKET, AssetStoreGateway, animation_key

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

ANIMATION_FALLBACK_ENABLED = os.getenv("ANIMATION_FALLBACK_ENABLED", "false").lower() in ("1", "true", "yes")
FALLBACK_PROVIDER = "fallback"

# Pre-rendered stock clips used when every provider attempt has failed
FALLBACK_CLIPS = tuple(
    f"s3://{S3_VIDEOS_BUCKET}/samples/fallback-{i}.mp4" for i in range(1, 5)
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SceneAnimator:
    def __init__(
        self,
        store,
        gateway: AssetStoreGateway,
        factory=ProviderFactory,
        allow_fallback: bool = ANIMATION_FALLBACK_ENABLED,
        fallback_clips: tuple[str, ...] = FALLBACK_CLIPS,
    ):
        self.store = store
        self.gateway = gateway
        self._factory = factory
        self._allow_fallback = allow_fallback
        self._fallback_clips = fallback_clips

    def capabilities(self, provider: Union[str, AnimationProviderId]):
        """Capabilities of the provider this animator would call."""
        return self._factory.get_provider(parse_provider(provider)).capabilities

    async def animate_scene(
        self,
        scene: Scene,
        *,
        provider: Union[str, AnimationProviderId],
        motion_prompt: str,
        duration: int,
        resolution: Optional[str] = None,
        camera_fixed: bool = False,
        seed: Optional[int] = None,
        aspect_ratio: str = "9:16",
        allow_fallback: Optional[bool] = None,
    ) -> Scene:
        """
        Animate one scene and make the result its current animation.

        Args:
            scene:          Scene as currently stored (its history is extended).
            provider:       Provider id; rejected unless in the allow-list.
            motion_prompt:  Camera / subject motion description.
            duration:       Clip length, must be supported by the provider.
            allow_fallback: Override the configured fallback behaviour.

        Returns:
            The updated Scene.

        Raises:
            InvalidProviderError / InvalidAnimationParamsError before any call.
            AnimationError when the provider fails and fallback is off.
        """
        provider_id = parse_provider(provider)
        client = self._factory.get_provider(provider_id)
        caps = client.capabilities
        caps.validate(duration, resolution or caps.default_resolution, camera_fixed)

        if not scene.image_ref:
            raise ValueError(f"Scene {scene.id} has no image to animate")

        use_fallback = self._allow_fallback if allow_fallback is None else allow_fallback

        await self.store.update_scene(scene.id, status=SceneStatus.GENERATING, error=None)

        try:
            result = await client.animate(
                source_image_url=self.gateway.resolve_read_url(scene.image_ref),
                motion_prompt=motion_prompt,
                duration=duration,
                resolution=resolution,
                camera_fixed=camera_fixed,
                seed=seed,
                aspect_ratio=aspect_ratio,
            )
            stored = await self.gateway.copy_from_url(
                result.video_url, animation_key(scene.item_id, scene.id, uuid4().hex[:8])
            )
            entry = AnimationHistoryEntry(
                video_ref=stored.uri,
                prompt=motion_prompt,
                provider=provider_id.value,
                source_image_ref=scene.image_ref,
                seed=result.seed,
                created_at=_now_iso(),
            )
        except AnimationError as e:
            metrics.record_error("animation", type(e).__name__, str(e), scene.item_id)
            if not use_fallback:
                await self.store.update_scene(scene.id, status=SceneStatus.FAILED, error=str(e))
                raise
            entry = self._fallback_entry(scene, motion_prompt, e)
        except Exception as e:
            await self.store.update_scene(scene.id, status=SceneStatus.FAILED, error=str(e))
            raise

        updated = await self.store.update_scene(
            scene.id,
            animation_ref=entry.video_ref,
            animation_prompt=entry.prompt,
            animation_provider=entry.provider,
            animation_history=record_animation(scene, entry),
            status=SceneStatus.COMPLETED,
            error=None,
        )
        metrics.inc_counter(f"animations.{entry.provider}")
        return updated

    def _fallback_entry(self, scene: Scene, motion_prompt: str, cause: AnimationError) -> AnimationHistoryEntry:
        clip = random.choice(self._fallback_clips)
        logger.warning(
            f"Animation failed for scene {scene.id} ({cause}); substituting sample clip {clip}"
        )
        metrics.inc_counter("animations.fallback_used")
        return AnimationHistoryEntry(
            video_ref=clip,
            prompt=motion_prompt,
            provider=FALLBACK_PROVIDER,
            source_image_ref=scene.image_ref,
            is_fallback=True,
            created_at=_now_iso(),
        )
