"""
Shared contract for image-to-video animation back ends.

The set of providers is closed: every back end has an AnimationProviderId
member and a ProviderCapabilities describing the parameter ranges it accepts.
Parameters are validated before any network call is made.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import InvalidAnimationParamsError


class AnimationProviderId(str, Enum):
    BYTEDANCE = "bytedance"
    RUNWAY = "runway"


@dataclass(frozen=True)
class ProviderCapabilities:
    durations: tuple[int, ...]
    resolutions: tuple[str, ...]
    default_resolution: str
    supports_camera_fixed: bool = False
    supports_seed: bool = False

    def normalize_duration(self, seconds: int) -> int:
        """Snap a computed scene length to the nearest supported duration (ties go short)."""
        return min(self.durations, key=lambda d: (abs(d - seconds), d))

    def validate(self, duration: int, resolution: str, camera_fixed: bool = False):
        if duration not in self.durations:
            raise InvalidAnimationParamsError(
                f"Unsupported duration {duration}s. Allowed: {list(self.durations)}"
            )
        if resolution not in self.resolutions:
            raise InvalidAnimationParamsError(
                f"Unsupported resolution {resolution!r}. Allowed: {list(self.resolutions)}"
            )
        if camera_fixed and not self.supports_camera_fixed:
            raise InvalidAnimationParamsError("This provider does not support a fixed camera")


@dataclass
class AnimationResult:
    video_url: str
    seed: Optional[int] = None


class AnimationProvider:
    """Base class for provider clients. Subclasses implement _submit()."""

    provider_id: AnimationProviderId
    capabilities: ProviderCapabilities

    async def animate(
        self,
        source_image_url: str,
        motion_prompt: str,
        duration: int,
        resolution: Optional[str] = None,
        camera_fixed: bool = False,
        seed: Optional[int] = None,
        aspect_ratio: str = "9:16",
    ) -> AnimationResult:
        resolution = resolution or self.capabilities.default_resolution
        self.capabilities.validate(duration, resolution, camera_fixed)
        if not source_image_url:
            raise InvalidAnimationParamsError("A source image URL is required")
        if seed is not None and not self.capabilities.supports_seed:
            seed = None
        return await self._submit(
            source_image_url, motion_prompt, duration, resolution, camera_fixed, seed, aspect_ratio
        )

    async def _submit(
        self,
        source_image_url: str,
        motion_prompt: str,
        duration: int,
        resolution: str,
        camera_fixed: bool,
        seed: Optional[int],
        aspect_ratio: str,
    ) -> AnimationResult:
        raise NotImplementedError
