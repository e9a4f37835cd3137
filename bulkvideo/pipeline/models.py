"""
Pydantic models and enums for the bulk video pipeline.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from ..animation_provider import AnimationProviderId


# ── Statuses ─────────────────────────────────────────────────────────────────

class VideoStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class SceneStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class RenderStatus(str, Enum):
    PENDING = "pending"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"


class LogoPosition(str, Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"


class RenderMode(str, Enum):
    ALL = "all"
    MISSING = "missing"


# ── Defaults ─────────────────────────────────────────────────────────────────

DEFAULT_FORMATS = ["1080x1920"]
DEFAULT_DURATION = 10
DEFAULT_SCENE_COUNT = 2
DEFAULT_IMAGE_STYLE = "modern product photography"
MAX_ANIMATION_HISTORY = 50


# ── Durable records ──────────────────────────────────────────────────────────

class BatchJob(BaseModel):
    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    default_formats: list[str] = Field(default_factory=lambda: list(DEFAULT_FORMATS))
    default_duration: int = DEFAULT_DURATION
    default_scene_count: int = DEFAULT_SCENE_COUNT
    default_image_style: str = DEFAULT_IMAGE_STYLE
    default_style_preset: Optional[str] = None
    default_animation_provider: AnimationProviderId = AnimationProviderId.BYTEDANCE
    default_resolution: Optional[str] = None
    camera_fixed: bool = False
    animation_template: Optional[str] = None
    brand_logo_ref: Optional[str] = None
    logo_position: LogoPosition = LogoPosition.TOP_RIGHT
    logo_width: int = 200
    logo_height: int = 200
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class VideoItem(BaseModel):
    id: str
    batch_id: str
    user_id: str
    row_index: int
    text_content: str
    product_image_url: Optional[str] = None
    custom_image_style: Optional[str] = None
    custom_formats: list[str] = Field(default_factory=list)
    custom_animation_provider: Optional[AnimationProviderId] = None
    custom_duration: Optional[int] = None
    custom_scene_count: Optional[int] = None
    status: VideoStatus = VideoStatus.PENDING
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AnimationHistoryEntry(BaseModel):
    video_ref: str
    prompt: str = ""
    provider: str = ""
    source_image_ref: Optional[str] = None
    seed: Optional[int] = None
    is_fallback: bool = False
    created_at: str  # ISO timestamp


class Scene(BaseModel):
    id: str
    item_id: str
    order: int
    prompt: str = ""
    image_ref: Optional[str] = None
    status: SceneStatus = SceneStatus.PENDING
    error: Optional[str] = None
    animation_ref: Optional[str] = None
    animation_prompt: Optional[str] = None
    animation_provider: Optional[str] = None
    animation_history: list[AnimationHistoryEntry] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class RenderedOutput(BaseModel):
    id: str
    item_id: str
    batch_id: str
    format: str  # WIDTHxHEIGHT
    status: RenderStatus = RenderStatus.PENDING
    artifact_ref: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ── Parser output ────────────────────────────────────────────────────────────

class ColumnMapping(BaseModel):
    """Field → header name. Header matching is case-insensitive."""
    text_content: str = "text_content"
    product_image: str = "product_image"
    image_style: str = "image_style"
    video_formats: str = "video_formats"
    animation_provider: str = "animation_provider"
    duration: str = "duration"
    scene_count: str = "scene_count"


class JobSpec(BaseModel):
    row_index: int
    text_content: str
    product_image_url: Optional[str] = None
    image_style: Optional[str] = None
    video_formats: list[str] = Field(default_factory=list)
    animation_provider: Optional[AnimationProviderId] = None
    duration: Optional[int] = None
    scene_count: Optional[int] = None


class ParseResult(BaseModel):
    specs: list[JobSpec] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ── Orchestration ────────────────────────────────────────────────────────────

class ItemSettings(BaseModel):
    """Item overrides resolved against the batch defaults."""
    image_style: str
    style_preset: Optional[str] = None
    formats: list[str]
    provider: AnimationProviderId
    duration: int
    scene_count: int
    resolution: Optional[str] = None
    camera_fixed: bool = False
    animation_template: Optional[str] = None

    @property
    def scene_duration(self) -> int:
        return max(1, self.duration // max(1, self.scene_count))


class BatchProgress(BaseModel):
    batch_id: str
    item_id: str
    row_index: int
    stage: str
    status: VideoStatus
    total: int
    completed: int
    failed: int
    error: Optional[str] = None


class BatchRunSummary(BaseModel):
    batch_id: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    aborted: bool = False


# ── API Request Models ───────────────────────────────────────────────────────

class BatchImportRequest(BaseModel):
    name: str
    description: Optional[str] = None
    csv_text: Optional[str] = Field(None, description="Raw CSV including the header row")
    sheet_url: Optional[str] = Field(None, description="Google Sheets URL, exported as CSV")
    column_mapping: ColumnMapping = Field(default_factory=ColumnMapping)
    default_formats: list[str] = Field(default_factory=lambda: list(DEFAULT_FORMATS))
    default_duration: int = DEFAULT_DURATION
    default_scene_count: int = DEFAULT_SCENE_COUNT
    default_image_style: str = DEFAULT_IMAGE_STYLE
    default_style_preset: Optional[str] = None
    default_animation_provider: AnimationProviderId = AnimationProviderId.BYTEDANCE
    camera_fixed: bool = False
    animation_template: Optional[str] = None
    brand_logo_url: Optional[str] = None
    logo_position: LogoPosition = LogoPosition.TOP_RIGHT


class BatchImportResponse(BaseModel):
    batch: BatchJob
    item_count: int
    warnings: list[str] = Field(default_factory=list)


class BatchStatusResponse(BaseModel):
    batch: BatchJob
    items: list[VideoItem]
    total: int
    completed: int
    failed: int
    pending: int
    generating: int


class RegenerateAnimationRequest(BaseModel):
    provider: Optional[str] = None  # validated against the allow-list
    prompt: Optional[str] = None
    fallback: bool = False


class RegenerateContentRequest(BaseModel):
    prompt: Optional[str] = None
    reanimate: bool = True


class RenderRequest(BaseModel):
    format: Optional[str] = None
    mode: RenderMode = RenderMode.ALL


class BatchRenderRequest(BaseModel):
    item_ids: list[str] = Field(default_factory=list, description="Empty means every completed item")
    mode: RenderMode = RenderMode.ALL


class BatchRegenerateRequest(BaseModel):
    item_ids: list[str]


class DownloadRequest(BaseModel):
    mode: str = Field("links", description="'links' or 'zip'")
    output_ids: list[str] = Field(default_factory=list)


class RefreshUrlRequest(BaseModel):
    url: str
