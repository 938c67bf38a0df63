"""
Pydantic models and enums for the production pipeline.
"""

from enum import Enum, IntEnum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Stages ───────────────────────────────────────────────────────────────────

class Stage(IntEnum):
    DISCOVER = 0
    DESIGN = 1
    LISTING = 2
    MOCKUPS = 3
    VIDEO = 4
    PUBLISH = 5

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @property
    def next(self) -> "Stage":
        return Stage(min(self.value + 1, Stage.PUBLISH.value))


class StageRunStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# ── Design options ───────────────────────────────────────────────────────────

class AspectRatio(str, Enum):
    SQUARE = "1:1"
    PORTRAIT_2_3 = "2:3"
    LANDSCAPE_3_2 = "3:2"
    PORTRAIT_3_4 = "3:4"
    LANDSCAPE_4_3 = "4:3"
    PORTRAIT_9_16 = "9:16"
    LANDSCAPE_16_9 = "16:9"
    LANDSCAPE_21_9 = "21:9"


class ImageResolution(str, Enum):
    RES_1K = "1K"
    RES_2K = "2K"
    RES_4K = "4K"


# ── Stage payloads ───────────────────────────────────────────────────────────

class DesignStyle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    elements: str


class Trend(BaseModel):
    """A discovered theme. `style` is attached from the request, never the response."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str
    description: str
    source_url: Optional[str] = Field(default=None, alias="sourceUrl")
    style: Optional[DesignStyle] = None


class ImagePayload(BaseModel):
    data: str  # base64
    mime_type: str = "image/png"


class GeneratedImage(BaseModel):
    locator: str
    raw_payload: str  # base64, consumed by later stages as generation input
    label: str
    mime_type: str = "image/png"

    @classmethod
    def from_payload(cls, payload: ImagePayload, label: str) -> "GeneratedImage":
        return cls(
            locator=f"data:{payload.mime_type};base64,{payload.data}",
            raw_payload=payload.data,
            label=label,
            mime_type=payload.mime_type,
        )


class ListingData(BaseModel):
    title: str
    description: str
    tags: list[str] = Field(default_factory=list)


class MockupVariant(BaseModel):
    model_config = ConfigDict(frozen=True)

    color: str
    scene: str


# ── Project record ───────────────────────────────────────────────────────────

class Project(BaseModel):
    """The single record holding all accumulated stage outputs for one run."""

    epoch: str = Field(default_factory=lambda: uuid4().hex)
    current_stage: Stage = Stage.DISCOVER
    selected_trend: Optional[Trend] = None
    design_asset: Optional[GeneratedImage] = None
    listing_metadata: Optional[ListingData] = None
    mockup_assets: list[GeneratedImage] = Field(default_factory=list)
    video_asset: Optional[str] = None
    published: bool = False


# ── Progress reporting ───────────────────────────────────────────────────────

class StageStatus(BaseModel):
    stage: Stage
    status: StageRunStatus = StageRunStatus.IDLE
    error: Optional[str] = None
    error_kind: Optional[str] = None
    updated_at: Optional[str] = None


class VariantFailure(BaseModel):
    index: int
    color: str
    error: str


class BatchProgress(BaseModel):
    total: int
    attempted: int = 0
    succeeded: int = 0
    last_index: Optional[int] = None
    generating_index: Optional[int] = None
    failures: list[VariantFailure] = Field(default_factory=list)
    done: bool = False
    cancelled: bool = False


class VideoJob(BaseModel):
    """Handle for a long-running video job; replaced on every poll."""

    name: str
    done: bool = False
    video_uri: Optional[str] = None
    error: Optional[str] = None


class VideoJobStatus(str, Enum):
    STARTED = "STARTED"
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class VideoProgress(BaseModel):
    status: Optional[VideoJobStatus] = None
    polls: int = 0
    job_name: Optional[str] = None
    video_uri: Optional[str] = None
    error: Optional[str] = None


# ── Publish boundary ─────────────────────────────────────────────────────────

class PublishPayload(BaseModel):
    project_id: str
    listing: ListingData
    design: GeneratedImage
    mockups: list[GeneratedImage] = Field(default_factory=list)
    video_url: Optional[str] = None


class PublishReceipt(BaseModel):
    project_id: str
    published_at: str
    asset_urls: list[str] = Field(default_factory=list)
    listing_ref: Optional[str] = None


# ── API Request / Response Models ────────────────────────────────────────────

class DiscoverRequest(BaseModel):
    query: str = Field("", description="Niche or occasion, e.g. 'cat lovers christmas'")
    style_id: Optional[str] = Field(None, description="DesignStyle id from GET /project/styles")


class SelectTrendRequest(BaseModel):
    """Pick a trend by index into the last discovery results, or pass one explicitly."""
    index: Optional[int] = None
    trend: Optional[Trend] = None


class DesignRequest(BaseModel):
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    resolution: ImageResolution = ImageResolution.RES_1K
    reference_image: Optional[str] = Field(None, description="Base64 style reference image")

    @field_validator("reference_image")
    @classmethod
    def _check_data_url(cls, v: Optional[str]) -> Optional[str]:
        if v and v.startswith("data:"):
            header, sep, data = v.partition(",")
            if not sep or not data:
                raise ValueError("reference_image data URL has no payload after ','")
            if ";base64" not in header:
                raise ValueError("reference_image data URL must be base64 encoded")
        return v


class ListingCompleteRequest(BaseModel):
    listing: Optional[ListingData] = None


class VideoRequest(BaseModel):
    prompt: Optional[str] = None


class ApiKeyRequest(BaseModel):
    api_key: str = Field(..., min_length=1)


class ProjectStateResponse(BaseModel):
    project: Project
    stages: list[StageStatus]
    trend_candidates: list[Trend] = Field(default_factory=list)
    listing_draft: Optional[ListingData] = None
    mockup_progress: Optional[BatchProgress] = None
    video_progress: Optional[VideoProgress] = None
