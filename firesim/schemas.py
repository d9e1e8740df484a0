from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import MAX_VIEWPOINTS


ViewPoint = Literal[
    "aerial",
    "helicopter_north",
    "helicopter_south",
    "helicopter_east",
    "helicopter_west",
    "helicopter_above",
    "ground_north",
    "ground_south",
    "ground_east",
    "ground_west",
    "ground_above",
    "ridge",
]

WindDirection = Literal["N", "NE", "E", "SE", "S", "SW", "W", "NW"]
TimeOfDay = Literal["dawn", "morning", "midday", "afternoon", "dusk", "night"]
Intensity = Literal["low", "moderate", "high", "veryHigh", "extreme", "catastrophic"]
FireStage = Literal["spotFire", "developing", "established", "major"]
FireDangerRating = Literal["noRating", "moderate", "high", "extreme", "catastrophic"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class PerimeterGeometry(BaseModel):
    type: Literal["Polygon"] = "Polygon"
    coordinates: List[List[List[float]]]  # [[[lng, lat], ...]]


class FirePerimeter(BaseModel):
    type: Literal["Feature"] = "Feature"
    geometry: PerimeterGeometry
    properties: Dict[str, Any] = Field(default_factory=dict)


class ScenarioInputs(BaseModel):
    fire_danger_rating: Optional[FireDangerRating] = None
    wind_speed: float = Field(..., ge=0, le=120)  # km/h
    wind_direction: WindDirection
    temperature: float  # degrees Celsius
    humidity: float = Field(..., ge=0, le=100)
    time_of_day: TimeOfDay
    intensity: Intensity
    fire_stage: FireStage


class RangeStatistic(BaseModel):
    min: float
    max: float
    mean: float


class GeoContext(BaseModel):
    vegetation_type: str
    vegetation_subtype: Optional[str] = None
    elevation: RangeStatistic
    slope: RangeStatistic
    aspect: WindDirection
    nearby_features: List[str] = Field(default_factory=list)
    data_source: str = "unknown"
    confidence: Literal["low", "medium", "high"] = "medium"


class GenerationRequest(BaseModel):
    """Immutable description of one scenario generation run."""

    model_config = ConfigDict(frozen=True)

    perimeter: FirePerimeter
    inputs: ScenarioInputs
    geo_context: GeoContext
    requested_views: List[ViewPoint] = Field(..., min_length=1)
    seed: Optional[int] = Field(default=None, ge=0)
    # Viewpoint -> base64 (or data URL) screenshot of the map from that angle
    map_screenshots: Dict[ViewPoint, str] = Field(default_factory=dict)
    vegetation_map_screenshot: Optional[str] = None

    @field_validator("requested_views")
    @classmethod
    def cap_requested_views(cls, v: List[str]) -> List[str]:
        # Order and duplicates are kept; anything past the cap is dropped
        return v[:MAX_VIEWPOINTS]


class ImageMetadata(BaseModel):
    width: int
    height: int
    prompt: str
    model: str
    seed: Optional[int] = None
    generated_at: datetime = Field(default_factory=utcnow)
    is_anchor: bool = False
    used_reference_image: bool = False


class GeneratedImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    view_point: ViewPoint
    url: str
    metadata: ImageMetadata


class RunProgress(BaseModel):
    run_id: str
    status: RunStatus = RunStatus.PENDING
    total_images: int
    completed_images: int = 0
    failed_images: int = 0
    images: List[GeneratedImage] = Field(default_factory=list)
    anchor_image: Optional[GeneratedImage] = None
    seed: Optional[int] = None
    error: Optional[str] = None
    thinking_text: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class GenerationResult(BaseModel):
    id: str
    status: RunStatus
    images: List[GeneratedImage]
    anchor_image: Optional[GeneratedImage] = None
    seed: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    thinking_text: Optional[str] = None

    @classmethod
    def from_progress(cls, progress: RunProgress) -> "GenerationResult":
        return cls(
            id=progress.run_id,
            status=progress.status,
            images=list(progress.images),
            anchor_image=progress.anchor_image,
            seed=progress.seed,
            created_at=progress.created_at,
            completed_at=progress.updated_at if progress.status.is_terminal else None,
            error=progress.error,
            thinking_text=progress.thinking_text,
        )


class GenerateResponse(BaseModel):
    run_id: str
    status: RunStatus


class HealthResponse(BaseModel):
    status: str
    provider: str
    model: str
    available: bool
