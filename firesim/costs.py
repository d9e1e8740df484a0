"""
Approximate cost estimates for generated scenarios.

Prices are indicative list prices in USD, good enough for usage dashboards;
billing data remains the source of truth.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Optional

# Per image, keyed by provider then quality
IMAGE_PRICING: Dict[str, Dict[str, float]] = {
    "gemini": {"standard": 0.039, "hd": 0.134},
    "flux": {"standard": 0.040, "hd": 0.080},
    "mock": {"standard": 0.0, "hd": 0.0},
}
DEFAULT_IMAGE_PRICE = 0.040
VIDEO_PRICE = 0.50  # per 4-10 second clip
STORAGE_PRICE_PER_GB = 0.020  # per GB per month


@dataclass
class LineItem:
    count: float
    unit_cost: float
    total_cost: float


@dataclass
class CostBreakdown:
    images: LineItem
    videos: LineItem
    storage_bytes: int
    storage_cost: float
    total_cost: float


class CostEstimator:
    def __init__(self, image_pricing: Optional[Dict[str, Dict[str, float]]] = None):
        self.image_pricing = image_pricing or IMAGE_PRICING

    def image_price(self, provider: str, quality: str = "standard") -> float:
        prices = self.image_pricing.get(provider)
        if prices is None:
            return DEFAULT_IMAGE_PRICE
        return prices.get(quality, prices.get("standard", DEFAULT_IMAGE_PRICE))

    def estimate_scenario_cost(
        self,
        image_count: int,
        video_count: int = 0,
        image_quality: str = "standard",
        image_provider: str = "gemini",
        estimated_storage_mb: float = 10,
    ) -> CostBreakdown:
        unit = self.image_price(image_provider, image_quality)
        image_cost = image_count * unit
        video_cost = video_count * VIDEO_PRICE
        storage_cost = estimated_storage_mb / 1024 * STORAGE_PRICE_PER_GB

        return CostBreakdown(
            images=LineItem(image_count, unit, image_cost),
            videos=LineItem(video_count, VIDEO_PRICE, video_cost),
            storage_bytes=int(estimated_storage_mb * 1024 * 1024),
            storage_cost=storage_cost,
            total_cost=image_cost + video_cost + storage_cost,
        )


def format_cost_breakdown(breakdown: CostBreakdown) -> str:
    storage_mb = breakdown.storage_bytes / (1024 * 1024)
    return "\n".join([
        f"Images: {breakdown.images.count} x ${breakdown.images.unit_cost:.4f} = ${breakdown.images.total_cost:.4f}",
        f"Videos: {breakdown.videos.count} x ${breakdown.videos.unit_cost:.4f} = ${breakdown.videos.total_cost:.4f}",
        f"Storage: {storage_mb:.2f} MB x ${STORAGE_PRICE_PER_GB:.4f}/GB = ${breakdown.storage_cost:.4f}",
        f"Total: ${breakdown.total_cost:.4f}",
    ])


@dataclass
class UsageSummary:
    date: str
    total_scenarios: int = 0
    total_images: int = 0
    total_videos: int = 0
    total_cost: float = 0.0


@dataclass
class _Recorded:
    day: date
    breakdown: CostBreakdown


@dataclass
class UsageTracker:
    """In-process record of scenario cost estimates, summarised per day."""

    _scenarios: Dict[str, _Recorded] = field(default_factory=dict)

    def record_scenario(self, scenario_id: str, breakdown: CostBreakdown, when: Optional[datetime] = None) -> None:
        self._scenarios[scenario_id] = _Recorded((when or datetime.now()).date(), breakdown)

    def get_daily_summary(self, day: Optional[date] = None) -> UsageSummary:
        day = day or date.today()
        summary = UsageSummary(date=day.isoformat())
        for recorded in self._scenarios.values():
            if recorded.day != day:
                continue
            summary.total_scenarios += 1
            summary.total_images += int(recorded.breakdown.images.count)
            summary.total_videos += int(recorded.breakdown.videos.count)
            summary.total_cost += recorded.breakdown.total_cost
        return summary

    def clear(self) -> None:
        self._scenarios.clear()
