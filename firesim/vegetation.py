"""
Spatial vegetation context for a fire perimeter.

Samples a vegetation map service at the perimeter centroid and eight compass
points around it so prompts can describe how vegetation changes across the
landscape.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import httpx

from .config import VEGETATION_TIMEOUT_SECONDS
from .schemas import FirePerimeter

logger = logging.getLogger(__name__)

METRES_PER_DEGREE = 111_320
DATA_SOURCE = "NSW SVTM via ArcGIS REST"

Point = Tuple[float, float]  # (lng, lat)
BBox = Tuple[float, float, float, float]  # (min_lng, min_lat, max_lng, max_lat)

# (direction, east unit, north unit)
COMPASS_OFFSETS = (
    ("north", 0.0, 1.0),
    ("northeast", math.sqrt(0.5), math.sqrt(0.5)),
    ("east", 1.0, 0.0),
    ("southeast", math.sqrt(0.5), -math.sqrt(0.5)),
    ("south", 0.0, -1.0),
    ("southwest", -math.sqrt(0.5), -math.sqrt(0.5)),
    ("west", -1.0, 0.0),
    ("northwest", -math.sqrt(0.5), math.sqrt(0.5)),
)


@dataclass
class VegetationContext:
    center_formation: str
    center_class_name: str
    surrounding: Dict[str, str] = field(default_factory=dict)
    unique_formations: List[str] = field(default_factory=list)
    data_source: str = DATA_SOURCE


def perimeter_centroid_and_bbox(perimeter: FirePerimeter) -> Tuple[Point, BBox]:
    """Vertex-average centroid and bounding box of the perimeter's outer ring."""
    ring = perimeter.geometry.coordinates[0]
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    lngs = [c[0] for c in ring]
    lats = [c[1] for c in ring]
    centroid = (sum(lngs) / len(lngs), sum(lats) / len(lats))
    return centroid, (min(lngs), min(lats), max(lngs), max(lats))


def offset_point(point: Point, east_m: float, north_m: float) -> Point:
    lng, lat = point
    d_lat = north_m / METRES_PER_DEGREE
    d_lng = east_m / (METRES_PER_DEGREE * math.cos(math.radians(lat)))
    return lng + d_lng, lat + d_lat


class VegetationService:
    def __init__(
        self,
        base_url: str,
        timeout: float = VEGETATION_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _identify(self, client: httpx.AsyncClient, point: Point, bbox: BBox) -> Optional[Tuple[str, str]]:
        params = {
            "geometry": f"{point[0]},{point[1]}",
            "geometryType": "esriGeometryPoint",
            "sr": "4283",
            "layers": "all",
            "tolerance": "5",
            "mapExtent": ",".join(str(v) for v in bbox),
            "imageDisplay": "512,512,96",
            "returnGeometry": "false",
            "f": "json",
        }
        try:
            response = await client.get(f"{self.base_url}/identify", params=params)
            response.raise_for_status()
            results = response.json().get("results") or []
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"[vegetation] Identify failed at {point}: {e}")
            return None

        if not results:
            return None
        attrs = results[0].get("attributes") or {}
        return attrs.get("FormationName") or "Unknown", attrs.get("ClassName") or "Unknown"

    async def query_context(self, centroid: Point, bbox: BBox, radius_m: float = 500) -> Optional[VegetationContext]:
        """
        Sample vegetation at the centroid and eight points radius_m away.

        Returns None when the centre point cannot be identified.
        """
        buffer_lng = (bbox[2] - bbox[0]) * 0.5
        buffer_lat = (bbox[3] - bbox[1]) * 0.5
        extent = (bbox[0] - buffer_lng, bbox[1] - buffer_lat, bbox[2] + buffer_lng, bbox[3] + buffer_lat)

        samples = [("center", centroid)] + [
            (direction, offset_point(centroid, east * radius_m, north * radius_m))
            for direction, east, north in COMPASS_OFFSETS
        ]

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            results = await asyncio.gather(*(self._identify(client, point, extent) for _, point in samples))
        finally:
            if self._client is None:
                await client.aclose()

        center = results[0]
        if center is None:
            return None

        surrounding = {
            direction: result[0]
            for (direction, _), result in zip(samples[1:], results[1:])
            if result is not None
        }
        unique: List[str] = []
        for result in results:
            if result is not None and result[0] != "Unknown" and result[0] not in unique:
                unique.append(result[0])

        return VegetationContext(
            center_formation=center[0],
            center_class_name=center[1],
            surrounding=surrounding,
            unique_formations=unique,
        )

    async def describe_perimeter(self, perimeter: FirePerimeter) -> Optional[VegetationContext]:
        centroid, bbox = perimeter_centroid_and_bbox(perimeter)
        return await self.query_context(centroid, bbox)


def format_vegetation_context_for_prompt(ctx: VegetationContext) -> str:
    lines = [f"Vegetation at the fire location: {ctx.center_formation}"]
    if ctx.center_class_name and ctx.center_class_name != ctx.center_formation:
        lines.append(f"(specifically: {ctx.center_class_name})")

    if ctx.surrounding:
        differing = [
            f"{direction}: {formation}"
            for direction, formation in ctx.surrounding.items()
            if formation != ctx.center_formation
        ]
        if differing:
            lines.append(f"Surrounding vegetation varies: {'; '.join(differing)}.")
        else:
            lines.append(f"Vegetation is uniformly {ctx.center_formation} in all directions.")

    if len(ctx.unique_formations) > 1:
        lines.append(
            f"This area contains a mix of {len(ctx.unique_formations)} vegetation formations: "
            f"{', '.join(ctx.unique_formations)}."
        )
        lines.append(
            "Show the correct vegetation type in each part of the landscape: ridgelines may carry "
            "drier forest, gullies wetter forest, and flat areas grassland or cleared land."
        )

    return " ".join(lines)
