"""
aggregation.py — Pydantic models for the map aggregation engine.

Inputs
──────
  ViewportState  — zoom level + optional visible bounds, owned by the caller

Outputs (AggregationResult, discriminated on "kind")
───────
  HeatmapResult  — one HeatmapSample per report + the heatmap layer config
  ClusterResult  — ClusterNode list, one node per greedy cluster
  MarkerResult   — the reports themselves, unchanged

These are plain values with no behaviour. The map front-end decides how to
draw a heat layer, a cluster bubble or a marker.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from pothole_map.models.report import Report, ReportStatus


class RenderMode(str, Enum):
    HEATMAP = "heatmap"
    CLUSTER = "cluster"
    MARKERS = "markers"


class ClusterSize(str, Enum):
    SMALL = "small"     # count <= 8
    MEDIUM = "medium"   # 8 < count <= 15
    LARGE = "large"     # count > 15


# ── Viewport ──────────────────────────────────────────────────────────────────

class Bounds(BaseModel):
    """
    Visible rectangle. west > east means the box crosses the antimeridian.
    """

    model_config = {"frozen": True}

    south: float = Field(ge=-90, le=90, allow_inf_nan=False)
    west: float = Field(ge=-180, le=180, allow_inf_nan=False)
    north: float = Field(ge=-90, le=90, allow_inf_nan=False)
    east: float = Field(ge=-180, le=180, allow_inf_nan=False)

    @model_validator(mode="after")
    def _south_below_north(self):
        if self.south > self.north:
            raise ValueError("south must be <= north")
        return self

    def contains(self, latitude: float, longitude: float) -> bool:
        if not self.south <= latitude <= self.north:
            return False
        if self.west <= self.east:
            return self.west <= longitude <= self.east
        return longitude >= self.west or longitude <= self.east


class ViewportState(BaseModel):
    model_config = {"frozen": True}

    zoom: float = Field(ge=0, le=30, allow_inf_nan=False)
    bounds: Optional[Bounds] = None


# ── Derived values ────────────────────────────────────────────────────────────

class ClusterNode(BaseModel):
    latitude: float                # centroid, mean of member latitudes
    longitude: float               # centroid, mean of member longitudes
    member_ids: list[str]          # ascending, unique
    count: int
    dominant_status: ReportStatus
    size: ClusterSize


class HeatmapSample(BaseModel):
    latitude: float
    longitude: float
    weight: float = Field(gt=0, le=1)


class HeatmapLayerConfig(BaseModel):
    """Presentation settings for the heat layer, passed through untouched."""

    radius: int = 25
    blur: int = 15
    max_zoom: int = 17
    # Normalised density → colour. Keys are strings so the JSON shape is stable.
    gradient: dict[str, str] = Field(
        default_factory=lambda: {
            "0.2": "#3b82f6",
            "0.4": "#22c55e",
            "0.6": "#eab308",
            "0.8": "#f97316",
            "1.0": "#ef4444",
        }
    )


# ── AggregationResult ─────────────────────────────────────────────────────────

class HeatmapResult(BaseModel):
    kind: Literal["heatmap"] = "heatmap"
    samples: list[HeatmapSample]
    layer: HeatmapLayerConfig


class ClusterResult(BaseModel):
    kind: Literal["clusters"] = "clusters"
    nodes: list[ClusterNode]


class MarkerResult(BaseModel):
    kind: Literal["markers"] = "markers"
    reports: list[Report]
    # True when clustering / heatmap failed and we fell back to raw markers.
    degraded: bool = False


AggregationResult = Annotated[
    Union[HeatmapResult, ClusterResult, MarkerResult],
    Field(discriminator="kind"),
]


class AggregationOptions(BaseModel):
    """Tunables for one aggregate() call. Defaults come from settings."""

    model_config = {"frozen": True}

    heatmap_max_zoom: float = 11
    cluster_max_zoom: float = 14
    max_cluster_radius_px: float = Field(default=50, gt=0)
    disable_clustering_at_zoom: Optional[float] = 15
    heatmap_layer: HeatmapLayerConfig = Field(default_factory=HeatmapLayerConfig)

    @model_validator(mode="after")
    def _ordered_thresholds(self):
        if self.heatmap_max_zoom > self.cluster_max_zoom:
            raise ValueError("heatmap_max_zoom must be <= cluster_max_zoom")
        return self


class MapStreamRequest(BaseModel):
    """One viewport update sent over WS /api/v1/map/stream."""

    seq: int = Field(ge=0)
    viewport: ViewportState


class MapStreamReply(BaseModel):
    type: Literal["aggregation"] = "aggregation"
    seq: int
    result: AggregationResult


class MapStreamError(BaseModel):
    type: Literal["error"] = "error"
    detail: str
