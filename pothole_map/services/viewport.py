"""
viewport.py — Pick how reports are drawn at a given zoom.

  zoom <= heatmap_max_zoom                      → HEATMAP
  heatmap_max_zoom < zoom <= cluster_max_zoom   → CLUSTER
  zoom > cluster_max_zoom                       → MARKERS

Each boundary belongs to the lower mode. Zoom is compared as given, so a
fractional zoom mid-animation (11.01) is already past the heatmap stop.
Nothing is remembered between calls.
"""

from pothole_map.models.aggregation import RenderMode

DEFAULT_HEATMAP_MAX_ZOOM = 11
DEFAULT_CLUSTER_MAX_ZOOM = 14


def select_mode(
    zoom: float,
    heatmap_max_zoom: float = DEFAULT_HEATMAP_MAX_ZOOM,
    cluster_max_zoom: float = DEFAULT_CLUSTER_MAX_ZOOM,
) -> RenderMode:
    if heatmap_max_zoom > cluster_max_zoom:
        raise ValueError("heatmap_max_zoom must be <= cluster_max_zoom")
    if zoom <= heatmap_max_zoom:
        return RenderMode.HEATMAP
    if zoom <= cluster_max_zoom:
        return RenderMode.CLUSTER
    return RenderMode.MARKERS
