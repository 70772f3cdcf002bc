from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Tuple, Union

import numpy as np

from .normalize import clamp01, normalize_token, as_float, round3

MIN_EXTENT = 0.001      # boxes thinner than this are discarded
HEATMAP_MAX_DIM = 64
HEATMAP_MIN_PEAK = 1e-4
HEATMAP_REL_THRESHOLD = 0.35


@dataclass(frozen=True)
class Box:
    """Canonical normalized bounding box, x0 < x1 and y0 < y1 inside [0, 1]."""
    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def width(self) -> float:
        return max(0.0, self.x1 - self.x0)

    @property
    def height(self) -> float:
        return max(0.0, self.y1 - self.y0)

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_dict(self) -> dict:
        return {"x0": self.x0, "y0": self.y0, "x1": self.x1, "y1": self.y1}


@dataclass(frozen=True)
class BoxRegion:
    x0: float
    y0: float
    x1: float
    y1: float
    kind: str = "bbox"


@dataclass(frozen=True)
class PolygonRegion:
    points: Tuple[Tuple[float, float], ...]
    kind: str = "polygon"


@dataclass(frozen=True)
class HeatmapRegion:
    rows: int
    cols: int
    values: Tuple[float, ...]
    kind: str = "heatmap"


Region = Union[BoxRegion, PolygonRegion, HeatmapRegion]


def normalize_box(x0: Any, y0: Any, x1: Any, y1: Any) -> Optional[Box]:
    coords = [as_float(v) for v in (x0, y0, x1, y1)]
    if any(v is None for v in coords):
        return None
    x0, y0, x1, y1 = (clamp01(v) for v in coords)
    min_x, max_x = min(x0, x1), max(x0, x1)
    min_y, max_y = min(y0, y1), max(y0, y1)
    if max_x - min_x <= MIN_EXTENT or max_y - min_y <= MIN_EXTENT:
        return None
    return Box(round3(min_x), round3(min_y), round3(max_x), round3(max_y))


def box_from_polygon(points: Sequence[Tuple[float, float]]) -> Optional[Box]:
    if len(points) < 3:
        return None
    xs = [clamp01(p[0]) for p in points]
    ys = [clamp01(p[1]) for p in points]
    return normalize_box(min(xs), min(ys), max(xs), max(ys))


def box_from_heatmap(rows: int, cols: int, values: Sequence[float]) -> Optional[Box]:
    rows, cols = int(rows), int(cols)
    if not (1 <= rows <= HEATMAP_MAX_DIM and 1 <= cols <= HEATMAP_MAX_DIM):
        return None
    if len(values) != rows * cols:
        return None
    grid = np.array([clamp01(v) for v in values], dtype=np.float64).reshape(rows, cols)
    peak = float(grid.max())
    if peak <= HEATMAP_MIN_PEAK:
        return None
    ys, xs = np.nonzero(grid >= peak * HEATMAP_REL_THRESHOLD)
    if len(xs) == 0:
        return None
    return normalize_box(
        int(xs.min()) / cols,
        int(ys.min()) / rows,
        (int(xs.max()) + 1) / cols,
        (int(ys.max()) + 1) / rows,
    )


def canonical_box(region: Optional[Region]) -> Optional[Box]:
    if isinstance(region, BoxRegion):
        return normalize_box(region.x0, region.y0, region.x1, region.y1)
    if isinstance(region, PolygonRegion):
        return box_from_polygon(region.points)
    if isinstance(region, HeatmapRegion):
        return box_from_heatmap(region.rows, region.cols, region.values)
    return None


def _parse_point(raw: Any) -> Optional[Tuple[float, float]]:
    if isinstance(raw, dict):
        x, y = as_float(raw.get("x")), as_float(raw.get("y"))
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        x, y = as_float(raw[0]), as_float(raw[1])
    else:
        return None
    if x is None or y is None:
        return None
    return (clamp01(x), clamp01(y))


def region_from_dict(raw: Any) -> Optional[Region]:
    """Parse one JSON-like region record; malformed records become None."""
    if not isinstance(raw, dict):
        return None
    kind = normalize_token(raw.get("kind"))
    if kind == "bbox":
        src = raw.get("bbox_norm") if isinstance(raw.get("bbox_norm"), dict) else raw
        if not any(k in src for k in ("x0", "y0", "x1", "y1")):
            return None
        return BoxRegion(src.get("x0"), src.get("y0"), src.get("x1"), src.get("y1"))
    if kind == "polygon":
        pts = raw.get("points")
        if not isinstance(pts, list):
            return None
        parsed = [_parse_point(x) for x in pts]
        if any(p is None for p in parsed):
            return None
        return PolygonRegion(tuple(parsed))
    if kind == "heatmap":
        rows = as_float(raw.get("rows"))
        cols = as_float(raw.get("cols"))
        values = raw.get("values")
        if rows is None or cols is None or not isinstance(values, list):
            return None
        return HeatmapRegion(int(rows), int(cols), tuple(values))
    return None


def primary_box(regions: Iterable[Optional[Region]]) -> Optional[Box]:
    """First region that normalizes to a valid canonical box."""
    for region in regions:
        box = canonical_box(region)
        if box is not None:
            return box
    return None


def iou(a: Optional[Box], b: Optional[Box]) -> float:
    if a is None or b is None:
        return 0.0
    x0 = max(a.x0, b.x0)
    y0 = max(a.y0, b.y0)
    x1 = min(a.x1, b.x1)
    y1 = min(a.y1, b.y1)
    inter = max(0.0, x1 - x0) * max(0.0, y1 - y0)
    if inter <= 0:
        return 0.0
    union = a.area + b.area - inter
    if union <= 0:
        return 0.0
    return float(inter / union)
