"""Normalized region geometry: boxes, polygons, heatmaps."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

MIN_BOX_EXTENT = 0.001
HEATMAP_PEAK_FRACTION = 0.35
HEATMAP_MIN_PEAK = 0.0001
MAX_POLYGON_POINTS = 96
MAX_HEATMAP_SIDE = 64
MAX_HEATMAP_VALUES = 4096
KL_EPSILON = 1e-9
VARIANCE_FLOOR = 1e-12


@dataclass(frozen=True)
class BBox:
    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def area(self) -> float:
        return max(0.0, self.x1 - self.x0) * max(0.0, self.y1 - self.y0)

    def to_dict(self) -> Dict[str, float]:
        return {"x0": self.x0, "y0": self.y0, "x1": self.x1, "y1": self.y1}


@dataclass(frozen=True)
class Polygon:
    points: Tuple[Tuple[float, float], ...]


@dataclass(frozen=True)
class Heatmap:
    rows: int
    cols: int
    values: Tuple[float, ...]


Region = Union[BBox, Polygon, Heatmap]


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _clamp_unit(value: Any) -> float:
    numeric = _finite(value)
    if numeric is None:
        return 0.0
    return max(0.0, min(1.0, numeric))


def _round3(value: float) -> float:
    return round(value * 1000.0) / 1000.0


def normalize_bbox(raw: Any) -> Optional[BBox]:
    """Clamp, order and round a box; ``None`` when either side is degenerate."""
    if isinstance(raw, BBox):
        coords: Sequence[Any] = (raw.x0, raw.y0, raw.x1, raw.y1)
    elif isinstance(raw, Mapping):
        coords = (raw.get("x0"), raw.get("y0"), raw.get("x1"), raw.get("y1"))
    elif isinstance(raw, (list, tuple)) and len(raw) == 4:
        coords = raw
    else:
        return None
    x0, y0, x1, y1 = (_clamp_unit(value) for value in coords)
    min_x, max_x = min(x0, x1), max(x0, x1)
    min_y, max_y = min(y0, y1), max(y0, y1)
    if max_x - min_x <= MIN_BOX_EXTENT or max_y - min_y <= MIN_BOX_EXTENT:
        return None
    return BBox(_round3(min_x), _round3(min_y), _round3(max_x), _round3(max_y))


def _point_xy(point: Any) -> Optional[Tuple[float, float]]:
    if isinstance(point, Mapping):
        x, y = _finite(point.get("x")), _finite(point.get("y"))
    elif isinstance(point, (list, tuple)) and len(point) == 2:
        x, y = _finite(point[0]), _finite(point[1])
    else:
        return None
    if x is None or y is None:
        return None
    return max(0.0, min(1.0, x)), max(0.0, min(1.0, y))


def bbox_from_polygon(points: Any) -> Optional[BBox]:
    if isinstance(points, Polygon):
        points = points.points
    if not isinstance(points, (list, tuple)) or len(points) < 3:
        return None
    coords = [xy for xy in (_point_xy(point) for point in points) if xy is not None]
    if len(coords) < 3:
        return None
    xs = [x for x, _ in coords]
    ys = [y for _, y in coords]
    return normalize_bbox((min(xs), min(ys), max(xs), max(ys)))


def bbox_from_heatmap(heatmap: Heatmap) -> Optional[BBox]:
    """Minimal box covering cells at or above 35% of the peak value."""
    if heatmap.rows <= 0 or heatmap.cols <= 0 or len(heatmap.values) != heatmap.rows * heatmap.cols:
        return None
    grid = np.clip(np.asarray(heatmap.values, dtype=float), 0.0, 1.0).reshape(heatmap.rows, heatmap.cols)
    peak = float(grid.max()) if grid.size else 0.0
    if peak <= HEATMAP_MIN_PEAK:
        return None
    rows_hit, cols_hit = np.nonzero(grid >= peak * HEATMAP_PEAK_FRACTION)
    if rows_hit.size == 0:
        return None
    return normalize_bbox(
        (
            int(cols_hit.min()) / heatmap.cols,
            int(rows_hit.min()) / heatmap.rows,
            (int(cols_hit.max()) + 1) / heatmap.cols,
            (int(rows_hit.max()) + 1) / heatmap.rows,
        )
    )


def parse_region(payload: Any) -> Optional[Region]:
    """Strictly parse a region payload; malformed input yields ``None``."""
    if isinstance(payload, (BBox, Polygon, Heatmap)):
        return payload
    if not isinstance(payload, Mapping):
        return None
    kind = payload.get("kind")
    if kind == "bbox":
        raw = payload.get("bbox_norm")
        if not isinstance(raw, Mapping):
            return None
        coords = [_finite(raw.get(key)) for key in ("x0", "y0", "x1", "y1")]
        if any(value is None or value < 0.0 or value > 1.0 for value in coords):
            return None
        return BBox(*coords)  # type: ignore[arg-type]
    if kind == "polygon":
        points = payload.get("points")
        if not isinstance(points, list) or not 3 <= len(points) <= MAX_POLYGON_POINTS:
            return None
        parsed: List[Tuple[float, float]] = []
        for point in points:
            if not isinstance(point, Mapping):
                return None
            x, y = _finite(point.get("x")), _finite(point.get("y"))
            if x is None or y is None or not (0.0 <= x <= 1.0 and 0.0 <= y <= 1.0):
                return None
            parsed.append((x, y))
        return Polygon(tuple(parsed))
    if kind == "heatmap":
        rows, cols, values = payload.get("rows"), payload.get("cols"), payload.get("values")
        if isinstance(rows, bool) or isinstance(cols, bool) or not isinstance(rows, int) or not isinstance(cols, int):
            return None
        if not (1 <= rows <= MAX_HEATMAP_SIDE and 1 <= cols <= MAX_HEATMAP_SIDE):
            return None
        if not isinstance(values, list) or len(values) > MAX_HEATMAP_VALUES or len(values) != rows * cols:
            return None
        cells = [_finite(value) for value in values]
        if any(value is None or value < 0.0 or value > 1.0 for value in cells):
            return None
        return Heatmap(rows, cols, tuple(cells))  # type: ignore[arg-type]
    return None


def region_to_payload(region: Region) -> Dict[str, Any]:
    if isinstance(region, BBox):
        return {"kind": "bbox", "bbox_norm": region.to_dict()}
    if isinstance(region, Polygon):
        return {"kind": "polygon", "points": [{"x": x, "y": y} for x, y in region.points]}
    return {"kind": "heatmap", "rows": region.rows, "cols": region.cols, "values": list(region.values)}


def region_bbox(region: Region) -> Optional[BBox]:
    if isinstance(region, BBox):
        return normalize_bbox(region)
    if isinstance(region, Polygon):
        return bbox_from_polygon(region)
    return bbox_from_heatmap(region)


def primary_bbox(regions: Iterable[Any]) -> Optional[BBox]:
    """First extractable box across ``regions`` (direct, polygon envelope, heatmap mass)."""
    for payload in regions or ():
        region = parse_region(payload)
        if region is None:
            # Loose payloads still contribute when their box is usable.
            if isinstance(payload, Mapping) and payload.get("kind") == "bbox":
                box = normalize_bbox(payload.get("bbox_norm"))
                if box is not None:
                    return box
            continue
        box = region_bbox(region)
        if box is not None:
            return box
    return None


def primary_bbox_from_concern(concern: Mapping[str, Any]) -> Optional[BBox]:
    if not isinstance(concern, Mapping):
        return None
    regions = concern.get("regions")
    box = primary_bbox(regions if isinstance(regions, list) else [])
    if box is not None:
        return box
    return normalize_bbox(concern.get("region_hint_bbox"))


def iou(a: Optional[BBox], b: Optional[BBox]) -> float:
    if a is None or b is None:
        return 0.0
    ix0, iy0 = max(a.x0, b.x0), max(a.y0, b.y0)
    ix1, iy1 = min(a.x1, b.x1), min(a.y1, b.y1)
    inter = max(0.0, ix1 - ix0) * max(0.0, iy1 - iy0)
    if inter <= 0.0:
        return 0.0
    union = a.area + b.area - inter
    if union <= 0.0:
        return 0.0
    return max(0.0, min(1.0, inter / union))


def normalize_heatmap_values(values: Sequence[Any], expected_len: int) -> Optional[np.ndarray]:
    """Clamp to [0, 1] and sum-normalize; uniform mass when the map is empty."""
    if expected_len <= 0 or len(values) != expected_len:
        return None
    arr = np.clip(np.asarray([_clamp_unit(value) for value in values], dtype=float), 0.0, 1.0)
    total = float(arr.sum())
    if total <= 0.0:
        return np.full(expected_len, 1.0 / expected_len)
    return arr / total


def _heatmap_pair(a: Optional[Heatmap], b: Optional[Heatmap]) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    if a is None or b is None or a.rows != b.rows or a.cols != b.cols:
        return None
    left = normalize_heatmap_values(a.values, a.rows * a.cols)
    right = normalize_heatmap_values(b.values, b.rows * b.cols)
    if left is None or right is None:
        return None
    return left, right


def heatmap_correlation(a: Optional[Heatmap], b: Optional[Heatmap]) -> Optional[float]:
    pair = _heatmap_pair(a, b)
    if pair is None:
        return None
    left, right = pair
    da = left - left.mean()
    db = right - right.mean()
    den_a = float(np.dot(da, da))
    den_b = float(np.dot(db, db))
    if den_a <= VARIANCE_FLOOR or den_b <= VARIANCE_FLOOR:
        return None
    return _round3(float(np.dot(da, db)) / math.sqrt(den_a * den_b))


def heatmap_kl_divergence(a: Optional[Heatmap], b: Optional[Heatmap]) -> Optional[float]:
    """KL(a || b) over sum-normalized cells."""
    pair = _heatmap_pair(a, b)
    if pair is None:
        return None
    p = np.maximum(pair[0], KL_EPSILON)
    q = np.maximum(pair[1], KL_EPSILON)
    return _round3(float(np.sum(p * np.log(p / q))))


def first_heatmap(regions: Iterable[Any]) -> Optional[Heatmap]:
    for payload in regions or ():
        region = parse_region(payload)
        if isinstance(region, Heatmap):
            return region
    return None
