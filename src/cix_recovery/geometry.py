"""Fixed-point polygon kernel on top of Shapely.

Real coordinates (mm) are multiplied by ``SCALE`` and rounded to integers on
the way in; every boolean operation runs with ``grid_size=1`` so results stay
on the integer grid. Conversion back to mm happens only on the way out.

Polygon sets are lists of Shapely ``Polygon`` objects in fixed-point space.
Rings handed back to callers are ``(N, 2)`` int64 arrays without a closing
point.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.geometry import LineString, MultiPolygon, Point, Polygon

from cix_recovery.contracts import Bounds, Ring, Vec2

SCALE = 1000
EPSILON = 1e-9  # absolute, in mm; not scaled with geometry size
GRID = 1.0

FixedRing = np.ndarray
Piece = Tuple[FixedRing, List[FixedRing]]


class GeometryError(ValueError):
    """Raised when a boolean result cannot be interpreted as polygons."""


@dataclass
class PolyNode:
    """Node of a difference result hierarchy.

    Children of an outer node are its holes; children of a hole are the
    islands sitting inside it. The root has no contour.
    """

    contour: Optional[FixedRing] = None
    is_hole: bool = False
    children: List["PolyNode"] = field(default_factory=list)


# ─── Conversion ──────────────────────────────────────────────────────────────

def to_fixed(points: Sequence[Vec2]) -> FixedRing:
    arr = np.asarray(points, dtype=float).reshape(-1, 2)
    return np.rint(arr * SCALE).astype(np.int64)


def from_fixed(path: FixedRing) -> Ring:
    arr = np.asarray(path, dtype=float).reshape(-1, 2) / SCALE
    return [(float(x), float(y)) for x, y in arr]


def fixed_polygon(outer: Sequence[Vec2], holes: Sequence[Sequence[Vec2]] = ()) -> Polygon:
    """Real-unit rings -> fixed-point Shapely polygon."""
    if len(outer) < 3:
        raise GeometryError(f"Polygon ring needs 3 points, got {len(outer)}")
    shell = to_fixed(outer)
    interiors = [to_fixed(h) for h in holes if len(h) >= 3]
    poly = Polygon(shell, interiors)
    if not poly.is_valid:
        poly = shapely.make_valid(poly)
        polys = _polygons(poly)
        if not polys:
            raise GeometryError("Polygon collapsed during repair")
        poly = max(polys, key=lambda p: p.area)
    return poly


def rectangle(width: float, height: float) -> Ring:
    return [(0.0, 0.0), (float(width), 0.0), (float(width), float(height)), (0.0, float(height))]


# ─── Boolean operations ─────────────────────────────────────────────────────

def offset_open_path(
    points: Sequence[Vec2],
    radius: float,
    mitre_limit: float = 2.0,
) -> List[Polygon]:
    """Sweep a tool of *radius* along an open polyline.

    Butt end caps, mitred joins. Degenerate input yields an empty list.
    """
    if len(points) < 2 or not math.isfinite(radius) or radius <= 0:
        return []
    arr = np.asarray(points, dtype=float).reshape(-1, 2)
    if not np.all(np.isfinite(arr)):
        return []
    path = to_fixed(arr)
    line = LineString(path)
    if line.length == 0:
        return []
    buffered = line.buffer(
        radius * SCALE,
        cap_style="flat",
        join_style="mitre",
        mitre_limit=mitre_limit,
    )
    return _polygons(shapely.set_precision(buffered, GRID))


def union_polygons(polygons: Sequence[Polygon]) -> List[Polygon]:
    """Non-zero union of a polygon set; empty in, empty out."""
    if not polygons:
        return []
    return _polygons(shapely.union_all(list(polygons), grid_size=GRID))


def difference_tree(subject: Sequence[Polygon], clip: Sequence[Polygon]) -> PolyNode:
    if not subject:
        return PolyNode()
    result = shapely.union_all(list(subject), grid_size=GRID)
    if clip:
        clip_union = shapely.union_all(list(clip), grid_size=GRID)
        result = shapely.difference(result, clip_union, grid_size=GRID)
    return build_poly_tree(_polygons(result))


def build_poly_tree(polygons: Sequence[Polygon]) -> PolyNode:
    """Nest polygons so that islands hang off the hole that contains them.

    Polygons are placed largest exterior first, so a container is always in
    the tree before anything inside it.
    """
    root = PolyNode()
    placed_holes: List[Tuple[Polygon, PolyNode]] = []
    for poly in sorted(polygons, key=lambda p: Polygon(p.exterior).area, reverse=True):
        node = PolyNode(contour=_ring_array(poly.exterior))
        probe = poly.representative_point()
        containers = [(hp, hn) for hp, hn in placed_holes if hp.contains(probe)]
        parent = min(containers, key=lambda c: c[0].area)[1] if containers else root
        parent.children.append(node)
        for interior in poly.interiors:
            hole = PolyNode(contour=_ring_array(interior), is_hole=True)
            node.children.append(hole)
            placed_holes.append((Polygon(interior), hole))
    return root


def forest_from_tree(root: PolyNode) -> List[Piece]:
    """Flatten a tree into (outer, direct holes) pieces.

    Every outer node becomes a piece whatever its depth; holes attach only
    to their immediate parent.
    """
    pieces: List[Piece] = []

    def visit(node: PolyNode) -> None:
        if node.contour is None or len(node.contour) == 0:
            for child in node.children:
                visit(child)
            return
        holes: List[FixedRing] = []
        for child in node.children:
            if child.is_hole and child.contour is not None and len(child.contour):
                holes.append(child.contour)
            visit(child)
        if not node.is_hole:
            pieces.append((node.contour, holes))

    for child in root.children:
        visit(child)
    return pieces


def difference_with_holes(subject: Sequence[Polygon], clip: Sequence[Polygon]) -> List[Piece]:
    return forest_from_tree(difference_tree(subject, clip))


def difference_flat(subject: Sequence[Polygon], clip: Sequence[Polygon]) -> List[FixedRing]:
    """Outer contours of ``subject - clip``; holes are discarded.

    Runs without a precision grid so it does not share a failure mode with
    ``difference_tree``; vertices are rounded back onto the grid afterwards.
    """
    if not subject:
        return []
    result = shapely.union_all(list(subject))
    if clip:
        result = result.difference(shapely.union_all(list(clip)))
    return [_ring_array(p.exterior) for p in _polygons(result)]


# ─── Measurements ───────────────────────────────────────────────────────────

def fixed_area(path: FixedRing) -> float:
    """Exact integer shoelace on a fixed-point ring, returned in mm^2."""
    arr = np.asarray(path, dtype=np.int64).reshape(-1, 2)
    if len(arr) < 3:
        return 0.0
    x, y = arr[:, 0], arr[:, 1]
    twice = int(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))
    return abs(twice) / 2.0 / (SCALE * SCALE)


def polygon_area(ring: Sequence[Vec2]) -> float:
    if len(ring) < 3:
        return 0.0
    arr = np.asarray(ring, dtype=float).reshape(-1, 2)
    x, y = arr[:, 0], arr[:, 1]
    return abs(float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))) / 2.0


def ring_bounds(ring: Sequence[Vec2]) -> Bounds:
    arr = np.asarray(ring, dtype=float).reshape(-1, 2)
    mins = arr.min(axis=0)
    maxs = arr.max(axis=0)
    return (float(mins[0]), float(mins[1]), float(maxs[0]), float(maxs[1]))


def circle_ring(center: Vec2, radius: float, segments: int = 28) -> Ring:
    cx, cy = center
    if not (math.isfinite(cx) and math.isfinite(cy) and math.isfinite(radius)) or radius <= 0:
        return []
    segs = max(8, int(segments))
    angles = np.arange(segs) * (2.0 * np.pi / segs)
    xs = cx + np.cos(angles) * radius
    ys = cy + np.sin(angles) * radius
    return [(float(x), float(y)) for x, y in zip(xs, ys)]


def point_in_polygon(pt: Vec2, polygon: Sequence[Vec2]) -> bool:
    """Even-odd ray cast; points within ``EPSILON`` of an edge count as inside."""
    px, py = pt
    n = len(polygon)
    inside = False
    j = n - 1
    for i in range(n):
        ax, ay = polygon[i]
        bx, by = polygon[j]
        cross = (py - ay) * (bx - ax) - (px - ax) * (by - ay)
        if (
            abs(cross) < EPSILON
            and min(ax, bx) - EPSILON <= px <= max(ax, bx) + EPSILON
            and min(ay, by) - EPSILON <= py <= max(ay, by) + EPSILON
        ):
            return True
        if (ay > py) != (by > py):
            denom = (by - ay) or 1e-12
            if px < (bx - ax) * (py - ay) / denom + ax:
                inside = not inside
        j = i
    return inside


def point_in_polygon_with_holes(
    pt: Vec2,
    polygon: Sequence[Vec2],
    holes: Sequence[Sequence[Vec2]] = (),
) -> bool:
    if not point_in_polygon(pt, polygon):
        return False
    for hole in holes:
        if hole and point_in_polygon(pt, hole):
            return False
    return True


# ─── Internal helpers ────────────────────────────────────────────────────────

def _polygons(geom) -> List[Polygon]:
    """Polygonal parts of *geom*; lower-dimensional leftovers are dropped."""
    if geom is None or geom.is_empty:
        return []
    if isinstance(geom, Polygon):
        return [geom]
    if isinstance(geom, MultiPolygon) or hasattr(geom, "geoms"):
        polys: List[Polygon] = []
        for part in geom.geoms:
            polys.extend(_polygons(part))
        return polys
    if isinstance(geom, (LineString, Point)):
        return []
    raise GeometryError(f"Unexpected geometry type: {geom.geom_type}")


def _ring_array(ring) -> FixedRing:
    coords = np.asarray(ring.coords, dtype=float)
    if len(coords) > 1 and np.array_equal(coords[0], coords[-1]):
        coords = coords[:-1]
    return np.rint(coords).astype(np.int64)
