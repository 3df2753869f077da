"""Recover finished panels from a parsed CIX sheet.

Through-cut toolpaths are swept into kerf polygons, unioned and subtracted
from the sheet rectangle; what remains (above a minimum area) are the
panels. Drill holes are attached to the panel that contains them, labels
pick the real parts out of offcuts, and the removed material is exposed on
the document for display.

Every stage degrades instead of raising: the terminal outcomes are either N
recovered panels or a single whole-sheet panel.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping, Sequence, Union

from shapely.geometry import Polygon

from cix_recovery.contracts import (
    CixDocument,
    DrillHole,
    KerfPolygon,
    RecoveredPanel,
    RecoveryConfig,
    RemovedPolygon,
    RoutingPath,
    SheetInfo,
)
from cix_recovery.geometry import (
    SCALE,
    Piece,
    circle_ring,
    difference_flat,
    difference_with_holes,
    fixed_area,
    fixed_polygon,
    from_fixed,
    offset_open_path,
    point_in_polygon,
    point_in_polygon_with_holes,
    polygon_area,
    rectangle,
    ring_bounds,
    union_polygons,
)
from cix_recovery.values import parse_strict_float

logger = logging.getLogger(__name__)

DEPTH_PARAM_KEYS = ("PR", "DP", "ZE", "Z")


def recover_panels(
    document: CixDocument,
    config: Union[RecoveryConfig, Mapping[str, Any], None] = None,
) -> List[RecoveredPanel]:
    """Recover panels and attach kerf/removed geometry to *document*.

    Args:
        document: Output of ``parse_cix``. Its recovery fields are replaced.
        config: A ``RecoveryConfig`` or a mapping of option names.

    Returns:
        The recovered panels (also stored on ``document.recovered_panels``).
    """
    if config is None:
        config = RecoveryConfig()
    elif not isinstance(config, RecoveryConfig):
        config = RecoveryConfig.from_mapping(config)

    document.kerf_polygons = []
    document.removed_polygons = []
    document.drill_assignments = {}

    try:
        panels = _recover(document, config)
    except Exception as exc:
        logger.warning("Panel recovery failed, falling back to whole sheet: %s", exc)
        document.parse_errors.append(f"Panel recovery failed: {exc}")
        panels = []
        if document.sheet.has_area:
            panels = [_whole_sheet_panel(document.sheet)]
            attach_drill_holes(panels, document.drill_holes, config.drill_hole_segments)
        document.removed_polygons = []

    document.recovered_panels = panels
    document.drill_assignments = {
        hole_index: panel_index
        for panel_index, panel in enumerate(panels)
        for hole_index in panel.drill_hole_indices
    }
    return panels


def _recover(document: CixDocument, config: RecoveryConfig) -> List[RecoveredPanel]:
    sheet = document.sheet
    if not sheet.has_area:
        logger.info("Sheet %s has no usable dimensions; nothing to recover", document.sheet_id)
        return []

    sheet_poly = fixed_polygon(rectangle(sheet.width, sheet.height))
    routing = document.routing_paths

    cuts = [p for p in routing if is_through_cut(p, sheet.thickness, config.depth_ratio)]
    kerfs = _build_kerfs(cuts, config, document)
    if not kerfs and routing:
        logger.info("No through-cuts detected; treating all %d routing paths as cuts", len(routing))
        kerfs = _build_kerfs(routing, config, document)

    if not kerfs:
        logger.info("No kerfs produced; returning the whole sheet as one panel")
        panel = _whole_sheet_panel(sheet)
        attach_drill_holes([panel], document.drill_holes, config.drill_hole_segments)
        return [panel]

    try:
        kerf_union = union_polygons(kerfs)
    except Exception as exc:
        logger.warning("Kerf union failed, using raw kerfs: %s", exc)
        document.parse_errors.append(f"Kerf union failed: {exc}")
        kerf_union = list(kerfs)
    try:
        document.kerf_polygons = _kerf_polygons(kerf_union)
    except Exception as exc:
        logger.warning("Could not expose kerf polygons: %s", exc)
        document.kerf_polygons = []
    logger.info("Built %d kerfs from %d paths -> %d unioned", len(kerfs), len(routing), len(kerf_union))

    pieces = _subtract_kerfs(sheet_poly, kerf_union, document)
    panels = _panels_from_pieces(pieces, config.min_panel_area)
    attach_drill_holes(panels, document.drill_holes, config.drill_hole_segments)

    if not panels:
        logger.info("No piece above %.1f mm^2; returning the whole sheet", config.min_panel_area)
        panel = _whole_sheet_panel(sheet)
        attach_drill_holes([panel], document.drill_holes, config.drill_hole_segments)
        document.removed_polygons = [
            RemovedPolygon(outer=k.outline, holes=list(k.holes))
            for k in document.kerf_polygons
            if len(k.outline) >= 3
        ]
        return [panel]

    final = filter_by_labels(panels, [(label.x, label.y) for label in document.labels])
    document.removed_polygons = _removed_material(sheet_poly, final, document)
    logger.info(
        "Recovered %d panels (%d candidates) from %s",
        len(final),
        len(panels),
        document.sheet_id,
    )
    return final


# ─── Through-cut classification ──────────────────────────────────────────────

def path_depth(path: RoutingPath) -> float:
    """Deepest cut of a path: segment Z values plus any depth parameter."""
    depth = abs(path.max_depth or 0.0)
    for key in DEPTH_PARAM_KEYS:
        value = parse_strict_float(path.params.get(key))
        if value is not None:
            depth = max(depth, abs(value))
    return depth


def is_through_cut(path: RoutingPath, sheet_thickness: float, depth_ratio: float) -> bool:
    depth = path_depth(path)
    if not sheet_thickness or sheet_thickness <= 0:
        return depth > 0
    return depth >= sheet_thickness * depth_ratio


def _build_kerfs(
    paths: Sequence[RoutingPath],
    config: RecoveryConfig,
    document: CixDocument,
) -> List[Polygon]:
    kerfs: List[Polygon] = []
    for path in paths:
        points = path.xy()
        if len(points) < 2:
            continue
        diameter = path.diameter if path.diameter is not None else config.default_bit_diameter_mm
        radius = diameter / 2.0 * config.kerf_scale
        try:
            kerfs.extend(offset_open_path(points, radius, config.mitre_limit))
        except Exception as exc:
            logger.warning("Kerf offset failed for routing path %s: %s", path.path_id, exc)
            document.parse_errors.append(f"Kerf offset failed for routing path {path.path_id}: {exc}")
    return kerfs


def _kerf_polygons(kerf_union: Sequence[Polygon]) -> List[KerfPolygon]:
    out: List[KerfPolygon] = []
    for poly in kerf_union:
        outer = from_fixed(poly.exterior.coords[:-1])
        if len(outer) < 3:
            continue
        holes = [from_fixed(ring.coords[:-1]) for ring in poly.interiors]
        out.append(
            KerfPolygon(
                outline=outer,
                holes=[h for h in holes if len(h) >= 3],
                area=poly.area / (SCALE * SCALE),
                bounds=ring_bounds(outer),
            )
        )
    return out


# ─── Sheet minus kerfs ───────────────────────────────────────────────────────

def _subtract_kerfs(
    sheet_poly: Polygon,
    kerf_union: Sequence[Polygon],
    document: CixDocument,
) -> List[Piece]:
    """Hole-aware difference, then the flat one, then nothing."""
    pieces: List[Piece] = []
    try:
        pieces = difference_with_holes([sheet_poly], kerf_union)
    except Exception as exc:
        logger.warning("Hole-aware kerf difference failed: %s", exc)
        document.parse_errors.append(str(exc) or "kerf difference error")
    if pieces:
        return pieces

    try:
        return [(ring, []) for ring in difference_flat([sheet_poly], kerf_union)]
    except Exception as exc:
        logger.warning("Flat kerf difference failed: %s", exc)
        document.parse_errors.append(f"Flat kerf difference failed: {exc}")
        return []


def _panels_from_pieces(pieces: Sequence[Piece], min_panel_area: float) -> List[RecoveredPanel]:
    panels: List[RecoveredPanel] = []
    for outer, holes in pieces:
        if len(outer) < 3:
            continue
        outline = from_fixed(outer)
        openings = [from_fixed(h) for h in holes if len(h) >= 3]
        area = fixed_area(outer) - sum(fixed_area(h) for h in holes)
        if area < min_panel_area:
            continue
        panels.append(
            RecoveredPanel(
                outline=outline,
                area=max(area, 0.0),
                bounds=ring_bounds(outline),
                openings=openings,
            )
        )
    return panels


def _whole_sheet_panel(sheet: SheetInfo) -> RecoveredPanel:
    return RecoveredPanel(
        outline=rectangle(sheet.width, sheet.height),
        area=sheet.width * sheet.height,
        bounds=(0.0, 0.0, float(sheet.width), float(sheet.height)),
    )


# ─── Drill holes and labels ─────────────────────────────────────────────────

def attach_drill_holes(
    panels: Sequence[RecoveredPanel],
    drill_holes: Sequence[DrillHole],
    segments: int = 40,
) -> Dict[int, int]:
    """Give each drill hole to the first panel whose outline contains it.

    Existing openings are ignored when testing containment. Returns the
    hole index -> panel index claims made by this call.
    """
    claims: Dict[int, int] = {}
    for panel_index, panel in enumerate(panels):
        for hole_index, hole in enumerate(drill_holes):
            if hole_index in claims:
                continue
            radius = hole.diameter / 2.0
            center = (hole.x, hole.y)
            if not (math.isfinite(hole.x) and math.isfinite(hole.y)) or not radius > 0:
                continue
            if not point_in_polygon(center, panel.outline):
                continue
            ring = circle_ring(center, radius, segments)
            if len(ring) < 3:
                continue
            panel.drill_rings.append(ring)
            panel.drill_holes.append(hole)
            panel.drill_hole_indices.append(hole_index)
            panel.area = max(panel.area - polygon_area(ring), 0.0)
            claims[hole_index] = panel_index
    return claims


def filter_by_labels(
    panels: List[RecoveredPanel],
    label_points: Sequence[Sequence[float]],
) -> List[RecoveredPanel]:
    """Keep panels that contain a label; keep everything if none does."""
    points = [
        (float(x), float(y))
        for x, y in label_points
        if math.isfinite(x) and math.isfinite(y)
    ]
    if not points:
        return panels
    labeled = [
        panel
        for panel in panels
        if any(point_in_polygon_with_holes(pt, panel.outline, panel.holes) for pt in points)
    ]
    if not labeled:
        logger.info("No recovered panel contains a label; keeping all %d", len(panels))
        return panels
    return labeled


# ─── Removed material ────────────────────────────────────────────────────────

def _removed_material(
    sheet_poly: Polygon,
    panels: Sequence[RecoveredPanel],
    document: CixDocument,
) -> List[RemovedPolygon]:
    try:
        shapes = [fixed_polygon(p.outline, p.openings) for p in panels if len(p.outline) >= 3]
        pieces = difference_with_holes([sheet_poly], shapes)
        return [
            RemovedPolygon(
                outer=from_fixed(outer),
                holes=[from_fixed(h) for h in holes if len(h) >= 3],
            )
            for outer, holes in pieces
            if len(outer) >= 3
        ]
    except Exception as exc:
        logger.warning("Removed-material difference failed, using kerf polygons: %s", exc)
        document.parse_errors.append(f"Removed-material difference failed: {exc}")
        return [
            RemovedPolygon(outer=k.outline, holes=list(k.holes))
            for k in document.kerf_polygons
            if len(k.outline) >= 3
        ]
