"""Contracts for the CIX parser and panel recovery engine.

Coordinates are millimeters with a bottom-left origin (the parser applies
the Y flip). Rings are lists of ``(x, y)`` tuples without a closing
duplicate point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from cix_recovery.values import parse_int, parse_strict_float

logger = logging.getLogger(__name__)

Vec2 = Tuple[float, float]
Ring = List[Vec2]
Bounds = Tuple[float, float, float, float]


@dataclass(frozen=True)
class RecoveryConfig:
    """Tuning for kerf construction and panel filtering."""

    default_bit_diameter_mm: float = 6.0
    depth_ratio: float = 0.8  # fraction of sheet thickness that counts as a through-cut
    min_panel_area: float = 1000.0  # mm^2
    kerf_scale: float = 1.0
    drill_hole_segments: int = 40
    mitre_limit: float = 2.0

    def validate(self) -> None:
        if not self.default_bit_diameter_mm > 0:
            raise ValueError("RecoveryConfig.default_bit_diameter_mm must be > 0")
        if self.depth_ratio < 0:
            raise ValueError("RecoveryConfig.depth_ratio must be >= 0")
        if self.min_panel_area < 0:
            raise ValueError("RecoveryConfig.min_panel_area must be >= 0")
        if not self.kerf_scale > 0:
            raise ValueError("RecoveryConfig.kerf_scale must be > 0")
        if self.drill_hole_segments < 8:
            raise ValueError("RecoveryConfig.drill_hole_segments must be >= 8")
        if not self.mitre_limit >= 1.0:
            raise ValueError("RecoveryConfig.mitre_limit must be >= 1")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "RecoveryConfig":
        """Build a config from snake_case or legacy camelCase option names.

        Unknown keys are ignored. Values that are not numbers, or that fall
        outside the range ``validate`` accepts, keep the field default.
        """
        aliases = {
            "defaultBitDiameterMm": "default_bit_diameter_mm",
            "depthRatio": "depth_ratio",
            "minPanelArea": "min_panel_area",
            "kerfScale": "kerf_scale",
        }
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in payload.items():
            name = aliases.get(key, key)
            if name not in known or value is None:
                continue
            if name == "drill_hole_segments":
                number: Optional[float] = parse_int(value, -1)
            else:
                number = parse_strict_float(value)
            if number is None or not _CONFIG_RANGES[name](number):
                logger.warning("Ignoring recovery option %s=%r", key, value)
                continue
            kwargs[name] = number
        return cls(**kwargs)


_CONFIG_RANGES: Dict[str, Callable[[float], bool]] = {
    "default_bit_diameter_mm": lambda v: v > 0,
    "depth_ratio": lambda v: v >= 0,
    "min_panel_area": lambda v: v >= 0,
    "kerf_scale": lambda v: v > 0,
    "drill_hole_segments": lambda v: v >= 8,
    "mitre_limit": lambda v: v >= 1.0,
}


@dataclass
class SheetInfo:
    """Stock sheet dimensions from the MAINDATA block."""

    width: float = 0.0
    height: float = 0.0
    thickness: float = 18.0

    @property
    def has_area(self) -> bool:
        return self.width > 0 and self.height > 0


@dataclass
class LabelPlacement:
    """Part nameplate placed by a LABEL macro."""

    label_id: str
    x: float
    y: float
    y_raw: float
    rotation: float = 0.0
    data: str = ""
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.label_id,
            "x": float(self.x),
            "y": float(self.y),
            "y_raw": float(self.y_raw),
            "rotation": float(self.rotation),
            "data": self.data,
            "name": self.name,
        }


@dataclass
class RoutingPoint:
    x: float
    y: float
    kind: str = "line"
    z: Optional[float] = None
    center: Optional[Vec2] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"x": float(self.x), "y": float(self.y), "type": self.kind}
        if self.z is not None:
            payload["z"] = float(self.z)
        if self.center is not None:
            payload["center"] = {"x": float(self.center[0]), "y": float(self.center[1])}
        return payload


@dataclass
class RoutingPath:
    """One continuous toolpath (ROUT macro up to its ENDPATH)."""

    points: List[RoutingPoint] = field(default_factory=list)
    params: Dict[str, str] = field(default_factory=dict)
    max_depth: float = 0.0
    diameter: Optional[float] = None
    path_id: Optional[str] = None

    def add_point(self, point: RoutingPoint) -> None:
        self.points.append(point)
        if point.z is not None and point.z < 0:
            self.max_depth = max(self.max_depth, abs(point.z))

    def xy(self) -> List[Vec2]:
        return [(p.x, p.y) for p in self.points]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.path_id,
            "points": [p.to_dict() for p in self.points],
            "params": dict(self.params),
            "max_depth": float(self.max_depth),
            "diameter": self.diameter,
        }


@dataclass(frozen=True)
class DrillHole:
    x: float
    y: float
    diameter: float
    depth: float = 0.0
    hole_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x": float(self.x),
            "y": float(self.y),
            "diameter": float(self.diameter),
            "depth": float(self.depth),
            "id": self.hole_id,
        }


@dataclass
class RecoveredPanel:
    """A finished part left on the sheet after all kerfs are removed.

    ``openings`` are the interior voids produced by the boolean difference;
    ``drill_rings`` are the circles of the drill holes this panel claimed,
    parallel to ``drill_holes``.
    """

    outline: Ring
    area: float
    bounds: Bounds
    openings: List[Ring] = field(default_factory=list)
    drill_rings: List[Ring] = field(default_factory=list)
    drill_holes: List[DrillHole] = field(default_factory=list)
    drill_hole_indices: List[int] = field(default_factory=list)  # into CixDocument.drill_holes

    @property
    def holes(self) -> List[Ring]:
        return list(self.openings) + list(self.drill_rings)

    @property
    def width(self) -> float:
        return self.bounds[2] - self.bounds[0]

    @property
    def height(self) -> float:
        return self.bounds[3] - self.bounds[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "polygon": _ring_to_dicts(self.outline),
            "holes": [_ring_to_dicts(h) for h in self.holes],
            "drillHoles": [h.to_dict() for h in self.drill_holes],
            "area": float(self.area),
            "width": float(self.width),
            "height": float(self.height),
            "bounds": [float(v) for v in self.bounds],
        }


@dataclass
class KerfPolygon:
    """Unioned material-removal footprint of the through-cut toolpaths."""

    outline: Ring
    area: float
    bounds: Bounds
    holes: List[Ring] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "polygon": _ring_to_dicts(self.outline),
            "holes": [_ring_to_dicts(h) for h in self.holes],
            "area": float(self.area),
            "bounds": [float(v) for v in self.bounds],
        }


@dataclass
class RemovedPolygon:
    outer: Ring
    holes: List[Ring] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outer": _ring_to_dicts(self.outer),
            "holes": [_ring_to_dicts(h) for h in self.holes],
        }


@dataclass
class CixDocument:
    """Result of parsing one CIX text.

    The recovery fields stay empty until ``recover_panels`` runs on the
    document.
    """

    filename: str
    sheet_id: str
    raw_content: str
    sheet: SheetInfo = field(default_factory=SheetInfo)
    labels: List[LabelPlacement] = field(default_factory=list)
    routing_paths: List[RoutingPath] = field(default_factory=list)
    drill_holes: List[DrillHole] = field(default_factory=list)
    parse_errors: List[str] = field(default_factory=list)

    recovered_panels: List[RecoveredPanel] = field(default_factory=list)
    kerf_polygons: List[KerfPolygon] = field(default_factory=list)
    removed_polygons: List[RemovedPolygon] = field(default_factory=list)
    drill_assignments: Dict[int, int] = field(default_factory=dict)  # hole index -> panel index

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "sheet_id": self.sheet_id,
            "parse_errors": list(self.parse_errors),
            "labels": [label.to_dict() for label in self.labels],
            "metadata": {
                "sheet_width": float(self.sheet.width),
                "sheet_height": float(self.sheet.height),
                "sheet_thickness": float(self.sheet.thickness),
                "routing_paths": [p.to_dict() for p in self.routing_paths],
                "drilling": [h.to_dict() for h in self.drill_holes],
                "recovered_panels": [p.to_dict() for p in self.recovered_panels],
                "kerf_polygons": [k.to_dict() for k in self.kerf_polygons],
                "removed_polygons": [r.to_dict() for r in self.removed_polygons],
                "drill_assignments": {str(k): v for k, v in self.drill_assignments.items()},
            },
        }


def _ring_to_dicts(ring: Sequence[Vec2]) -> List[Dict[str, float]]:
    return [{"x": float(x), "y": float(y)} for x, y in ring]
