"""
Shared fixtures for CIX parsing and panel recovery tests.
"""
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cix_recovery import parse_cix


# ─── CIX text builders ───────────────────────────────────────────────────────

def maindata(width=None, height=None, thickness=None) -> List[str]:
    lines = ["BEGIN MAINDATA"]
    if width is not None:
        lines.append(f"LPX={width}")
    if height is not None:
        lines.append(f"LPY={height}")
    if thickness is not None:
        lines.append(f"LPZ={thickness}")
    lines.append("END MAINDATA")
    return lines


def macro(name: str, **params) -> List[str]:
    lines = ["BEGIN MACRO", f"NAME={name}"]
    for key, value in params.items():
        lines.append(f'PARAM,NAME={key},VALUE="{value}"')
    lines.append("END MACRO")
    return lines


def label(label_id: str, x: float, y, **extra) -> List[str]:
    return macro("LABEL", ID=label_id, X=x, Y=y, **extra)


def rout(
    points: Sequence[Tuple[float, float]],
    depth: float = -20.0,
    dia: Optional[float] = None,
    path_id: Optional[str] = None,
) -> List[str]:
    """A ROUT macro followed by one macro block per segment (real CIX layout)."""
    params: Dict[str, object] = {}
    if path_id is not None:
        params["ID"] = path_id
    if dia is not None:
        params["DIA"] = dia
    lines = macro("ROUT", **params)
    (x0, y0), rest = points[0], points[1:]
    lines += macro("START_POINT", X=x0, Y=y0)
    for x, y in rest:
        lines += macro("LINE_EP", XE=x, YE=y, ZE=depth)
    lines += macro("ENDPATH")
    return lines


def rect_points(x0, y0, x1, y1) -> List[Tuple[float, float]]:
    return [(x0, y0), (x1, y0), (x1, y1), (x0, y1), (x0, y0)]


def cix_text(*blocks: List[str]) -> str:
    lines: List[str] = []
    for block in blocks:
        lines.extend(block)
    return "\n".join(lines) + "\n"


# ─── Fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture
def rect_cut_text():
    """1000x500x18 sheet with one through-cut rectangle at (100,100)-(900,400)."""
    return cix_text(
        maindata(1000, 500, 18),
        rout(rect_points(100, 100, 900, 400), depth=-20.0, dia=6),
    )


@pytest.fixture
def rect_cut_document(rect_cut_text):
    return parse_cix(rect_cut_text, "rect.cix")


@pytest.fixture
def two_panel_text():
    """Two separate through-cut rectangles; only the left one is labelled."""
    return cix_text(
        maindata(1000, 500, 18),
        label("P1", 250, 250),
        rout(rect_points(100, 100, 400, 400), depth=-19.0, dia=6),
        rout(rect_points(600, 100, 900, 400), depth=-19.0, dia=6),
    )


@pytest.fixture
def nested_rout_text():
    """ROUT with its segments written as NAME= markers inside one block."""
    return "\n".join([
        "BEGIN MAINDATA",
        "LPX=800.",
        "LPY=600.",
        "LPZ=18.",
        "END MAINDATA",
        "BEGIN MACRO",
        "NAME=ROUT",
        'PARAM,NAME=ID,VALUE="R7"',
        "PARAM,NAME=DIA,VALUE=10",
        "NAME=START_POINT",
        "PARAM,NAME=X,VALUE=100",
        "PARAM,NAME=Y,VALUE=100",
        "NAME=LINE_EP",
        "PARAM,NAME=XE,VALUE=300",
        "PARAM,NAME=YE,VALUE=100",
        "PARAM,NAME=ZE,VALUE=-18.5",
        "NAME=ARC_EPCE",
        "PARAM,NAME=XE,VALUE=300",
        "PARAM,NAME=YE,VALUE=300",
        "PARAM,NAME=XC,VALUE=300",
        "PARAM,NAME=YC,VALUE=200",
        "PARAM,NAME=ZE,VALUE=-19",
        "NAME=ARC_EPRA",
        "PARAM,NAME=XE,VALUE=100",
        "PARAM,NAME=YE,VALUE=300",
        "NAME=ENDPATH",
        "END MACRO",
    ]) + "\n"
