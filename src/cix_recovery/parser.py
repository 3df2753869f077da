"""CIX text -> ``CixDocument``.

Three passes run over the same token stream:

1. sheet dimensions from the ``MAINDATA`` block,
2. macro blocks, from which labels (``LABEL``) and drill holes (``BV``) are
   read,
3. routing paths, assembled from ``ROUT`` macros and the segment sections
   (``START_POINT``, ``LINE_EP``, ``ARC_*``, ``ENDPATH``) that follow them.

Segment sections may be written as their own ``BEGIN MACRO`` blocks or as
additional ``NAME=`` markers inside the ROUT block; both produce the same
path. Parsing never raises: problems are appended to
``CixDocument.parse_errors``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from cix_recovery.contracts import (
    CixDocument,
    DrillHole,
    LabelPlacement,
    RoutingPath,
    RoutingPoint,
    SheetInfo,
)
from cix_recovery.tokenizer import BEGIN, END, FIELD, PARAM, CixToken, tokenize
from cix_recovery.values import (
    flip_y,
    is_composite_literal,
    parse_float,
    parse_int,
    parse_leading_float,
)

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 50_000_000
DEFAULT_SHEET_THICKNESS_MM = 18.0
SHEET_KEYS = {"LPX": "width", "LPY": "height", "LPZ": "thickness"}

ARC_SECTIONS = ("ARC_EPTP", "ARC_EPRA")


@dataclass
class ParseContext:
    """State shared by the passes of a single parse call."""

    sheet_height: float = 0.0
    errors: List[str] = field(default_factory=list)

    def flip(self, y: float) -> float:
        return flip_y(y, self.sheet_height)


@dataclass
class MacroSection:
    """A ``NAME=`` marker and the PARAM lines that follow it."""

    name: str
    params: Dict[str, str] = field(default_factory=dict)
    line_no: int = 0


@dataclass
class MacroBlock:
    sections: List[MacroSection] = field(default_factory=list)
    line_no: int = 0

    @property
    def name(self) -> str:
        return self.sections[0].name if self.sections else ""

    @property
    def params(self) -> Dict[str, str]:
        return self.sections[0].params if self.sections else {}


def parse_cix(content: str, filename: str = "upload.cix") -> CixDocument:
    """Parse CIX text into a ``CixDocument``; never raises."""
    document = CixDocument(
        filename=filename,
        sheet_id=os.path.splitext(filename)[0],
        raw_content=content,
    )
    if len(content) > MAX_INPUT_CHARS:
        document.parse_errors.append(
            f"Input too large: {len(content)} characters (limit {MAX_INPUT_CHARS})"
        )
        logger.warning("Rejected oversized CIX input %s (%d chars)", filename, len(content))
        return document

    try:
        _parse_into(content, document)
    except Exception as exc:
        logger.warning("CIX parse failed for %s: %s", filename, exc)
        document.parse_errors.append(str(exc) or exc.__class__.__name__)

    logger.info(
        "Parsed %s: sheet %.1fx%.1fx%.1f, %d labels, %d routing paths, %d drill holes",
        filename,
        document.sheet.width,
        document.sheet.height,
        document.sheet.thickness,
        len(document.labels),
        len(document.routing_paths),
        len(document.drill_holes),
    )
    return document


def _parse_into(content: str, document: CixDocument) -> None:
    tokens = tokenize(content)

    sheet = read_sheet(tokens)
    if sheet is None:
        document.parse_errors.append("No MAINDATA block found in CIX file")
        sheet = SheetInfo(thickness=DEFAULT_SHEET_THICKNESS_MM)
    document.sheet = sheet

    ctx = ParseContext(sheet_height=sheet.height, errors=document.parse_errors)

    macros = read_macros(tokens, document.parse_errors)
    document.labels = extract_labels(macros, ctx)
    document.routing_paths = extract_routing_paths(macros, ctx)
    document.drill_holes = extract_drill_holes(macros, ctx)

    if not document.labels:
        document.parse_errors.append("No LABEL macros found in CIX file")


# ---------------------------------------------------------------------------
# Pass 1: sheet dimensions
# ---------------------------------------------------------------------------

def read_sheet(tokens: Sequence[CixToken]) -> Optional[SheetInfo]:
    """Read LPX/LPY/LPZ from the first MAINDATA block.

    Unparseable values are dropped without a diagnostic. Returns ``None``
    when there is no MAINDATA block at all.
    """
    stream = _TokenStream(tokens)
    while not stream.at_end():
        token = stream.next()
        if token.kind == BEGIN and token.key == "MAINDATA":
            return _read_maindata_body(stream)
    return None


def _read_maindata_body(stream: "_TokenStream") -> SheetInfo:
    values: Dict[str, float] = {}
    while not stream.at_end():
        token = stream.next()
        if token.kind == END and token.key == "MAINDATA":
            break
        if token.kind != FIELD or token.key not in SHEET_KEYS:
            continue
        number = parse_leading_float(token.value.rstrip("."))
        if number is not None:
            values[SHEET_KEYS[token.key]] = number
    return SheetInfo(
        width=values.get("width", 0.0),
        height=values.get("height", 0.0),
        thickness=values.get("thickness", DEFAULT_SHEET_THICKNESS_MM),
    )


# ---------------------------------------------------------------------------
# Pass 2: macro blocks
# ---------------------------------------------------------------------------

def read_macros(tokens: Sequence[CixToken], errors: Optional[List[str]] = None) -> List[MacroBlock]:
    """Collect every ``BEGIN MACRO ... END MACRO`` block in document order.

    Problems with nested blocks are appended to *errors* when given.
    """
    stream = _TokenStream(tokens)
    macros: List[MacroBlock] = []
    if errors is None:
        errors = []
    while not stream.at_end():
        token = stream.next()
        if token.kind == BEGIN and token.key == "MACRO":
            macros.append(_read_macro_body(stream, token.line_no, errors))
    return macros


def _read_macro_body(stream: "_TokenStream", line_no: int, errors: List[str]) -> MacroBlock:
    block = MacroBlock(line_no=line_no)
    current: Optional[MacroSection] = None
    while not stream.at_end():
        token = stream.peek()
        if token.kind == END and token.key == "MACRO":
            stream.next()
            break
        if token.kind == BEGIN:
            if token.key == "MACRO":
                # missing END MACRO; let the caller start the next block
                break
            stream.next()
            if not _skip_block(stream, token.key):
                logger.warning("Unterminated BEGIN %s at line %d", token.key, token.line_no)
                errors.append(f"BEGIN {token.key} at line {token.line_no} has no matching END {token.key}")
            continue
        stream.next()
        if token.kind == FIELD and token.key == "NAME":
            current = MacroSection(name=token.value, line_no=token.line_no)
            block.sections.append(current)
        elif token.kind == PARAM and token.key:
            if current is None:
                current = MacroSection(name="", line_no=token.line_no)
                block.sections.append(current)
            current.params[token.key] = token.value
    return block


def _skip_block(stream: "_TokenStream", block: str) -> bool:
    """Consume tokens up to the END matching an already consumed BEGIN.

    Stops without consuming at a macro boundary and returns False, so an
    unterminated block never swallows the macros after it.
    """
    while not stream.at_end():
        token = stream.peek()
        if token.key == "MACRO" and token.kind in (BEGIN, END):
            return False
        stream.next()
        if token.kind == BEGIN:
            if not _skip_block(stream, token.key):
                return False
        elif token.kind == END and token.key == block:
            return True
    return False


def extract_labels(macros: Sequence[MacroBlock], ctx: ParseContext) -> List[LabelPlacement]:
    labels: List[LabelPlacement] = []
    for macro in macros:
        if macro.name != "LABEL":
            continue
        params = macro.params
        y_value = params.get("Y", "0")
        y_raw = parse_float(y_value)
        # "LPY.-y" style values are already bottom-origin
        y = y_raw if is_composite_literal(y_value) else ctx.flip(y_raw)
        labels.append(
            LabelPlacement(
                label_id=params.get("ID", "Unknown"),
                x=parse_float(params.get("X")),
                y=y,
                y_raw=y_raw,
                rotation=parse_float(params.get("ROT")),
                data=params.get("DATA", ""),
                name=params.get("NAME", ""),
            )
        )
    return labels


def extract_drill_holes(macros: Sequence[MacroBlock], ctx: ParseContext) -> List[DrillHole]:
    """Expand BV macros into individual holes.

    ``NRP`` repeats are unrolled here at ``(X + DX*i, Y + DY*i)``.
    """
    holes: List[DrillHole] = []
    for macro in macros:
        if macro.name != "BV":
            continue
        params = macro.params
        x = parse_float(params.get("X"))
        y = parse_float(params.get("Y"))
        diameter = parse_float(params.get("DIA", "5"))
        depth = parse_float(params.get("DP", "0"))
        repeat = max(1, parse_int(params.get("NRP"), 1))
        dx = parse_float(params.get("DX", "0"))
        dy = parse_float(params.get("DY", "0"))
        for i in range(repeat):
            holes.append(
                DrillHole(
                    x=x + dx * i,
                    y=ctx.flip(y + dy * i),
                    diameter=diameter,
                    depth=depth,
                    hole_id=params.get("ID"),
                )
            )
    return holes


# ---------------------------------------------------------------------------
# Pass 3: routing paths
# ---------------------------------------------------------------------------

def extract_routing_paths(macros: Sequence[MacroBlock], ctx: ParseContext) -> List[RoutingPath]:
    builder = _RoutingBuilder(ctx)
    for macro in macros:
        for section in macro.sections:
            builder.feed(section)
    builder.finish()
    return builder.paths


class _RoutingBuilder:
    """Accumulates segment sections into the currently open ROUT path."""

    def __init__(self, ctx: ParseContext):
        self.ctx = ctx
        self.paths: List[RoutingPath] = []
        self.current: Optional[RoutingPath] = None

    def feed(self, section: MacroSection) -> None:
        name = section.name
        if name == "ROUT":
            if self.current is not None:
                self._close(f"ROUT at line {section.line_no} started before ENDPATH")
            self.current = _open_path(section)
            return
        if self.current is None:
            return

        params = section.params
        if name == "START_POINT":
            z = params.get("Z")
            self.current.add_point(
                RoutingPoint(
                    x=parse_float(params.get("X")),
                    y=self.ctx.flip(parse_float(params.get("Y"))),
                    kind="start",
                    z=parse_float(z) if z is not None else None,
                )
            )
        elif name == "LINE_EP":
            self.current.add_point(self._end_point(params, "line"))
        elif name in ARC_SECTIONS:
            self.current.add_point(self._end_point(params, "arc"))
        elif name == "ARC_EPCE":
            point = self._end_point(params, "arc")
            point.center = (
                parse_float(params.get("XC")),
                self.ctx.flip(parse_float(params.get("YC"))),
            )
            self.current.add_point(point)
        elif name == "ENDPATH":
            if self.current.path_id is None and params.get("ID"):
                self.current.path_id = params["ID"]
            self._close()

    def finish(self) -> None:
        if self.current is not None:
            self._close("routing path not terminated by ENDPATH")

    def _end_point(self, params: Dict[str, str], kind: str) -> RoutingPoint:
        return RoutingPoint(
            x=parse_float(params.get("XE")),
            y=self.ctx.flip(parse_float(params.get("YE"))),
            kind=kind,
            z=parse_float(params.get("ZE")),
        )

    def _close(self, problem: Optional[str] = None) -> None:
        path = self.current
        self.current = None
        if path is None or not path.points:
            return
        if problem:
            self.ctx.errors.append(f"Routing path {path.path_id or len(self.paths)}: {problem}")
            logger.debug("Closing routing path early: %s", problem)
        self.paths.append(path)


def _open_path(section: MacroSection) -> RoutingPath:
    path = RoutingPath(params=dict(section.params), path_id=section.params.get("ID"))
    if "DIA" in section.params:
        path.diameter = parse_leading_float(section.params["DIA"])
    return path


class _TokenStream:
    def __init__(self, tokens: Sequence[CixToken]):
        self._tokens = tokens
        self._pos = 0

    def at_end(self) -> bool:
        return self._pos >= len(self._tokens)

    def peek(self) -> CixToken:
        return self._tokens[self._pos]

    def next(self) -> CixToken:
        token = self._tokens[self._pos]
        self._pos += 1
        return token
