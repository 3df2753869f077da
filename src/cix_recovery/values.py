"""Numeric value parsing for CIX parameters.

CIX values are loosely formatted: trailing dots (``1000.``), quoted strings,
and the occasional composite literal such as ``1550.-305.96`` meaning
"1550 minus 305.96". Only that one subtraction shape is understood; nothing
is ever evaluated as an expression.
"""

from __future__ import annotations

import math
import re
from typing import Any, Optional

# Leading numeric prefix, the same prefix a lenient float reader accepts.
_LEADING_NUMBER_RE = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")

_COMPOSITE_RE = re.compile(
    r"^\s*([+-]?(?:\d+\.\d*|\.\d+|\d+))\s*-\s*(\d+\.\d*|\.\d+|\d+)\s*$"
)


def is_composite_literal(value: Any) -> bool:
    """True for values shaped like ``<number>.-<number>``.

    The test is deliberately loose (a dot, a minus and at least two dots);
    ``parse_composite`` decides whether the shape is actually valid.
    """
    if value is None or isinstance(value, (int, float)):
        return False
    text = str(value)
    return "." in text and "-" in text and text.count(".") >= 2


def parse_composite(value: str) -> Optional[float]:
    match = _COMPOSITE_RE.match(value)
    if match is None:
        return None
    return float(match.group(1)) - float(match.group(2))


def parse_float(value: Any, default: float = 0.0) -> float:
    """Tolerant float parse used for every CIX numeric field.

    Composite literals are resolved by subtraction; anything else falls back
    to the leading numeric prefix of the text, then to *default*.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().strip('"')
    if is_composite_literal(text):
        result = parse_composite(text)
        return default if result is None else result
    number = parse_leading_float(text)
    return default if number is None else number


def parse_leading_float(text: str) -> Optional[float]:
    match = _LEADING_NUMBER_RE.match(text)
    if match is None:
        return None
    number = float(match.group(0))
    if not math.isfinite(number):
        return None
    return number


def parse_strict_float(value: Any) -> Optional[float]:
    """Whole-string float parse; ``None`` when the text is not a number."""
    if value is None:
        return None
    try:
        number = float(str(value).strip().strip('"'))
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_int(value: Any, default: int) -> int:
    if value is None:
        return default
    match = re.match(r"^\s*[+-]?\d+", str(value).strip('"'))
    if match is None:
        return default
    return int(match.group(0))


def flip_y(value: float, sheet_height: Optional[float]) -> float:
    """Convert a top-origin Y to bottom-origin.

    Identity when the sheet height is unknown, non-positive or NaN.
    """
    if sheet_height is None:
        return value
    h = float(sheet_height)
    if math.isnan(h) or h <= 0:
        return value
    return h - value
