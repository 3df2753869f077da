"""Line tokenizer for the CIX macro dialect.

Turns raw text into a flat stream of ``CixToken`` events. The tokenizer is
context free: it does not know which block a line belongs to, the builder
in ``parser`` does.

Event kinds:
  - ``begin`` / ``end``: ``BEGIN <BLOCK>`` / ``END <BLOCK>``; key is the block
  - ``field``: a ``KEY=VALUE`` line (``NAME=ROUT``, ``LPX=1000``)
  - ``param``: a ``PARAM,NAME=k,VALUE=v[,...]`` line; key/value are the
    NAME and VALUE entries, ``attrs`` holds every pair on the line
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

BEGIN = "begin"
END = "end"
FIELD = "field"
PARAM = "param"


@dataclass(frozen=True)
class CixToken:
    kind: str
    key: str
    value: str = ""
    line_no: int = 0
    attrs: Dict[str, str] = field(default_factory=dict)


def tokenize(text: str) -> List[CixToken]:
    return list(iter_tokens(text.splitlines()))


def iter_tokens(lines: Iterable[str]) -> Iterator[CixToken]:
    for line_no, raw in enumerate(lines, start=1):
        token = tokenize_line(raw, line_no)
        if token is not None:
            yield token


def tokenize_line(raw: str, line_no: int = 0) -> Optional[CixToken]:
    line = raw.strip()
    if not line:
        return None
    head = line.split(None, 1)
    if head[0] in ("BEGIN", "END"):
        block = head[1].strip().upper() if len(head) > 1 else ""
        return CixToken(kind=BEGIN if head[0] == "BEGIN" else END, key=block, line_no=line_no)
    if line.startswith("PARAM"):
        attrs = parse_param_attrs(line)
        return CixToken(
            kind=PARAM,
            key=attrs.get("NAME", ""),
            value=attrs.get("VALUE", ""),
            line_no=line_no,
            attrs=attrs,
        )
    if "=" in line:
        key, _, value = line.partition("=")
        return CixToken(kind=FIELD, key=key.strip(), value=_unquote(value), line_no=line_no)
    return None


def parse_param_attrs(line: str) -> Dict[str, str]:
    """Split ``PARAM,NAME=X,VALUE="10"`` into ``{"NAME": "X", "VALUE": "10"}``."""
    attrs: Dict[str, str] = {}
    for part in line.split(",")[1:]:
        if "=" not in part:
            continue
        key, _, value = part.partition("=")
        attrs[key.strip()] = _unquote(value)
    return attrs


def _unquote(value: str) -> str:
    return value.strip().strip('"').strip()
