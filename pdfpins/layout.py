"""Rebuild reading order from the positioned text runs of one page.

Runs arrive in whatever order the text layer emits them. They are grouped into
visual lines by baseline Y, lines are read top to bottom (PDF space, so higher Y
first) and runs inside a line left to right.

Two grouping strategies are available:

* ``anchored`` -- a line keeps the Y of the run that opened it. A run joins the
  lowest existing line within tolerance, otherwise it opens a new one. The
  result can depend on input order when runs drift by less than the tolerance
  from one to the next (100, 104, 108 gives two lines).
* ``gap`` -- runs are sorted by Y and a new line starts wherever two consecutive
  baselines are further apart than the tolerance. Independent of input order;
  the same drifting runs give one line.
"""

from __future__ import annotations

import math
from typing import Any, Iterable, List, Mapping, Optional, Union

from .models import LineGroup, TextFragment

Y_TOLERANCE = 5.0
STRATEGIES = ("anchored", "gap")

FragmentLike = Union[TextFragment, Mapping[str, Any]]


def _coord(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def clean_fragments(fragments: Iterable[FragmentLike]) -> List[TextFragment]:
    """Drop blank or unpositioned runs and flatten embedded newlines."""
    out: List[TextFragment] = []
    for item in fragments:
        if isinstance(item, Mapping):
            item = TextFragment.from_mapping(item)
        if not isinstance(item, TextFragment):
            continue
        text = item.text if isinstance(item.text, str) else ""
        if not text.strip():
            continue
        x, y = _coord(item.x), _coord(item.y)
        if x is None or y is None:
            continue
        out.append(TextFragment(text=text.replace("\r\n", " ").replace("\n", " "), x=x, y=y))
    return out


def _group_anchored(fragments: List[TextFragment], tolerance: float) -> List[LineGroup]:
    groups: List[LineGroup] = []
    for frag in fragments:
        matches = [g for g in groups if abs(g.y - frag.y) <= tolerance]
        if matches:
            min(matches, key=lambda g: g.y).fragments.append(frag)
        else:
            groups.append(LineGroup(y=frag.y, fragments=[frag]))
    return groups


def _group_by_gap(fragments: List[TextFragment], tolerance: float) -> List[LineGroup]:
    groups: List[LineGroup] = []
    previous_y: Optional[float] = None
    for frag in sorted(fragments, key=lambda f: -f.y):
        if previous_y is None or previous_y - frag.y > tolerance:
            groups.append(LineGroup(y=frag.y, fragments=[]))
        groups[-1].fragments.append(frag)
        previous_y = frag.y
    return groups


def group_lines(
    fragments: Iterable[FragmentLike],
    tolerance: float = Y_TOLERANCE,
    strategy: str = "anchored",
) -> List[LineGroup]:
    """Group runs into lines, ordered top to bottom with runs left to right."""
    cleaned = clean_fragments(fragments)
    if strategy == "anchored":
        groups = _group_anchored(cleaned, tolerance)
    elif strategy == "gap":
        groups = _group_by_gap(cleaned, tolerance)
    else:
        raise ValueError(f"Unknown layout strategy {strategy!r}; expected one of {STRATEGIES}")

    groups.sort(key=lambda g: g.y, reverse=True)
    for group in groups:
        # list.sort is stable, ties on x keep insertion order
        group.fragments.sort(key=lambda f: f.x)
    return groups


def reconstruct_page_text(
    fragments: Iterable[FragmentLike],
    tolerance: float = Y_TOLERANCE,
    strategy: str = "anchored",
) -> str:
    return "\n".join(g.text for g in group_lines(fragments, tolerance, strategy))
