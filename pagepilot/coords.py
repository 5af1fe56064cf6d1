"""Viewport-relative coordinate helpers.

Positions are captured as fractions of the viewport so a playbook recorded at one
window size clicks the same relative spot at another. Scroll offsets ride along
in the stored position but are not applied at replay time.
"""

from __future__ import annotations

import math
from typing import Optional

from .schemas import Point, RelativePosition, ScrollOffset, Viewport


def to_relative(
    abs_x: float,
    abs_y: float,
    viewport: Viewport,
    scroll: Optional[ScrollOffset] = None,
) -> RelativePosition:
    scroll = scroll or ScrollOffset()
    return RelativePosition(
        rel_x=abs_x / viewport.width,
        rel_y=abs_y / viewport.height,
        viewport_width=viewport.width,
        viewport_height=viewport.height,
        scroll_x=scroll.x,
        scroll_y=scroll.y,
    )


def to_absolute(stored: RelativePosition, current_viewport: Viewport) -> Point:
    return Point(
        x=_round_half_up(stored.rel_x * current_viewport.width),
        y=_round_half_up(stored.rel_y * current_viewport.height),
    )


def rescale(stored: RelativePosition, current_viewport: Viewport) -> RelativePosition:
    """Return ``stored`` re-expressed against ``current_viewport`` (scroll offsets kept)."""
    point = to_absolute(stored, current_viewport)
    return RelativePosition(
        rel_x=point.x / current_viewport.width,
        rel_y=point.y / current_viewport.height,
        viewport_width=current_viewport.width,
        viewport_height=current_viewport.height,
        scroll_x=stored.scroll_x,
        scroll_y=stored.scroll_y,
    )


def _round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; pixel math wants .5 to go up.
    return int(math.floor(value + 0.5))
