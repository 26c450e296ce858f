from __future__ import annotations

import math

from .conf import max_image_height, max_image_width


def resize(raw_width: int, raw_height: int, *, max_width: int, max_height: int) -> tuple[int, int]:
    """
    Clamp raw pixel geometry to a display footprint, keeping the aspect ratio.

    Images strictly inside both limits keep their size. Otherwise both sides are
    scaled by the tighter of the two ratios and floored.
    """

    width = float(raw_width)
    height = float(raw_height)
    if width <= 0 or height <= 0:
        return int(width), int(height)

    if width < max_width and height < max_height:
        return int(width), int(height)

    ratio = min(max_width / width, max_height / height)
    return math.floor(width * ratio), math.floor(height * ratio)


def resize_for_display(raw_width: int, raw_height: int) -> tuple[int, int]:
    return resize(
        raw_width,
        raw_height,
        max_width=max_image_width(),
        max_height=max_image_height(),
    )
