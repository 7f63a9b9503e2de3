from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from .pairing import BACK, FRONT, MAX_PAIRS, Pair

# Measurements taken from the printed ID template, in points (1 inch = 72 pt).
# Coordinates use a top-left origin; the PDF writer flips them.
PAGE_W_PT = 595.30   # 8.268"
PAGE_H_PT = 841.90   # 11.693"
BOX_W_PT = 239.04    # 3.32"
BOX_H_PT = 143.28    # 1.99"
FRONT_X_PT = 47.52   # 0.66"
BACK_X_PT = 304.56   # 4.23"
FIRST_ROW_Y_PT = 21.60  # 0.30"
ROW_GAP_PT = 21.06
ROW_PITCH_PT = BOX_H_PT + ROW_GAP_PT
MAX_ROWS = MAX_PAIRS


class OrientationMode(str, Enum):
    NORMAL = "normal"
    REVERSED = "reversed"
    MIRRORED_REVERSED = "mirrored_reversed"

    @property
    def label(self) -> str:
        return {
            OrientationMode.NORMAL: "Normal (front left, back right)",
            OrientationMode.REVERSED: "Reversed (back left, front right)",
            OrientationMode.MIRRORED_REVERSED: "Mirrored + reversed (for double-sided printing)",
        }[self]


ORIENTATION_CHOICES = {
    "1": OrientationMode.NORMAL,
    "2": OrientationMode.REVERSED,
    "3": OrientationMode.MIRRORED_REVERSED,
}


def parse_orientation(text: str) -> Optional[OrientationMode]:
    s = (text or "").strip().lower()
    if s in ORIENTATION_CHOICES:
        return ORIENTATION_CHOICES[s]
    for mode in OrientationMode:
        if s == mode.value or s == mode.name.lower():
            return mode
    return None


@dataclass(frozen=True)
class Placement:
    image_ref: Path
    box_x: float
    box_y: float
    box_w: float
    box_h: float
    mirrored: bool
    side: str
    row: int


def row_y(row: int) -> float:
    return round(FIRST_ROW_Y_PT + row * ROW_PITCH_PT, 2)


def layout_page(pairs: Sequence[Pair], mode: OrientationMode = OrientationMode.NORMAL) -> List[Placement]:
    """
    Place up to five pairs on the single template page, one pair per row.

    NORMAL puts the front in the left box and the back in the right box.
    REVERSED swaps the boxes. MIRRORED_REVERSED swaps the boxes and flips each
    image around the vertical centerline of its box. Pairs beyond the fifth are
    dropped.
    """
    mode = OrientationMode(mode)
    swap = mode in (OrientationMode.REVERSED, OrientationMode.MIRRORED_REVERSED)
    mirrored = mode == OrientationMode.MIRRORED_REVERSED
    front_x, back_x = (BACK_X_PT, FRONT_X_PT) if swap else (FRONT_X_PT, BACK_X_PT)

    placements: List[Placement] = []
    for row, pair in enumerate(list(pairs)[:MAX_ROWS]):
        y = row_y(row)
        placements.append(Placement(pair.front, front_x, y, BOX_W_PT, BOX_H_PT, mirrored, FRONT, row))
        placements.append(Placement(pair.back, back_x, y, BOX_W_PT, BOX_H_PT, mirrored, BACK, row))
    return placements
