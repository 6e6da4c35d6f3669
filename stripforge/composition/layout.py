"""Layout math for panels and strips.

auto_layout() spreads characters evenly across the panel and staggers them
between two depth bands by index parity: odd-indexed characters sit a
quarter panel lower and are drawn 20% smaller. It is a fixed heuristic,
not scene understanding, and existing strips depend on it looking this way.
"""

import math
from dataclasses import dataclass
from typing import Optional

LAYOUT_MARGIN = 50


@dataclass
class CharacterPlacement:
    """One character image on a panel.

    x/y is the point the image is centered on. Placements without x/y are
    positioned by auto_layout().
    """

    image_url: str
    x: Optional[float] = None
    y: Optional[float] = None
    scale: float = 1.0
    z_index: int = 0

    @property
    def is_positioned(self) -> bool:
        return self.x is not None and self.y is not None


@dataclass
class StripLayout:
    """Tiling constraints for a strip."""

    panel_width: int = 1024
    panel_height: int = 1024
    gap: int = 20
    padding: int = 40
    max_width: int = 4096
    max_height: int = 1024


@dataclass
class StripGrid:
    """The grid chosen for a strip, in output pixels."""

    cols: int
    rows: int
    scale: float
    cell_width: int
    cell_height: int
    width: int
    height: int
    gap: int
    padding: int

    def cell_origin(self, index: int) -> tuple[int, int]:
        row, col = divmod(index, self.cols)
        x = self.padding + col * (self.cell_width + self.gap)
        y = self.padding + row * (self.cell_height + self.gap)
        return x, y


def auto_layout(
    count: int,
    width: int,
    height: int,
    margin: int = LAYOUT_MARGIN,
) -> list[tuple[float, float, float, int]]:
    """Positions for `count` characters as (x, y, scale, z_index)."""
    spacing = (width - 2 * margin) / max(1, count - 1)
    positions = []
    for i in range(count):
        x = margin + spacing * i
        y = margin + (i % 2) * (height / 4)
        scale = 1.0 - (i % 2) * 0.2
        positions.append((x, y, scale, i + 1))
    return positions


def apply_auto_layout(
    placements: list[CharacterPlacement],
    width: int,
    height: int,
) -> list[CharacterPlacement]:
    """Fill in positions for placements that have none.

    Indexes run over the unpositioned placements only, in input order.
    """
    unpositioned = [p for p in placements if not p.is_positioned]
    positions = auto_layout(len(unpositioned), width, height)
    for placement, (x, y, scale, z_index) in zip(unpositioned, positions):
        placement.x = x
        placement.y = y
        placement.scale = scale
        placement.z_index = z_index
    return placements


def _fit_scale(layout: StripLayout, cols: int, rows: int) -> float:
    usable_width = layout.max_width - 2 * layout.padding - (cols - 1) * layout.gap
    usable_height = layout.max_height - 2 * layout.padding - (rows - 1) * layout.gap
    if usable_width <= 0 or usable_height <= 0:
        return 0.0
    return min(
        1.0,
        usable_width / (cols * layout.panel_width),
        usable_height / (rows * layout.panel_height),
    )


def compute_strip_grid(count: int, layout: Optional[StripLayout] = None) -> StripGrid:
    """Pick rows/columns for `count` panels within the strip's size limits.

    Every column count from 1 to `count` is tried. The winner keeps panels
    largest (uniform scale, never above 1); ties go to fewer empty cells,
    then fewer rows.
    """
    if count < 1:
        raise ValueError("A strip needs at least one panel")
    layout = layout or StripLayout()

    best: Optional[tuple[tuple[float, int, int], int, int, float]] = None
    for cols in range(1, count + 1):
        rows = math.ceil(count / cols)
        scale = _fit_scale(layout, cols, rows)
        if scale <= 0:
            continue
        key = (-round(scale, 6), cols * rows - count, rows)
        if best is None or key < best[0]:
            best = (key, cols, rows, scale)

    if best is None:
        raise ValueError(
            f"Strip limits {layout.max_width}x{layout.max_height} leave no room "
            f"for panels with padding {layout.padding} and gap {layout.gap}"
        )

    _, cols, rows, scale = best
    cell_width = max(1, int(layout.panel_width * scale))
    cell_height = max(1, int(layout.panel_height * scale))
    return StripGrid(
        cols=cols,
        rows=rows,
        scale=scale,
        cell_width=cell_width,
        cell_height=cell_height,
        width=2 * layout.padding + cols * cell_width + (cols - 1) * layout.gap,
        height=2 * layout.padding + rows * cell_height + (rows - 1) * layout.gap,
        gap=layout.gap,
        padding=layout.padding,
    )
