"""Tests for character auto-layout and strip grid selection."""

import pytest

from stripforge.composition.layout import (
    CharacterPlacement,
    StripLayout,
    apply_auto_layout,
    auto_layout,
    compute_strip_grid,
)


class TestAutoLayout:
    def test_three_characters(self):
        positions = auto_layout(3, 1024, 1024)
        assert positions == [
            (50.0, 50.0, 1.0, 1),
            (512.0, 306.0, 0.8, 2),
            (974.0, 50.0, 1.0, 3),
        ]

    def test_single_character_sits_at_margin(self):
        assert auto_layout(1, 1024, 1024) == [(50.0, 50.0, 1.0, 1)]

    def test_explicit_positions_are_kept(self):
        placements = [
            CharacterPlacement("a.png", x=300, y=400, scale=0.5, z_index=9),
            CharacterPlacement("b.png"),
            CharacterPlacement("c.png"),
        ]
        apply_auto_layout(placements, 1024, 1024)

        assert (placements[0].x, placements[0].y, placements[0].scale) == (300, 400, 0.5)
        assert (placements[1].x, placements[1].y, placements[1].z_index) == (50.0, 50.0, 1)
        assert (placements[2].x, placements[2].y, placements[2].scale) == (974.0, 306.0, 0.8)


class TestStripGrid:
    def test_default_limits_give_single_row(self):
        grid = compute_strip_grid(4)
        assert (grid.cols, grid.rows) == (4, 1)
        # Height is the binding constraint: (1024 - 2*40) / 1024
        assert grid.scale == pytest.approx(944 / 1024)
        assert grid.cell_height == 944
        assert grid.height == 1024
        assert grid.width <= 4096

    def test_square_limits_give_two_by_two(self):
        layout = StripLayout(panel_width=100, panel_height=100, gap=10, padding=10, max_width=230, max_height=230)
        grid = compute_strip_grid(4, layout)
        assert (grid.cols, grid.rows) == (2, 2)
        assert grid.scale == 1.0
        assert (grid.width, grid.height) == (230, 230)
        assert grid.cell_origin(3) == (120, 120)

    def test_ties_prefer_fewer_empty_cells(self):
        # Every grid fits at full size; 2x2 leaves a cell empty
        layout = StripLayout(panel_width=10, panel_height=10, gap=0, padding=0, max_width=1000, max_height=1000)
        grid = compute_strip_grid(3, layout)
        assert (grid.cols, grid.rows) == (3, 1)

    def test_ties_prefer_fewer_rows(self):
        layout = StripLayout(panel_width=10, panel_height=10, gap=0, padding=0, max_width=1000, max_height=1000)
        grid = compute_strip_grid(4, layout)
        assert (grid.cols, grid.rows) == (4, 1)

    def test_no_panels_raises(self):
        with pytest.raises(ValueError):
            compute_strip_grid(0)

    def test_impossible_limits_raise(self):
        with pytest.raises(ValueError):
            compute_strip_grid(2, StripLayout(padding=600, max_width=1000, max_height=1000))
