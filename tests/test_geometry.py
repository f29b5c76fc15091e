"""
Tests for resize planning and patch grids.
"""
import pytest
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from nanovlm.exceptions import InvalidArgument
from nanovlm.preprocessors.geometry import (
    PatchGrid,
    ResizePlan,
    ceil_to_multiple,
    compute_dynamic_resize,
    patch_grid,
    rescale_size,
    round_half_away,
    split_grid,
)


class TestDynamicResize:
    """Ceiling policy used by the dynamic grid."""

    def test_landscape(self):
        plan = compute_dynamic_resize(1000, 400, 896, 448)
        assert plan == ResizePlan(896, 448)
        assert patch_grid(plan, 448) == PatchGrid(rows=1, cols=2)

    def test_portrait_keeps_orientation(self):
        plan = compute_dynamic_resize(400, 1000, 896, 448)
        assert plan == ResizePlan(448, 896)
        assert patch_grid(plan, 448) == PatchGrid(rows=2, cols=1)

    def test_tiny_image_is_one_patch(self):
        plan = compute_dynamic_resize(1, 1, 2048, 512)
        assert plan == ResizePlan(512, 512)
        assert patch_grid(plan, 512).n_patches == 1

    def test_small_image_not_upscaled_past_next_multiple(self):
        plan = compute_dynamic_resize(600, 300, 2048, 512)
        assert plan == ResizePlan(1024, 512)

    def test_force_max_side(self):
        assert compute_dynamic_resize(100, 50, 896, 448, resize_to_max_side_len=True) == ResizePlan(896, 448)
        assert compute_dynamic_resize(100, 50, 896, 448) == ResizePlan(448, 448)

    def test_exact_multiple_does_not_overshoot(self):
        # 1536 * 2048 / 2048 / 512 is exactly 3
        assert compute_dynamic_resize(2048, 1536, 2048, 512) == ResizePlan(2048, 1536)
        assert compute_dynamic_resize(896, 448, 896, 448) == ResizePlan(896, 448)

    def test_square(self):
        assert compute_dynamic_resize(3000, 3000, 2048, 512) == ResizePlan(2048, 2048)

    @pytest.mark.parametrize("width,height", [
        (1, 1), (7, 3000), (3000, 7), (511, 513), (1920, 1080), (1080, 1920), (4032, 3024), (100, 100),
    ])
    @pytest.mark.parametrize("force", [False, True])
    def test_outputs_are_patch_multiples_within_bounds(self, width, height, force):
        plan = compute_dynamic_resize(width, height, 2048, 512, force)
        for side in plan.size:
            assert side % 512 == 0
            assert 512 <= side <= 2048
        if width > height:
            assert plan.target_width >= plan.target_height
        elif width < height:
            assert plan.target_width <= plan.target_height

    def test_max_side_must_be_multiple_of_patch(self):
        with pytest.raises(InvalidArgument):
            compute_dynamic_resize(1000, 400, 900, 448)

    @pytest.mark.parametrize("args", [
        (0, 10, 512, 512), (10, -1, 512, 512), (10, 10, 0, 512), (10, 10, 512, 0),
    ])
    def test_non_positive_inputs(self, args):
        with pytest.raises(InvalidArgument):
            compute_dynamic_resize(*args)


class TestRescaleSize:
    """Rescale-if-larger policy used by the longest edge split."""

    def test_small_image_unchanged(self):
        assert rescale_size(800, 600, 2048) == ResizePlan(800, 600)
        assert rescale_size(2048, 100, 2048) == ResizePlan(2048, 100)

    def test_shrinks_longest_edge(self):
        assert rescale_size(4096, 1024, 2048) == ResizePlan(2048, 512)
        assert rescale_size(1024, 4096, 2048) == ResizePlan(512, 2048)

    def test_rounds_to_nearest(self):
        # 1000 * 2048 / 3000 = 682.67
        assert rescale_size(3000, 1000, 2048) == ResizePlan(2048, 683)

    def test_degenerate_aspect_ratio_keeps_one_pixel(self):
        assert rescale_size(10000, 1, 100) == ResizePlan(100, 1)

    def test_round_half_away_from_zero(self):
        assert round_half_away(2.5) == 3
        assert round_half_away(3.5) == 4
        assert round_half_away(-2.5) == -3
        assert round_half_away(0.49) == 0
        assert round_half_away(7.0) == 7


class TestGrids:
    """Grid helpers."""

    def test_ceil_to_multiple(self):
        assert ceil_to_multiple(1000, 448) == 1344
        assert ceil_to_multiple(896, 448) == 896
        assert ceil_to_multiple(1, 448) == 448

    def test_tile_counts(self):
        assert PatchGrid(1, 1).n_tiles == 1
        assert not PatchGrid(1, 1).has_global_view
        assert PatchGrid(1, 2).n_tiles == 3
        assert PatchGrid(4, 4).n_tiles == 17

    def test_empty_grid_rejected(self):
        with pytest.raises(InvalidArgument):
            PatchGrid(0, 3)

    def test_patch_grid_requires_divisible_plan(self):
        with pytest.raises(InvalidArgument):
            patch_grid(ResizePlan(900, 448), 448)

    def test_split_grid_counts_partial_windows(self):
        assert split_grid(1300, 700, 512) == PatchGrid(rows=2, cols=3)
        assert split_grid(1024, 512, 512) == PatchGrid(rows=1, cols=2)
        assert split_grid(10, 10, 512) == PatchGrid(rows=1, cols=1)
