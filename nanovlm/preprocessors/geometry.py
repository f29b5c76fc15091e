"""Resize and patch-grid planning.

Two resize formulas are kept side by side:

* `compute_dynamic_resize` rounds the short side *up* to a multiple of the
  patch size so the canvas always covers the scaled image, used when the
  canvas is cut into a grid of equal patches.
* `rescale_size` only shrinks images whose longest edge is too large and rounds
  to the nearest pixel, used when every tile is resampled again anyway.
"""
import dataclasses
import math
import numbers

from nanovlm.exceptions import InvalidArgument


@dataclasses.dataclass(frozen=True)
class ResizePlan:
    target_width: int
    target_height: int

    @property
    def size(self):
        """(width, height), the order PIL expects"""
        return self.target_width, self.target_height


@dataclasses.dataclass(frozen=True)
class PatchGrid:
    rows: int
    cols: int

    def __post_init__(self):
        if self.rows < 1 or self.cols < 1:
            raise InvalidArgument(f"Patch grid must have at least one cell, got {self.rows}x{self.cols}")

    @property
    def n_patches(self) -> int:
        return self.rows * self.cols

    @property
    def has_global_view(self) -> bool:
        return self.n_patches > 1

    @property
    def n_tiles(self) -> int:
        """Number of tiles a grid produces, including the global view"""
        return self.n_patches + (1 if self.has_global_view else 0)


def _check_positive(**kwargs):
    for name, value in kwargs.items():
        if not isinstance(value, numbers.Integral) or isinstance(value, bool) or value <= 0:
            raise InvalidArgument(f"{name} must be a positive integer, got {value!r}")


def ceil_to_multiple(x: int, n: int) -> int:
    return (x + n - 1) // n * n


def round_half_away(x: float) -> int:
    return int(math.floor(x + 0.5)) if x >= 0 else -int(math.floor(-x + 0.5))


def compute_dynamic_resize(
    width: int,
    height: int,
    max_side_len: int,
    patch_size: int,
    resize_to_max_side_len: bool = False,
) -> ResizePlan:
    """Compute the canvas size for splitting an image into `patch_size` patches.

    The long side goes to `max_side_len` (always if `resize_to_max_side_len`,
    otherwise only as far as the next multiple of `patch_size`), the short side
    is scaled by the same ratio and rounded up to a multiple of `patch_size`.
    """
    _check_positive(width=width, height=height, max_side_len=max_side_len, patch_size=patch_size)
    if max_side_len % patch_size != 0:
        raise InvalidArgument(
            f"max_side_len ({max_side_len}) must be a multiple of patch_size ({patch_size})")

    long_side, short_side = max(width, height), min(width, height)
    if resize_to_max_side_len:
        target_long = max_side_len
    else:
        target_long = min(max_side_len, ceil_to_multiple(long_side, patch_size))

    # ceil(short * (target_long / long) / patch_size), in integers so an exact
    # multiple never gets bumped up by float error
    n_short = -(-short_side * target_long // (long_side * patch_size))
    target_short = max(patch_size, n_short * patch_size)

    if width >= height:
        return ResizePlan(target_long, target_short)
    return ResizePlan(target_short, target_long)


def resize_output_size_rescale_to_max_len(width: int, height: int, max_len: int) -> ResizePlan:
    ratio = max_len / max(width, height)
    new_width = max(1, round_half_away(width * ratio))
    new_height = max(1, round_half_away(height * ratio))
    return ResizePlan(new_width, new_height)


def rescale_size(width: int, height: int, max_size: int) -> ResizePlan:
    """Shrink so the longest edge is at most `max_size`, leave smaller images alone"""
    _check_positive(width=width, height=height, max_size=max_size)
    if max(width, height) <= max_size:
        return ResizePlan(width, height)
    return resize_output_size_rescale_to_max_len(width, height, max_size)


def patch_grid(plan: ResizePlan, patch_size: int) -> PatchGrid:
    _check_positive(patch_size=patch_size)
    if plan.target_width % patch_size or plan.target_height % patch_size:
        raise InvalidArgument(
            f"Canvas {plan.target_width}x{plan.target_height} is not divisible by patch size {patch_size}")
    return PatchGrid(rows=plan.target_height // patch_size, cols=plan.target_width // patch_size)


def split_grid(width: int, height: int, split_size: int) -> PatchGrid:
    """Grid of `split_size` windows covering the image, edge windows may be partial"""
    _check_positive(width=width, height=height, split_size=split_size)
    return PatchGrid(rows=-(-height // split_size), cols=-(-width // split_size))
