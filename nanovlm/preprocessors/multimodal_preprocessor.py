import abc
import dataclasses
import io
import logging
import os
import warnings
from typing import List, Optional, Sequence, Tuple, Union

import PIL
import PIL.Image
from PIL import ImageOps

from nanovlm.exceptions import DecodeFailure, InternalInvariantViolation, InvalidArgument
from nanovlm.preprocessors.geometry import (
    PatchGrid,
    ResizePlan,
    compute_dynamic_resize,
    patch_grid,
    rescale_size,
    split_grid,
)


import numpy as np
import torch
import torchvision.transforms
from torchvision.transforms import InterpolationMode
import einops

from transformers.image_utils import (
    IMAGENET_DEFAULT_MEAN,
    IMAGENET_DEFAULT_STD,
    IMAGENET_STANDARD_MEAN,
    IMAGENET_STANDARD_STD,
    OPENAI_CLIP_MEAN,
    OPENAI_CLIP_STD,
)

log = logging.getLogger(__name__)

ImageSource = Union[str, os.PathLike, bytes, bytearray, PIL.Image.Image, np.ndarray]

# Coordinate used for the whole-image downsample that precedes the patches
GLOBAL_TILE = (-1, -1)

RESIZE_METHODS = ("pil-bicubic", "torch-bicubic")

NORMALIZATION_PRESETS = {
    "siglip": (tuple(IMAGENET_STANDARD_MEAN), tuple(IMAGENET_STANDARD_STD)),
    "openai": (tuple(OPENAI_CLIP_MEAN), tuple(OPENAI_CLIP_STD)),
    "imagenet": (tuple(IMAGENET_DEFAULT_MEAN), tuple(IMAGENET_DEFAULT_STD)),
}

# What Pillow raises for files it cannot decode
_DECODE_ERRORS = (PIL.UnidentifiedImageError, PIL.Image.DecompressionBombError, OSError, SyntaxError, ValueError)


def load_image(image_path: ImageSource) -> np.ndarray:
    """Decode `image_path` into a read-only [h, w, 3] uint8 RGB array.

    Accepts a file path, encoded image bytes, a PIL image or an RGB uint8 array.
    """
    if image_path is None:
        raise InvalidArgument("No image given")
    if isinstance(image_path, PIL.Image.Image):
        # Avoid annoying palette transparency warnings filling up the logs
        with warnings.catch_warnings(record=True):
            image = ImageOps.exif_transpose(image_path)
            image = image.convert("RGB")
        array = np.array(image, dtype=np.uint8)
        array.setflags(write=False)
        return array
    elif isinstance(image_path, np.ndarray):
        if len(image_path.shape) != 3 or image_path.shape[2] != 3:
            raise InvalidArgument(f"Image should have shape [h, w, 3], got {image_path.shape}")
        if image_path.dtype != np.uint8:
            raise InvalidArgument(f"Image should have uint8 type, got {image_path.dtype}")
        if image_path.shape[0] == 0 or image_path.shape[1] == 0:
            raise InvalidArgument("Image is empty")
        # View so the caller's array keeps its own flags
        array = np.ascontiguousarray(image_path).view()
        array.setflags(write=False)
        return array
    elif isinstance(image_path, (bytes, bytearray)):
        if len(image_path) == 0:
            raise InvalidArgument("Image bytes are empty")
        try:
            with PIL.Image.open(io.BytesIO(image_path)) as image:
                image.load()
                return load_image(image)
        except _DECODE_ERRORS as e:
            raise DecodeFailure(f"Could not decode image bytes: {e}") from e
    else:
        if not image_path:
            raise InvalidArgument("Image path is empty")
        try:
            with PIL.Image.open(image_path) as image:
                image.load()
                return load_image(image)
        except _DECODE_ERRORS as e:
            raise DecodeFailure(f"Could not load image {image_path}: {e}") from e


_CHANNEL_ORDERS = {
    # byte offsets of R, G, B inside each 4-byte pixel
    "RGBA": (0, 1, 2),
    "ARGB": (1, 2, 3),
    "BGRA": (2, 1, 0),
}


def image_from_pixel_buffer(buffer, width: int, height: int, channel_order: str = "RGBA") -> np.ndarray:
    """Convert a raw 4-bytes-per-pixel host buffer into an RGB image, dropping alpha"""
    if channel_order not in _CHANNEL_ORDERS:
        raise InvalidArgument(f"Unknown channel order {channel_order}, expected one of {list(_CHANNEL_ORDERS)}")
    if width <= 0 or height <= 0:
        raise InvalidArgument(f"Invalid buffer size {width}x{height}")
    data = np.frombuffer(buffer, dtype=np.uint8)
    if data.size != width * height * 4:
        raise InvalidArgument(f"Buffer has {data.size} bytes, expected {width * height * 4}")
    pixels = data.reshape(height, width, 4)
    return load_image(pixels[:, :, list(_CHANNEL_ORDERS[channel_order])])


def resize_image(image: np.ndarray, width: int, height: int, resize_method="pil-bicubic") -> np.ndarray:
    """Resample an [h, w, 3] uint8 image to [height, width, 3] uint8.

    "pil-bicubic" is the production kernel: Pillow's convolution resampler with the
    Catmull-Rom cubic, antialiased when downscaling. "torch-bicubic" runs torchvision's
    antialiased bicubic and is kept as an independent reference.
    """
    if width <= 0 or height <= 0:
        raise InvalidArgument(f"Invalid resize target {width}x{height}")
    if image.shape[0] == height and image.shape[1] == width:
        return image

    if resize_method == "pil-bicubic":
        resized = PIL.Image.fromarray(image).resize((width, height), resample=PIL.Image.Resampling.BICUBIC)
        return np.asarray(resized, dtype=np.uint8)
    elif resize_method == "torch-bicubic":
        tensor = torch.permute(torch.from_numpy(np.array(image)), [2, 0, 1])
        resized = torchvision.transforms.Resize(
            [height, width], InterpolationMode.BICUBIC, antialias=True)(tensor)
        resized = torch.clip(resized, 0, 255).to(torch.uint8)
        return torch.permute(resized, [1, 2, 0]).numpy()
    else:
        raise InvalidArgument(f"Unknown resize method {resize_method}, expected one of {RESIZE_METHODS}")


def crop(image: np.ndarray, x0: int, y0: int, width: int, height: int) -> np.ndarray:
    h, w = image.shape[:2]
    if x0 < 0 or y0 < 0 or x0 + width > w or y0 + height > h:
        raise InternalInvariantViolation(
            f"Crop window ({x0}, {y0}, {width}x{height}) exceeds {w}x{h} canvas")
    return image[y0:y0+height, x0:x0+width]


def extract_tiles(
    canvas: np.ndarray,
    grid: PatchGrid,
    patch_size: int,
    tile_size: int,
    resize_method="pil-bicubic",
) -> List[Tuple[Tuple[int, int], np.ndarray]]:
    """Cut `canvas` into the grid's patches, preceded by a global view when there is more than one

    Returns ((row, col), [tile_size, tile_size, 3] uint8) pairs in row-major order, the
    global view first with coordinate `GLOBAL_TILE`.
    """
    h, w = canvas.shape[:2]
    if h != grid.rows*patch_size or w != grid.cols*patch_size:
        raise InternalInvariantViolation(
            f"Canvas {w}x{h} does not match a {grid.rows}x{grid.cols} grid of {patch_size} patches")

    if grid.n_patches == 1:
        return [((0, 0), resize_image(canvas, tile_size, tile_size, resize_method))]

    # The global view is the whole canvas resampled down, not the first patch
    tiles = [(GLOBAL_TILE, resize_image(canvas, tile_size, tile_size, resize_method))]
    for row in range(grid.rows):
        for col in range(grid.cols):
            patch = crop(canvas, col*patch_size, row*patch_size, patch_size, patch_size)
            tiles.append(((row, col), resize_image(patch, tile_size, tile_size, resize_method)))
    return tiles


def split_tiles(
    image: np.ndarray,
    split_size: int,
    tile_size: int,
    resize_method="pil-bicubic",
) -> Tuple[PatchGrid, List[Tuple[Tuple[int, int], np.ndarray]]]:
    """Split into `split_size` windows, edge windows clipped to the image, each resampled to `tile_size`"""
    h, w = image.shape[:2]
    if h <= split_size and w <= split_size:
        return PatchGrid(1, 1), [((0, 0), resize_image(image, tile_size, tile_size, resize_method))]

    grid = split_grid(w, h, split_size)
    tiles = []
    for row in range(grid.rows):
        y0 = row*split_size
        for col in range(grid.cols):
            x0 = col*split_size
            window = crop(image, x0, y0, min(split_size, w - x0), min(split_size, h - y0))
            tiles.append(((row, col), resize_image(window, tile_size, tile_size, resize_method)))
    return grid, tiles


def normalize_tile(
    tile: np.ndarray,
    do_rescale: bool = True,
    rescale_factor: float = 1/255.0,
    do_normalize: bool = False,
    image_mean: Sequence[float] = IMAGENET_STANDARD_MEAN,
    image_std: Sequence[float] = IMAGENET_STANDARD_STD,
) -> np.ndarray:
    """Convert an [h, w, 3] uint8 tile into a [3, h, w] float32 array"""
    image = tile.astype(np.float32)
    if do_rescale:
        image *= np.float32(rescale_factor)
    if do_normalize:
        image -= np.array(image_mean, dtype=np.float32)[None, None, :]
        image /= np.array(image_std, dtype=np.float32)[None, None, :]
    return np.ascontiguousarray(einops.rearrange(image, 'h w c -> c h w'))


@dataclasses.dataclass(frozen=True)
class ImageNormalization:
    do_rescale: bool = True
    rescale_factor: float = 1/255.0
    do_normalize: bool = False
    image_mean: Tuple[float, float, float] = tuple(IMAGENET_STANDARD_MEAN)
    image_std: Tuple[float, float, float] = tuple(IMAGENET_STANDARD_STD)

    @classmethod
    def from_preset(cls, name: str, do_rescale=True) -> "ImageNormalization":
        if name not in NORMALIZATION_PRESETS:
            raise InvalidArgument(f"Unknown normalization {name}, expected one of {list(NORMALIZATION_PRESETS)}")
        mean, std = NORMALIZATION_PRESETS[name]
        return cls(do_rescale=do_rescale, do_normalize=True, image_mean=mean, image_std=std)

    def __call__(self, tile: np.ndarray) -> np.ndarray:
        return normalize_tile(
            tile, self.do_rescale, self.rescale_factor, self.do_normalize, self.image_mean, self.image_std)


@dataclasses.dataclass
class Tile:
    pixels: np.ndarray  # [3, tile_size, tile_size] float32
    row: int
    col: int

    @property
    def coord(self) -> Tuple[int, int]:
        return self.row, self.col

    @property
    def is_global(self) -> bool:
        return self.coord == GLOBAL_TILE


@dataclasses.dataclass
class PreparedImage:
    tiles: List[Tile]
    grid: PatchGrid
    plan: Optional[ResizePlan] = None

    def __len__(self):
        return len(self.tiles)

    @property
    def has_global_view(self) -> bool:
        return len(self.tiles) > 0 and self.tiles[0].is_global

    def pixel_values(self) -> np.ndarray:
        """(n_tiles, 3, h, w) float32"""
        return np.stack([t.pixels for t in self.tiles])

    def to_tensor(self) -> torch.Tensor:
        return torch.from_numpy(self.pixel_values())


class ImagePreparationPolicy(abc.ABC):
    """Decides the canvas and how it is cut into tiles, the resampler and normalizer are shared"""

    resize_method: str = "pil-bicubic"

    @abc.abstractmethod
    def plan(self, width: int, height: int) -> Tuple[ResizePlan, PatchGrid]:
        raise NotImplementedError()

    @abc.abstractmethod
    def _tiles(self, image: np.ndarray) -> Tuple[PatchGrid, ResizePlan, List[Tuple[Tuple[int, int], np.ndarray]]]:
        raise NotImplementedError()

    def prepare(self, image: ImageSource, normalization: Optional[ImageNormalization] = None) -> PreparedImage:
        if normalization is None:
            normalization = ImageNormalization()
        image = load_image(image)
        grid, plan, raw_tiles = self._tiles(image)
        tiles = [Tile(normalization(pixels), row, col) for (row, col), pixels in raw_tiles]
        log.debug(f"Prepared {image.shape[1]}x{image.shape[0]} image as {len(tiles)} tiles, "
                  f"grid {grid.rows}x{grid.cols}")
        return PreparedImage(tiles, grid, plan)


@dataclasses.dataclass
class FixedSquare(ImagePreparationPolicy):
    """Resize the whole image to one `target_size` square"""
    target_size: int
    resize_method: str = "pil-bicubic"

    def plan(self, width, height):
        if self.target_size <= 0:
            raise InvalidArgument(f"target_size must be positive, got {self.target_size}")
        return ResizePlan(self.target_size, self.target_size), PatchGrid(1, 1)

    def _tiles(self, image):
        plan, grid = self.plan(image.shape[1], image.shape[0])
        resized = resize_image(image, plan.target_width, plan.target_height, self.resize_method)
        return grid, plan, [((0, 0), resized)]


@dataclasses.dataclass
class DynamicGridWithGlobalView(ImagePreparationPolicy):
    """Resize to a multiple of `patch_size`, cut into patches and add a global view"""
    max_side_len: int
    patch_size: int
    resize_to_max_side_len: bool = False
    tile_size: Optional[int] = None
    resize_method: str = "pil-bicubic"

    def plan(self, width, height):
        plan = compute_dynamic_resize(
            width, height, self.max_side_len, self.patch_size, self.resize_to_max_side_len)
        return plan, patch_grid(plan, self.patch_size)

    def _tiles(self, image):
        plan, grid = self.plan(image.shape[1], image.shape[0])
        canvas = resize_image(image, plan.target_width, plan.target_height, self.resize_method)
        tile_size = self.tile_size or self.patch_size
        return grid, plan, extract_tiles(canvas, grid, self.patch_size, tile_size, self.resize_method)


@dataclasses.dataclass
class LongestEdgeSplit(ImagePreparationPolicy):
    """Shrink to `longest_edge` if needed, split into `split_size` windows, resample each to `tile_size`"""
    longest_edge: int = 2048
    split_size: int = 512
    tile_size: int = 384
    resize_method: str = "pil-bicubic"

    def plan(self, width, height):
        if self.tile_size <= 0 or self.split_size <= 0:
            raise InvalidArgument(
                f"split_size and tile_size must be positive, got {self.split_size}, {self.tile_size}")
        plan = rescale_size(width, height, self.longest_edge)
        if plan.target_width <= self.split_size and plan.target_height <= self.split_size:
            return plan, PatchGrid(1, 1)
        return plan, split_grid(plan.target_width, plan.target_height, self.split_size)

    def _tiles(self, image):
        plan, _ = self.plan(image.shape[1], image.shape[0])
        resized = resize_image(image, plan.target_width, plan.target_height, self.resize_method)
        grid, tiles = split_tiles(resized, self.split_size, self.tile_size, self.resize_method)
        return grid, plan, tiles
