"""Host-facing entry point.

A `PreprocessorHandle` owns one tokenizer with the special tokens registered
on it. Every `prepare_*` call returns freshly allocated `OwnedBuffer` values
that belong to the caller until given back through the matching `release_*`
method. Failures are logged and reported as `None`.
"""
import dataclasses
import functools
import logging
from os import PathLike
from typing import Any, Dict, Optional, Union

import numpy as np

from nanovlm.config import PreprocessorConfig, build_config, load_config
from nanovlm.exceptions import InternalInvariantViolation, InvalidArgument, PlaceholderMismatch, PreprocessingError
from nanovlm.preprocessors.geometry import PatchGrid, ResizePlan
from nanovlm.preprocessors.multimodal_preprocessor import (
    DynamicGridWithGlobalView,
    FixedSquare,
    ImageSource,
    LongestEdgeSplit,
    PreparedImage,
)
from nanovlm.preprocessors.prompt_aligner import AlignedPrompt, PromptAligner, build_image_input_idx
from nanovlm.tokenizer import HfTokenizerWrapper, build_tokenizer

log = logging.getLogger(__name__)


class OwnedBuffer:
    """A numpy array handed to the caller, valid until released through its owner"""

    def __init__(self, data: np.ndarray, owner):
        self._data = data
        self.owner = owner

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> np.ndarray:
        assert not self.released, "buffer used after release"
        return self._data

    @property
    def shape(self):
        return self.data.shape

    def __len__(self):
        return len(self.data)

    def __array__(self, dtype=None, copy=None):
        return self.data if dtype is None else self.data.astype(dtype)

    def _release(self, owner):
        assert self.owner is owner, "buffer released through a handle that did not allocate it"
        assert not self.released, "buffer released twice"
        self._data = None


@dataclasses.dataclass
class TokenizationResult:
    token_ids: OwnedBuffer
    """int64 [n_tokens]"""

    image_token_positions: OwnedBuffer
    """int64 [n_placeholders], ascending"""

    tokens_per_tile: int
    tile_order: np.ndarray

    n_tiles: Optional[int] = None
    """Tile count of the image the prompt was built for, when known"""

    def image_input_idx(self) -> np.ndarray:
        """[n_tiles, tokens_per_tile] token positions for each tile"""
        aligned = AlignedPrompt(
            self.token_ids.data, self.image_token_positions.data, self.tokens_per_tile, self.tile_order)
        return build_image_input_idx(aligned, self.n_tiles)


@dataclasses.dataclass
class ImageData:
    pixel_values: OwnedBuffer
    """float32 [3, height, width]"""

    width: int
    height: int


@dataclasses.dataclass
class MultiImageData:
    pixel_values: OwnedBuffer
    """float32 [n_tiles, 3, tile_size, tile_size], global view first when present"""

    grid: PatchGrid
    plan: Optional[ResizePlan]
    tile_size: int
    has_global_view: bool

    @property
    def n_tiles(self) -> int:
        return self.pixel_values.shape[0]

    @property
    def grid_rows(self) -> int:
        return self.grid.rows

    @property
    def grid_cols(self) -> int:
        return self.grid.cols


def _boundary(fn):
    """Log and convert `PreprocessingError` into `None`"""
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        if self.closed:
            log.error(f"{fn.__name__} called on a closed handle")
            return None
        try:
            return fn(self, *args, **kwargs)
        except InternalInvariantViolation:
            raise
        except PreprocessingError as e:
            log.error(f"{fn.__name__} failed: {type(e).__name__}: {e}")
            return None
    return wrapper


class PreprocessorHandle:
    def __init__(self, tokenizer: HfTokenizerWrapper, config: Optional[PreprocessorConfig] = None):
        self.config = config if config is not None else build_config()
        self.tokenizer = tokenizer
        self.aligner = PromptAligner(
            tokenizer, self.config.mp_image_token_length, layout=self.config.prompt_layout)
        self.closed = False

    @classmethod
    def open(
        cls,
        tokenizer_path: Optional[Union[str, PathLike]] = None,
        config: Optional[Union[PreprocessorConfig, str, PathLike, Dict[str, Any]]] = None,
    ) -> Optional["PreprocessorHandle"]:
        """Load a tokenizer and register the special tokens, `None` on failure

        `config` is a `PreprocessorConfig`, a path to a config file or a dict of overrides.
        The tokenizer path falls back to `config.lm_tokenizer`.
        """
        try:
            if config is None or isinstance(config, dict):
                config = build_config(config)
            elif not isinstance(config, PreprocessorConfig):
                config = load_config(config)
            path = tokenizer_path or config.lm_tokenizer
            if not path:
                raise InvalidArgument("No tokenizer path given and the config has no lm_tokenizer")
            tokenizer = build_tokenizer(
                str(path), image_token=config.image_token, global_image_token=config.global_image_token)
            return cls(tokenizer, config)
        except PreprocessingError as e:
            log.error(f"Could not open preprocessor: {type(e).__name__}: {e}")
            return None

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _token_result(self, aligned, n_tiles=None) -> TokenizationResult:
        return TokenizationResult(
            token_ids=OwnedBuffer(aligned.token_ids, self),
            image_token_positions=OwnedBuffer(aligned.image_token_positions, self),
            tokens_per_tile=aligned.tokens_per_tile,
            tile_order=aligned.tile_order,
            n_tiles=n_tiles,
        )

    def _multi_image(self, prepared: PreparedImage, tile_size: int) -> MultiImageData:
        return MultiImageData(
            pixel_values=OwnedBuffer(prepared.pixel_values(), self),
            grid=prepared.grid,
            plan=prepared.plan,
            tile_size=tile_size,
            has_global_view=prepared.has_global_view,
        )

    @_boundary
    def prepare_tokens(self, text: str, image_token_length: Optional[int] = None) -> Optional[TokenizationResult]:
        """`image_token_length` placeholders followed by `text`"""
        if image_token_length is None:
            image_token_length = self.config.mp_image_token_length
        return self._token_result(self.aligner.align_fixed(text, image_token_length))

    def _align_grid(self, text, grid_rows, grid_cols, has_global_view):
        if grid_rows > self.config.max_grid_size or grid_cols > self.config.max_grid_size:
            raise InvalidArgument(
                f"Grid {grid_rows}x{grid_cols} exceeds max_grid_size {self.config.max_grid_size}")
        return self.aligner.align_grid(text, PatchGrid(grid_rows, grid_cols), has_global_view)

    @_boundary
    def prepare_grid_tokens(
        self,
        text: str,
        grid_rows: int,
        grid_cols: int,
        has_global_view: Optional[bool] = None,
    ) -> Optional[TokenizationResult]:
        """Prompt for a `grid_rows` x `grid_cols` grid

        Without `has_global_view` the grid is assumed to come from `prepare_split_image`;
        prefer `prepare_image_tokens`, which reads the layout from the prepared image.
        """
        return self._token_result(self._align_grid(text, grid_rows, grid_cols, has_global_view))

    @_boundary
    def prepare_image_tokens(self, text: str, images: MultiImageData) -> Optional[TokenizationResult]:
        """Prompt with exactly one placeholder block per tile of `images`"""
        if images is None:
            raise InvalidArgument("No prepared image given")
        aligned = self._align_grid(text, images.grid_rows, images.grid_cols, images.has_global_view)
        if aligned.n_blocks != images.n_tiles:
            raise PlaceholderMismatch(
                f"Prompt has {aligned.n_blocks} image blocks for {images.n_tiles} tiles")
        return self._token_result(aligned, images.n_tiles)

    @_boundary
    def prepare_fixed_image(self, image: ImageSource, target_size: Optional[int] = None) -> Optional[ImageData]:
        if target_size is None:
            target_size = self.config.vit_img_size
        policy = FixedSquare(target_size, resize_method=self.config.resize_method)
        prepared = policy.prepare(image, self.config.normalization)
        return ImageData(OwnedBuffer(prepared.tiles[0].pixels, self), target_size, target_size)

    @_boundary
    def prepare_split_image(
        self,
        image: ImageSource,
        max_side_len: Optional[int] = None,
        patch_size: Optional[int] = None,
        resize_to_max_side_len: Optional[bool] = None,
    ) -> Optional[MultiImageData]:
        """Dynamic grid with a global view, pass the result to `prepare_image_tokens` for the prompt"""
        if max_side_len is None:
            max_side_len = self.config.max_img_size
        if patch_size is None:
            patch_size = self.config.vit_img_size
        if resize_to_max_side_len is None:
            resize_to_max_side_len = self.config.resize_to_max_side_len
        policy = DynamicGridWithGlobalView(
            max_side_len=max_side_len,
            patch_size=patch_size,
            resize_to_max_side_len=resize_to_max_side_len,
            resize_method=self.config.resize_method,
        )
        prepared = policy.prepare(image, self.config.normalization)
        return self._multi_image(prepared, policy.patch_size)

    @_boundary
    def prepare_longest_edge_image(
        self,
        image: ImageSource,
        longest_edge: Optional[int] = None,
        split_size: Optional[int] = None,
        tile_size: Optional[int] = None,
    ) -> Optional[MultiImageData]:
        if longest_edge is None:
            longest_edge = self.config.max_img_size
        if split_size is None:
            split_size = self.config.splitted_image_size
        if tile_size is None:
            tile_size = self.config.vit_img_size
        policy = LongestEdgeSplit(
            longest_edge=longest_edge,
            split_size=split_size,
            tile_size=tile_size,
            resize_method=self.config.resize_method,
        )
        prepared = policy.prepare(image, self.config.normalization)
        return self._multi_image(prepared, policy.tile_size)

    @_boundary
    def decode_tokens(self, token_ids) -> Optional[str]:
        if token_ids is None:
            raise InvalidArgument("No token ids given")
        return self.aligner.decode(np.asarray(token_ids).reshape(-1).tolist())

    def release_tokenization_result(self, result: TokenizationResult):
        result.token_ids._release(self)
        result.image_token_positions._release(self)

    def release_image_data(self, data: ImageData):
        data.pixel_values._release(self)

    def release_multi_image_data(self, data: MultiImageData):
        data.pixel_values._release(self)
