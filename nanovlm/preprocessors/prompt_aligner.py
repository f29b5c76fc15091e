"""Builds the token sequence for a prompt with image placeholders.

Each image tile is represented in the prompt by a block of `tokens_per_tile`
content tokens, usually preceded by a marker saying which tile it is. The
aligner tokenizes the expanded prompt, finds where the content tokens ended up
and checks there are exactly as many as the tiles will fill.
"""
import dataclasses
import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from nanovlm.exceptions import InvalidArgument, PlaceholderMismatch, VocabularyLookupFailure
from nanovlm.preprocessors.geometry import PatchGrid
from nanovlm.tokenizer import MAX_GRID_COLS, MAX_GRID_ROWS, HfTokenizerWrapper, grid_token

log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class GridPromptLayout:
    """How the tile blocks of a patch grid are written out in the prompt

    `global_token=None` means the tokenizer's registered global marker is used.
    """
    name: str
    template: str
    global_first: bool
    wrap_token: Optional[str] = None
    global_token: Optional[str] = None
    row_separator: str = ""

    def format(self, image_string: str, prompt: str) -> str:
        return self.template.format(image=image_string, prompt=prompt)

    def expand(self, grid: PatchGrid, image_token: str, global_token: str, n: int,
               has_global_view: bool) -> Tuple[str, List[int]]:
        """Returns the image string and, per block in prompt order, the tile index it holds

        Tile indices follow `PreparedImage`: the global view (when present) is tile 0
        and the patches follow in row-major order.
        """
        global_token = self.global_token or global_token
        wrap = self.wrap_token or ""
        offset = 1 if has_global_view else 0

        if self._lone_tile(grid):
            # A lone tile is written the same way as a global view
            return f"{wrap}{global_token}{image_token * n}{wrap}", [0]

        cells = []
        cell_order = []
        for row in range(grid.rows):
            for col in range(grid.cols):
                cells.append(f"{wrap}{grid_token(row + 1, col + 1)}{image_token * n}")
                cell_order.append(offset + row*grid.cols + col)
            cells.append(self.row_separator)
        cell_string = "".join(cells)

        if not has_global_view:
            return cell_string, cell_order
        if self.global_first:
            return f"{global_token}{image_token * n}" + cell_string, [0] + cell_order
        global_string = f"\n{wrap}{global_token}{image_token * n}{wrap}"
        return cell_string + global_string, cell_order + [0]

    def _lone_tile(self, grid: PatchGrid) -> bool:
        return not self.global_first and grid.n_patches == 1

    def markers(self, grid: PatchGrid, global_token: str, has_global_view: bool) -> List[str]:
        """Marker tokens this layout emits for `grid`, all must be in the vocabulary"""
        out = []
        if self.wrap_token:
            out.append(self.wrap_token)
        if has_global_view or self._lone_tile(grid):
            out.append(self.global_token or global_token)
        if not self._lone_tile(grid):
            out += [grid_token(r + 1, c + 1) for r in range(grid.rows) for c in range(grid.cols)]
        return out


LAYOUTS: Dict[str, GridPromptLayout] = {
    "nanovlm": GridPromptLayout(
        name="nanovlm",
        template="<|im_start|>user\n{image}{prompt}<|im_end|>\n<|im_start|>assistant\n",
        global_first=True,
    ),
    "smolvlm": GridPromptLayout(
        name="smolvlm",
        template="<|im_start|>User:{image}\n{prompt}<end_of_utterance>\nAssistant:",
        global_first=False,
        wrap_token="<fake_token_around_image>",
        global_token="<global-img>",
        row_separator="\n",
    ),
}


@dataclasses.dataclass
class AlignedPrompt:
    token_ids: np.ndarray
    image_token_positions: np.ndarray
    tokens_per_tile: int
    tile_order: np.ndarray

    @property
    def n_blocks(self) -> int:
        return len(self.tile_order)

    def __len__(self):
        return len(self.token_ids)


def build_image_input_idx(aligned: AlignedPrompt, n_tiles: Optional[int] = None) -> np.ndarray:
    """Converts `tile_order` into an array mapping tile_id -> token positions

    `n_tiles` is the number of tiles the features come from, the prompt must have one block per tile.
    """
    n_blocks = aligned.n_blocks
    if n_tiles is not None and n_tiles != n_blocks:
        raise PlaceholderMismatch(f"Prompt has {n_blocks} image blocks but there are {n_tiles} tiles")
    positions = aligned.image_token_positions
    if len(positions) != n_blocks * aligned.tokens_per_tile:
        raise PlaceholderMismatch(
            f"{len(positions)} placeholders cannot fill {n_blocks} tiles of {aligned.tokens_per_tile}")
    blocks = np.reshape(positions, [n_blocks, aligned.tokens_per_tile])

    # Blocks are in prompt order, `tile_order` maps prompt order -> tile id
    image_input_idx = np.empty_like(blocks)
    image_input_idx[aligned.tile_order] = blocks
    return image_input_idx


class PromptAligner:
    def __init__(self, tokenizer: HfTokenizerWrapper, tokens_per_tile: int, layout="nanovlm"):
        if tokens_per_tile <= 0:
            raise InvalidArgument(f"tokens_per_tile must be positive, got {tokens_per_tile}")
        if isinstance(layout, str):
            if layout not in LAYOUTS:
                raise InvalidArgument(f"Unknown prompt layout {layout}, expected one of {list(LAYOUTS)}")
            layout = LAYOUTS[layout]
        self.tokenizer = tokenizer
        self.tokens_per_tile = tokens_per_tile
        self.layout = layout
        if not tokenizer.is_registered:
            tokenizer.register_special_tokens()
        self.image_token_id = tokenizer.image_token_id

    def _positions(self, token_ids: np.ndarray, expected: int) -> np.ndarray:
        positions = np.nonzero(token_ids == self.image_token_id)[0].astype(np.int64)
        if len(positions) != expected:
            raise PlaceholderMismatch(
                f"Expected {expected} image placeholders, tokenizer produced {len(positions)}")
        return positions

    def align_fixed(self, prompt: str, repeat_count: int) -> AlignedPrompt:
        """`repeat_count` content tokens followed by the prompt text, no template"""
        if not prompt:
            raise InvalidArgument("Prompt is empty")
        if repeat_count < 0:
            raise InvalidArgument(f"repeat_count must not be negative, got {repeat_count}")
        text = self.tokenizer.image_token * repeat_count + prompt
        token_ids = np.asarray(self.tokenizer.encode(text), dtype=np.int64)
        positions = self._positions(token_ids, repeat_count)
        n_blocks = 1 if repeat_count else 0
        return AlignedPrompt(token_ids, positions, repeat_count, np.arange(n_blocks, dtype=np.int64))

    def check_markers(self, grid: PatchGrid, has_global_view: bool):
        for token in self.layout.markers(grid, self.tokenizer.global_image_token, has_global_view):
            try:
                self.tokenizer.token_to_id(token)
            except VocabularyLookupFailure as e:
                raise VocabularyLookupFailure(
                    f"Layout '{self.layout.name}' needs marker {token!r} which is not in the vocabulary") from e

    def align_grid(self, prompt: str, grid: PatchGrid, has_global_view: Optional[bool] = None) -> AlignedPrompt:
        """One block per tile of `grid`, plus a global view block when `has_global_view`

        `has_global_view` defaults to what the dynamic grid produces: a global view whenever
        there is more than one patch. Split images without a global view must pass False.
        """
        if not prompt:
            raise InvalidArgument("Prompt is empty")
        if grid.rows > MAX_GRID_ROWS or grid.cols > MAX_GRID_COLS:
            raise InvalidArgument(
                f"Grid {grid.rows}x{grid.cols} exceeds the {MAX_GRID_ROWS}x{MAX_GRID_COLS} marker table")
        if has_global_view is None:
            has_global_view = grid.has_global_view
        if has_global_view and grid.n_patches == 1:
            raise InvalidArgument("A single patch grid has no global view")
        self.check_markers(grid, has_global_view)

        image_string, tile_order = self.layout.expand(
            grid, self.tokenizer.image_token, self.tokenizer.global_image_token, self.tokens_per_tile,
            has_global_view)
        text = self.layout.format(image_string, prompt)
        token_ids = np.asarray(self.tokenizer.encode(text), dtype=np.int64)

        n_blocks = grid.n_patches + (1 if has_global_view else 0)
        expected = n_blocks * self.tokens_per_tile
        positions = self._positions(token_ids, expected)
        log.debug(f"Aligned {grid.rows}x{grid.cols} grid prompt ({self.layout.name}): "
                  f"{len(token_ids)} tokens, {len(positions)} placeholders")
        return AlignedPrompt(token_ids, positions, self.tokens_per_tile, np.asarray(tile_order, dtype=np.int64))

    def decode(self, token_ids) -> str:
        return self.tokenizer.decode(token_ids)
