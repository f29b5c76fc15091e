"""Preprocessing modules for text and images"""

from nanovlm.preprocessors.geometry import (
    PatchGrid,
    ResizePlan,
    compute_dynamic_resize,
    patch_grid,
    rescale_size,
    split_grid,
)
from nanovlm.preprocessors.multimodal_preprocessor import (
    GLOBAL_TILE,
    NORMALIZATION_PRESETS,
    DynamicGridWithGlobalView,
    FixedSquare,
    ImageNormalization,
    ImagePreparationPolicy,
    LongestEdgeSplit,
    PreparedImage,
    Tile,
    extract_tiles,
    image_from_pixel_buffer,
    load_image,
    normalize_tile,
    resize_image,
    split_tiles,
)
from nanovlm.preprocessors.prompt_aligner import (
    LAYOUTS,
    AlignedPrompt,
    GridPromptLayout,
    PromptAligner,
    build_image_input_idx,
)

__all__ = [
    "PatchGrid",
    "ResizePlan",
    "compute_dynamic_resize",
    "patch_grid",
    "rescale_size",
    "split_grid",
    "GLOBAL_TILE",
    "NORMALIZATION_PRESETS",
    "DynamicGridWithGlobalView",
    "FixedSquare",
    "ImageNormalization",
    "ImagePreparationPolicy",
    "LongestEdgeSplit",
    "PreparedImage",
    "Tile",
    "extract_tiles",
    "image_from_pixel_buffer",
    "load_image",
    "normalize_tile",
    "resize_image",
    "split_tiles",
    "LAYOUTS",
    "AlignedPrompt",
    "GridPromptLayout",
    "PromptAligner",
    "build_image_input_idx",
]
