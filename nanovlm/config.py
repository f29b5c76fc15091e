"""Preprocessing configuration.

Field names follow the model's `config.json` so the same file can be handed
to `load_config` directly; keys that only matter to the model are ignored.
"""
import dataclasses
import logging
from os import PathLike
from typing import Any, Dict, List, Optional, Union

from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException

from nanovlm.exceptions import ConfigurationError
from nanovlm.preprocessors.multimodal_preprocessor import (
    NORMALIZATION_PRESETS,
    RESIZE_METHODS,
    ImageNormalization,
)
from nanovlm.preprocessors.prompt_aligner import LAYOUTS
from nanovlm.tokenizer import DEFAULT_GLOBAL_IMAGE_TOKEN, DEFAULT_IMAGE_TOKEN, MAX_GRID_ROWS

log = logging.getLogger(__name__)

PathOrStr = Union[str, PathLike]


@dataclasses.dataclass
class ExtraTokensConfig:
    image_token: str = DEFAULT_IMAGE_TOKEN
    global_image_token: str = DEFAULT_GLOBAL_IMAGE_TOKEN


@dataclasses.dataclass
class PreprocessorConfig:
    vit_img_size: int = 512
    """Tile size fed to the vision encoder, also the patch size of the dynamic grid"""

    mp_image_token_length: int = 64
    """Placeholder tokens per tile, after the modality projector"""

    max_img_size: int = 2048
    """Longest side of the dynamic grid canvas"""

    splitted_image_size: int = 512
    """Window size of the longest-edge split policy"""

    resize_to_max_side_len: bool = False

    vlm_extra_tokens: ExtraTokensConfig = dataclasses.field(default_factory=ExtraTokensConfig)

    lm_tokenizer: Optional[str] = None
    """Path to a `tokenizer.json` or a local tokenizer directory"""

    resize_method: str = "pil-bicubic"

    do_rescale: bool = True
    rescale_factor: float = 1/255.0
    do_normalize: bool = False
    normalize: Optional[str] = None
    """Name of a normalization preset, overrides `image_mean` and `image_std`"""

    image_mean: List[float] = dataclasses.field(default_factory=lambda: [0.5, 0.5, 0.5])
    image_std: List[float] = dataclasses.field(default_factory=lambda: [0.5, 0.5, 0.5])

    prompt_layout: str = "nanovlm"

    max_grid_size: int = MAX_GRID_ROWS

    @property
    def image_token(self) -> str:
        return self.vlm_extra_tokens.image_token

    @property
    def global_image_token(self) -> str:
        return self.vlm_extra_tokens.global_image_token

    @property
    def normalization(self) -> ImageNormalization:
        if self.normalize is not None:
            return ImageNormalization.from_preset(self.normalize, do_rescale=self.do_rescale)
        return ImageNormalization(
            do_rescale=self.do_rescale,
            rescale_factor=self.rescale_factor,
            do_normalize=self.do_normalize,
            image_mean=tuple(self.image_mean),
            image_std=tuple(self.image_std),
        )

    def validate(self):
        for name in ["vit_img_size", "mp_image_token_length", "max_img_size", "splitted_image_size"]:
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        if not 1 <= self.max_grid_size <= MAX_GRID_ROWS:
            raise ConfigurationError(f"max_grid_size must be in [1, {MAX_GRID_ROWS}], got {self.max_grid_size}")
        if self.max_img_size % self.vit_img_size != 0:
            raise ConfigurationError(
                f"max_img_size ({self.max_img_size}) must be a multiple of vit_img_size ({self.vit_img_size})")
        if self.max_img_size // self.vit_img_size > self.max_grid_size:
            raise ConfigurationError(
                f"max_img_size/vit_img_size gives more than {self.max_grid_size} patches per side")
        if self.resize_method not in RESIZE_METHODS:
            raise ConfigurationError(f"Unknown resize_method {self.resize_method}, expected one of {RESIZE_METHODS}")
        if self.prompt_layout not in LAYOUTS:
            raise ConfigurationError(f"Unknown prompt_layout {self.prompt_layout}, expected one of {list(LAYOUTS)}")
        if self.normalize is not None and self.normalize not in NORMALIZATION_PRESETS:
            raise ConfigurationError(
                f"Unknown normalize preset {self.normalize}, expected one of {list(NORMALIZATION_PRESETS)}")
        if self.rescale_factor <= 0:
            raise ConfigurationError(f"rescale_factor must be positive, got {self.rescale_factor}")
        if len(self.image_mean) != 3 or len(self.image_std) != 3:
            raise ConfigurationError("image_mean and image_std need one value per RGB channel")
        if any(s <= 0 for s in self.image_std):
            raise ConfigurationError(f"image_std must be positive, got {self.image_std}")
        if not self.image_token or not self.global_image_token:
            raise ConfigurationError("vlm_extra_tokens needs both image_token and global_image_token")
        if self.image_token == self.global_image_token:
            raise ConfigurationError("image_token and global_image_token must differ")
        return self

    def summary(self) -> str:
        return (f"tile={self.vit_img_size} tokens/tile={self.mp_image_token_length} "
                f"max_img_size={self.max_img_size} split={self.splitted_image_size} "
                f"resize={self.resize_method} layout={self.prompt_layout}")


def _known_keys(raw: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in dataclasses.fields(PreprocessorConfig)}
    dropped = sorted(k for k in raw if k not in names)
    if dropped:
        log.debug(f"Ignoring {len(dropped)} keys not used for preprocessing: {dropped}")
    out = {k: v for k, v in raw.items() if k in names}
    extra = out.get("vlm_extra_tokens")
    if isinstance(extra, dict):
        token_names = {f.name for f in dataclasses.fields(ExtraTokensConfig)}
        out["vlm_extra_tokens"] = {k: v for k, v in extra.items() if k in token_names}
    return out


def build_config(overrides: Optional[Union[Dict[str, Any], DictConfig]] = None) -> PreprocessorConfig:
    """Merge `overrides` onto the defaults, drop unknown keys and validate"""
    schema = OmegaConf.structured(PreprocessorConfig)
    if overrides is None:
        overrides = {}
    if isinstance(overrides, DictConfig):
        overrides = OmegaConf.to_container(overrides, resolve=True)
    try:
        merged = OmegaConf.merge(schema, _known_keys(dict(overrides)))
        config = OmegaConf.to_object(merged)
    except OmegaConfBaseException as e:
        raise ConfigurationError(f"Invalid preprocessing config: {e}") from e
    return config.validate()


def load_config(path: PathOrStr, **overrides) -> PreprocessorConfig:
    """Load a JSON or YAML config file, keyword arguments take precedence over the file"""
    try:
        raw = OmegaConf.load(path)
    except (OSError, OmegaConfBaseException, ValueError) as e:
        raise ConfigurationError(f"Could not read config {path}: {e}") from e
    if not isinstance(raw, DictConfig):
        raise ConfigurationError(f"Config {path} must be a mapping")
    raw = OmegaConf.to_container(raw, resolve=True)
    raw.update(overrides)
    config = build_config(raw)
    log.info(f"Loaded preprocessing config from {path}: {config.summary()}")
    return config
