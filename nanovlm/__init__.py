"""
nanovlm: input preparation for small vision-language models

Turns an image and a prompt into normalized image tiles plus the token ids of a
prompt whose image placeholders line up exactly with those tiles.
"""

__version__ = "0.1.0"

from nanovlm.config import PreprocessorConfig, build_config, load_config
from nanovlm.handle import (
    ImageData,
    MultiImageData,
    OwnedBuffer,
    PreprocessorHandle,
    TokenizationResult,
)
from nanovlm.tokenizer import HfTokenizerWrapper, build_tokenizer, get_special_token_ids, special_token_table
from nanovlm.exceptions import (
    PreprocessingError,
    InvalidArgument,
    DecodeFailure,
    TokenizerLoadFailure,
    EncodeFailure,
    VocabularyLookupFailure,
    PlaceholderMismatch,
    InternalInvariantViolation,
    ConfigurationError,
)

__all__ = [
    # Entry point
    "PreprocessorHandle",
    "OwnedBuffer",
    "TokenizationResult",
    "ImageData",
    "MultiImageData",
    # Configuration
    "PreprocessorConfig",
    "build_config",
    "load_config",
    # Tokenizer
    "HfTokenizerWrapper",
    "build_tokenizer",
    "get_special_token_ids",
    "special_token_table",
    # Exceptions
    "PreprocessingError",
    "InvalidArgument",
    "DecodeFailure",
    "TokenizerLoadFailure",
    "EncodeFailure",
    "VocabularyLookupFailure",
    "PlaceholderMismatch",
    "InternalInvariantViolation",
    "ConfigurationError",
]
