"""Errors raised while preparing multimodal inputs.

Components raise these; only the boundary layer in `nanovlm.handle` catches
them and turns them into an empty result.
"""

__all__ = [
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


class PreprocessingError(Exception):
    """Base class for all preprocessing errors."""


class InvalidArgument(PreprocessingError, ValueError):
    """A required input was missing, empty, or out of range."""


class DecodeFailure(PreprocessingError):
    """Image bytes could not be read or are not a supported format."""


class TokenizerLoadFailure(PreprocessingError):
    """The tokenizer file or directory is missing or malformed."""


class EncodeFailure(PreprocessingError):
    """The tokenizer rejected the input text."""


class VocabularyLookupFailure(PreprocessingError):
    """A token that must be in the vocabulary could not be resolved."""


class PlaceholderMismatch(PreprocessingError):
    """The number of image placeholders does not match the expected tile layout."""


class InternalInvariantViolation(PreprocessingError, RuntimeError):
    """Geometry produced a state that must never occur, e.g. an out-of-bounds crop."""


class ConfigurationError(PreprocessingError):
    """A configuration value is invalid."""
