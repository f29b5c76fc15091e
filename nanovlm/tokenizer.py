import logging
import os
from typing import Dict, List, Optional, Sequence, Tuple

from tokenizers import Tokenizer
from transformers import AutoTokenizer, PreTrainedTokenizerFast

from nanovlm.exceptions import (
    EncodeFailure,
    InvalidArgument,
    TokenizerLoadFailure,
    VocabularyLookupFailure,
)

log = logging.getLogger(__name__)

# Special tokens, these are registered on top of the base vocabulary. The order matters:
# ids are assigned in registration order and downstream consumers compare against them
DEFAULT_IMAGE_TOKEN = "<|image|>"
DEFAULT_GLOBAL_IMAGE_TOKEN = "<|global_image|>"
MAX_GRID_ROWS = 8
MAX_GRID_COLS = 8


def grid_token(row: int, col: int) -> str:
    """Marker for the patch at (row, col), both 1-based"""
    return f"<row_{row}_col_{col}>"


def special_token_table(
    image_token: str = DEFAULT_IMAGE_TOKEN,
    global_image_token: str = DEFAULT_GLOBAL_IMAGE_TOKEN,
    max_grid_rows: int = MAX_GRID_ROWS,
    max_grid_cols: int = MAX_GRID_COLS,
) -> Tuple[str, ...]:
    tokens = [image_token, global_image_token]
    for row in range(1, max_grid_rows + 1):
        for col in range(1, max_grid_cols + 1):
            tokens.append(grid_token(row, col))
    return tuple(tokens)


EXTRA_TOKENS = special_token_table()


class HfTokenizerWrapper:
    """Tokenizer wrapper

    Holds a HF fast tokenizer together with the special token table registered on it,
    so the content token id is resolved once and then reused for every prompt.
    """
    def __init__(self, tokenizer, image_token=DEFAULT_IMAGE_TOKEN,
                 global_image_token=DEFAULT_GLOBAL_IMAGE_TOKEN, extra_tokens: Optional[Sequence[str]] = None):
        self.tokenizer = tokenizer
        self.image_token = image_token
        self.global_image_token = global_image_token
        if extra_tokens is None:
            extra_tokens = special_token_table(image_token, global_image_token)
        self.extra_tokens = tuple(extra_tokens)
        self._special_token_ids: Optional[Dict[str, int]] = None

    @property
    def is_registered(self) -> bool:
        return self._special_token_ids is not None

    def register_special_tokens(self) -> Dict[str, int]:
        """Add the special token table to the vocabulary, safe to call more than once"""
        if self.is_registered:
            return dict(self._special_token_ids)
        n_added = self.tokenizer.add_tokens(list(self.extra_tokens), special_tokens=True)
        log.info(f"Registered {len(self.extra_tokens)} special tokens ({n_added} new), vocab size {len(self.tokenizer)}")
        self._special_token_ids = get_special_token_ids(self.tokenizer, self.extra_tokens)
        return dict(self._special_token_ids)

    @property
    def special_token_ids(self) -> Dict[str, int]:
        if not self.is_registered:
            raise VocabularyLookupFailure("Special tokens have not been registered on this tokenizer")
        return dict(self._special_token_ids)

    @property
    def image_token_id(self) -> int:
        return self.special_token_ids[self.image_token]

    @property
    def global_image_token_id(self) -> int:
        return self.special_token_ids[self.global_image_token]

    def token_to_id(self, token: str) -> int:
        token_id = self.tokenizer.convert_tokens_to_ids(token)
        # Unknown tokens come back as the unk id, or None when there is no unk token
        if token_id is None or (token_id == self.tokenizer.unk_token_id and token != self.tokenizer.unk_token):
            raise VocabularyLookupFailure(f"Token {token!r} is not in the vocabulary")
        return token_id

    def encode(self, x: str) -> List[int]:
        if not isinstance(x, str):
            raise InvalidArgument(f"Expected text, got {type(x).__name__}")
        try:
            return self.tokenizer.encode(x, add_special_tokens=False)
        except Exception as e:
            raise EncodeFailure(f"Tokenizer rejected input: {e}") from e

    def decode(self, x: Sequence[int], skip_special_tokens=True) -> str:
        x = [int(t) for t in x]
        if skip_special_tokens and self.is_registered:
            # Drop our placeholder/marker tokens even if the backend does not flag them special
            registered = set(self._special_token_ids.values())
            x = [t for t in x if t not in registered]
        return self.tokenizer.decode(
            x, skip_special_tokens=skip_special_tokens, clean_up_tokenization_spaces=False)

    def vocab_size(self):
        return len(self.tokenizer)


def _load_hf_tokenizer(tokenizer_path: str):
    if os.path.isdir(tokenizer_path):
        return AutoTokenizer.from_pretrained(tokenizer_path, local_files_only=True, use_fast=True)
    backend = Tokenizer.from_file(tokenizer_path)
    return PreTrainedTokenizerFast(tokenizer_object=backend)


def build_tokenizer(
    tokenizer_path: str,
    image_token: str = DEFAULT_IMAGE_TOKEN,
    global_image_token: str = DEFAULT_GLOBAL_IMAGE_TOKEN,
    register: bool = True,
) -> HfTokenizerWrapper:
    """Load a tokenizer from a `tokenizer.json` file or a local tokenizer directory.

    The special token table is registered right away unless `register` is False.
    """
    if not tokenizer_path:
        raise InvalidArgument("tokenizer_path is required")
    if not os.path.exists(tokenizer_path):
        raise TokenizerLoadFailure(f"Tokenizer not found: {tokenizer_path}")
    try:
        tokenizer = _load_hf_tokenizer(tokenizer_path)
    except Exception as e:
        log.error(f"Failed to load tokenizer '{tokenizer_path}': {e}")
        raise TokenizerLoadFailure(f"Failed to load tokenizer '{tokenizer_path}': {e}") from e

    tok = HfTokenizerWrapper(tokenizer, image_token=image_token, global_image_token=global_image_token)
    if register:
        tok.register_special_tokens()
    return tok


def get_special_token_ids(tokenizer, tokens: Sequence[str] = EXTRA_TOKENS) -> Dict[str, int]:
    """
    Get special token IDs, in table order. Works with both HfTokenizerWrapper
    and standard transformers tokenizers.
    """
    if isinstance(tokenizer, HfTokenizerWrapper):
        tokenizer = tokenizer.tokenizer
    vocab = tokenizer.get_vocab()
    missing = [t for t in tokens if t not in vocab]
    if missing:
        raise VocabularyLookupFailure(
            f"{len(missing)} special tokens missing after registration, e.g. {missing[:3]}")
    ids = {t: vocab[t] for t in tokens}
    if len(set(ids.values())) != len(ids):
        raise VocabularyLookupFailure("Special tokens do not map to distinct ids")
    return ids
