"""
Pytest configuration and shared fixtures.
"""
import io
import pytest
import sys
from pathlib import Path

import numpy as np
import PIL.Image

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


WORDS = [
    "describe", "the", "picture", "what", "is", "in", "this", "image",
    "user", "assistant", "User", "Assistant", ":", "?", ".", "a", "cat",
]

BASE_SPECIAL_TOKENS = [
    "<|im_start|>",
    "<|im_end|>",
    "<end_of_utterance>",
    "<fake_token_around_image>",
    "<global-img>",
    "<image>",
]


def smooth_image(width, height, seed=0):
    """Low frequency RGB test image, [height, width, 3] uint8"""
    rng = np.random.RandomState(seed)
    y, x = np.mgrid[0:height, 0:width].astype(np.float32)
    channels = []
    for c in range(3):
        fx, fy = rng.uniform(0.5, 1.5, size=2)
        phase = rng.uniform(0, np.pi)
        v = 0.5 + 0.4 * np.sin(np.pi * fx * x / width + phase) * np.cos(np.pi * fy * y / height)
        channels.append(v)
    return np.clip(np.stack(channels, -1) * 255, 0, 255).round().astype(np.uint8)


def encode_png(image: np.ndarray) -> bytes:
    buf = io.BytesIO()
    PIL.Image.fromarray(image).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture(scope="session")
def project_root_path():
    """Return project root path."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def tokenizer_file(tmp_path_factory):
    """A tiny word-level tokenizer saved as tokenizer.json."""
    from tokenizers import Tokenizer
    from tokenizers.models import WordLevel
    from tokenizers.pre_tokenizers import Whitespace

    vocab = {"[UNK]": 0}
    for word in WORDS:
        vocab[word] = len(vocab)
    tok = Tokenizer(WordLevel(vocab, unk_token="[UNK]"))
    tok.pre_tokenizer = Whitespace()
    tok.add_special_tokens(BASE_SPECIAL_TOKENS)

    path = tmp_path_factory.mktemp("tokenizer") / "tokenizer.json"
    tok.save(str(path))
    return path


@pytest.fixture
def tokenizer(tokenizer_file):
    """Fresh wrapper with the special token table registered."""
    from nanovlm.tokenizer import build_tokenizer
    return build_tokenizer(str(tokenizer_file))


@pytest.fixture
def small_config():
    """Config with small tiles so image tests stay fast."""
    from nanovlm.config import build_config
    return build_config(dict(
        vit_img_size=32,
        mp_image_token_length=4,
        max_img_size=128,
        splitted_image_size=32,
    ))


@pytest.fixture
def handle(tokenizer_file, small_config):
    from nanovlm.handle import PreprocessorHandle
    h = PreprocessorHandle.open(str(tokenizer_file), small_config)
    assert h is not None
    yield h
    h.close()


@pytest.fixture(scope="session")
def sample_image():
    return smooth_image(100, 40)


@pytest.fixture(scope="session")
def png_bytes(sample_image):
    return encode_png(sample_image)


@pytest.fixture(scope="session")
def png_file(tmp_path_factory, png_bytes):
    path = tmp_path_factory.mktemp("images") / "sample.png"
    path.write_bytes(png_bytes)
    return path


@pytest.fixture(scope="session")
def make_image():
    return smooth_image
