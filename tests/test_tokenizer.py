"""
Tokenizer tests: vocabulary extension and the wrapper.
"""
import pytest
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from nanovlm.exceptions import InvalidArgument, TokenizerLoadFailure, VocabularyLookupFailure
from nanovlm.tokenizer import (
    DEFAULT_GLOBAL_IMAGE_TOKEN,
    DEFAULT_IMAGE_TOKEN,
    EXTRA_TOKENS,
    HfTokenizerWrapper,
    build_tokenizer,
    get_special_token_ids,
    grid_token,
    special_token_table,
)


class TestSpecialTokenTable:
    """Validate the table contents and order."""

    def test_order(self):
        table = special_token_table()
        assert len(table) == 2 + 8*8
        assert table[0] == DEFAULT_IMAGE_TOKEN
        assert table[1] == DEFAULT_GLOBAL_IMAGE_TOKEN
        assert table[2] == "<row_1_col_1>"
        assert table[3] == "<row_1_col_2>"
        assert table[9] == "<row_1_col_8>"
        assert table[10] == "<row_2_col_1>"
        assert table[-1] == "<row_8_col_8>"
        assert table == EXTRA_TOKENS

    def test_custom_tokens(self):
        table = special_token_table("<image>", "<global-img>", 2, 2)
        assert table == ("<image>", "<global-img>", "<row_1_col_1>", "<row_1_col_2>",
                         "<row_2_col_1>", "<row_2_col_2>")

    def test_grid_token_is_one_based(self):
        assert grid_token(1, 1) == "<row_1_col_1>"
        assert grid_token(3, 7) == "<row_3_col_7>"


class TestRegistration:
    """Validate special token registration."""

    def test_ids_follow_table_order(self, tokenizer_file):
        tok = build_tokenizer(str(tokenizer_file), register=False)
        base_size = tok.vocab_size()
        ids = tok.register_special_tokens()
        assert list(ids) == list(EXTRA_TOKENS)
        assert list(ids.values()) == list(range(base_size, base_size + len(EXTRA_TOKENS)))
        assert tok.vocab_size() == base_size + len(EXTRA_TOKENS)
        print("✓ Special tokens registered in table order")

    def test_registering_twice_is_idempotent(self, tokenizer):
        first = tokenizer.special_token_ids
        size = tokenizer.vocab_size()
        assert tokenizer.register_special_tokens() == first
        assert tokenizer.vocab_size() == size

    def test_second_wrapper_on_same_tokenizer(self, tokenizer):
        again = HfTokenizerWrapper(tokenizer.tokenizer)
        ids = again.register_special_tokens()
        assert ids == tokenizer.special_token_ids
        assert again.vocab_size() == tokenizer.vocab_size()

    def test_markers_encode_to_single_ids(self, tokenizer):
        ids = tokenizer.special_token_ids
        assert tokenizer.encode("<row_2_col_3>") == [ids["<row_2_col_3>"]]
        assert tokenizer.encode(DEFAULT_IMAGE_TOKEN * 3) == [tokenizer.image_token_id] * 3

    def test_ids_before_registration(self, tokenizer_file):
        tok = build_tokenizer(str(tokenizer_file), register=False)
        with pytest.raises(VocabularyLookupFailure):
            tok.special_token_ids
        with pytest.raises(VocabularyLookupFailure):
            get_special_token_ids(tok)

    def test_get_special_token_ids(self, tokenizer):
        ids = get_special_token_ids(tokenizer)
        assert ids == tokenizer.special_token_ids
        assert len(set(ids.values())) == len(ids)

    def test_custom_content_token(self, tokenizer_file):
        tok = build_tokenizer(str(tokenizer_file), image_token="<image>", global_image_token="<global-img>")
        assert tok.image_token_id == tok.token_to_id("<image>")
        assert tok.global_image_token_id == tok.token_to_id("<global-img>")


class TestBuildTokenizer:
    """Loading failures."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(TokenizerLoadFailure):
            build_tokenizer(str(tmp_path / "tokenizer.json"))

    def test_malformed_file(self, tmp_path):
        path = tmp_path / "tokenizer.json"
        path.write_text("{ this is not a tokenizer")
        with pytest.raises(TokenizerLoadFailure):
            build_tokenizer(str(path))

    def test_empty_path(self):
        with pytest.raises(InvalidArgument):
            build_tokenizer("")


class TestEncodeDecode:
    """Validate the wrapper."""

    def test_no_special_tokens_added(self, tokenizer):
        ids = tokenizer.encode("describe the picture")
        assert len(ids) == 3
        assert tokenizer.decode(ids) == "describe the picture"

    def test_decode_skips_registered_tokens(self, tokenizer):
        ids = tokenizer.encode(DEFAULT_IMAGE_TOKEN * 2 + "<row_1_col_1>what is this")
        assert tokenizer.decode(ids) == "what is this"

    def test_encode_rejects_non_text(self, tokenizer):
        with pytest.raises(InvalidArgument):
            tokenizer.encode(b"describe")

    def test_unknown_token(self, tokenizer):
        with pytest.raises(VocabularyLookupFailure):
            tokenizer.token_to_id("<not_a_token>")

    def test_lookup_does_not_rebuild_vocab(self, tokenizer, monkeypatch):
        """Marker lookups go straight to the backend, not through the full vocab dict."""
        def no_vocab():
            raise AssertionError("get_vocab called during lookup")
        monkeypatch.setattr(tokenizer.tokenizer, "get_vocab", no_vocab)
        ids = tokenizer.special_token_ids
        assert tokenizer.token_to_id("<row_8_col_8>") == ids["<row_8_col_8>"]
        assert tokenizer.token_to_id("<|im_start|>") == tokenizer.encode("<|im_start|>")[0]
        assert tokenizer.token_to_id("cat") == tokenizer.encode("cat")[0]
        with pytest.raises(VocabularyLookupFailure):
            tokenizer.token_to_id("<not_a_token>")

    def test_unknown_token_with_unk_configured(self, tokenizer_file):
        """Tokenizers with an unk token map misses to it, that is still a lookup failure."""
        tok = build_tokenizer(str(tokenizer_file))
        tok.tokenizer.unk_token = "[UNK]"
        assert tok.token_to_id("[UNK]") == 0
        with pytest.raises(VocabularyLookupFailure):
            tok.token_to_id("<not_a_token>")
