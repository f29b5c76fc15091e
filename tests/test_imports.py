"""
Import tests for all core modules.
"""
import pytest
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


class TestImports:
    """Import all core modules."""

    def test_import_nanovlm_package(self):
        """Import nanovlm package."""
        import nanovlm
        assert hasattr(nanovlm, '__version__')

    def test_import_handle(self):
        from nanovlm import PreprocessorHandle, OwnedBuffer
        assert PreprocessorHandle is not None
        assert OwnedBuffer is not None

    def test_import_preprocessors(self):
        from nanovlm.preprocessors import (
            DynamicGridWithGlobalView,
            FixedSquare,
            LongestEdgeSplit,
            PromptAligner,
            compute_dynamic_resize,
            extract_tiles,
            load_image,
            normalize_tile,
            resize_image,
        )
        assert callable(compute_dynamic_resize)
        assert callable(resize_image)
        assert callable(extract_tiles)
        assert callable(normalize_tile)
        assert callable(load_image)

    def test_import_tokenizer(self):
        from nanovlm.tokenizer import HfTokenizerWrapper, build_tokenizer, get_special_token_ids
        assert callable(build_tokenizer)
        assert callable(get_special_token_ids)

    def test_exception_hierarchy(self):
        from nanovlm import exceptions
        for name in exceptions.__all__:
            assert issubclass(getattr(exceptions, name), exceptions.PreprocessingError)
        assert issubclass(exceptions.InvalidArgument, ValueError)
