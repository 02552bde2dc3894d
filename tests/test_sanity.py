"""
Test Suite - Basic Sanity Tests

These tests verify that the package structure is correct
and that basic imports work.

Run with: pytest tests/test_sanity.py -v
"""

import pytest


class TestPackageStructure:
    """Test that all packages can be imported."""

    def test_import_package(self):
        """Test that the main package can be imported."""
        import tap2music
        assert hasattr(tap2music, "__version__")
        assert tap2music.__version__ == "0.1.0"

    def test_import_data_package(self):
        """Test that data subpackage exposes its loaders."""
        import tap2music.data
        assert hasattr(tap2music.data, "load_manifest")
        assert hasattr(tap2music.data, "load_settings")

    def test_import_models_package(self):
        """Test that models subpackage can be imported."""
        import tap2music.models
        assert hasattr(tap2music.models, "TapModel")
        assert hasattr(tap2music.models, "HandTapModel")

    def test_import_evaluation_package(self):
        """Test that evaluation subpackage can be imported."""
        import tap2music.evaluation
        assert tap2music.evaluation.SELF_TEST_THRESHOLD == 0.03
        assert tap2music.evaluation.SELF_TEST_ADVISORY == 0.015

    def test_import_app_package(self):
        """Test that app subpackage can be imported."""
        import tap2music.app
        assert set(tap2music.app.ENGINE_KINDS) == {"uc", "hand", "dummy"}

    def test_error_hierarchy(self):
        """Every package error derives from Tap2MusicError."""
        from tap2music.errors import (
            EngineStateError, LoadError, SelfTestError, Tap2MusicError, VocabularyRangeError
        )
        for error in (EngineStateError, LoadError, SelfTestError, VocabularyRangeError):
            assert issubclass(error, Tap2MusicError)
        assert issubclass(VocabularyRangeError, IndexError)


class TestConfiguration:
    """Architecture constants the checkpoints depend on."""

    def test_vocabulary(self):
        from tap2music.models.tap_model import HAND_CONFIG, TAP_CONFIG
        assert TAP_CONFIG["n_pitches"] == 89
        assert HAND_CONFIG["n_hands"] == 3
        assert HAND_CONFIG["rnn_dim"] == TAP_CONFIG["rnn_dim"] == 128

    def test_pitch_range(self):
        from tap2music.app.engine import MAX_PITCH, MIN_PITCH
        assert (MIN_PITCH, MAX_PITCH) == (21, 108)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
