"""Tests for comparison buffers and the boring/duplicate signals."""

import numpy as np
import pytest

from conftest import checkerboard_frame, solid_frame
from flowmap.core.signals import (
    FrameSignalAnalyzer,
    PixelSampleBuffer,
    SignalSettings,
    color_deviation,
    is_low_complexity,
    similarity,
)


def _buffer(rgb, size=10):
    pixels = np.zeros((size, size, 4), dtype=np.uint8)
    pixels[..., :3] = rgb
    pixels[..., 3] = 255
    return PixelSampleBuffer(pixels=pixels)


class TestPixelSampleBuffer:
    """Test downscaling decoded frames into comparison buffers."""

    def test_bgr_frame_becomes_square_rgba(self):
        """A BGR frame is resized to size x size with four channels."""
        frame = np.zeros((48, 80, 3), dtype=np.uint8)
        frame[..., 0] = 200  # blue in BGR

        buf = PixelSampleBuffer.from_frame(frame, 100)

        assert buf.pixels.shape == (100, 100, 4)
        assert buf.size == 100
        assert buf.pixels[0, 0, 2] == 200  # blue lands in the RGBA blue slot
        assert buf.pixels[0, 0, 3] == 255

    def test_gray_frame_is_accepted(self):
        """Single-channel frames are expanded to RGBA."""
        buf = PixelSampleBuffer.from_frame(np.full((20, 20), 7, dtype=np.uint8), 16)

        assert buf.pixels.shape == (16, 16, 4)
        assert int(buf.pixels[..., 0].max()) == 7

    def test_buffer_is_read_only(self):
        """Buffers are immutable snapshots."""
        buf = PixelSampleBuffer.from_frame(solid_frame(), 8)

        with pytest.raises(ValueError):
            buf.pixels[0, 0, 0] = 1

    def test_empty_frame_rejected(self):
        """An empty array cannot be sampled."""
        with pytest.raises(ValueError):
            PixelSampleBuffer.from_frame(np.zeros((0, 0, 3), dtype=np.uint8), 8)


class TestComplexity:
    """Test color deviation and the low-complexity check."""

    def test_uniform_buffer_has_zero_deviation(self):
        """A solid color has no deviation."""
        assert color_deviation(_buffer((30, 60, 90))) == 0.0
        assert is_low_complexity(_buffer((30, 60, 90))) is True

    def test_checkerboard_is_not_low_complexity(self):
        """A black/white checkerboard is far above the threshold."""
        buf = PixelSampleBuffer.from_frame(checkerboard_frame(), 100)

        assert color_deviation(buf) > 100.0
        assert is_low_complexity(buf) is False

    def test_threshold_is_strict(self):
        """Deviation equal to the threshold is not low complexity."""
        buf = _buffer((0, 0, 0))
        assert is_low_complexity(buf, threshold=0.0) is False


class TestSimilarity:
    """Test the changed-pixel similarity score."""

    def test_identical_buffers(self):
        """Identical buffers score exactly 1.0."""
        buf = PixelSampleBuffer.from_frame(checkerboard_frame(), 100)

        assert similarity(buf, buf) == 1.0

    def test_fully_different_buffers(self):
        """Black vs white changes every pixel."""
        assert similarity(_buffer((0, 0, 0)), _buffer((255, 255, 255))) == 0.0

    def test_noise_within_floor_is_ignored(self):
        """A summed channel delta of 30 stays under the default floor of 40."""
        assert similarity(_buffer((100, 100, 100)), _buffer((110, 110, 110))) == 1.0

    def test_noise_above_floor_counts(self):
        """A summed channel delta of 45 exceeds the floor."""
        assert similarity(_buffer((100, 100, 100)), _buffer((115, 115, 115))) == 0.0

    def test_partial_change(self):
        """Changing 10 of 100 pixels gives 0.9."""
        a = _buffer((0, 0, 0))
        pixels = a.pixels.copy()
        pixels.reshape(-1, 4)[:10, :3] = 255
        b = PixelSampleBuffer(pixels=pixels)

        assert similarity(a, b) == pytest.approx(0.9)

    def test_early_exit_short_circuits_to_zero(self):
        """Exceeding the changed-pixel budget returns 0.0."""
        a = _buffer((0, 0, 0))
        pixels = a.pixels.copy()
        pixels.reshape(-1, 4)[:10, :3] = 255
        b = PixelSampleBuffer(pixels=pixels)

        assert similarity(a, b, max_changed_fraction=0.05) == 0.0
        assert similarity(a, b, max_changed_fraction=0.2) == pytest.approx(0.9)

    def test_shape_mismatch_is_zero(self):
        """Buffers of different sizes never match."""
        assert similarity(_buffer((0, 0, 0), size=10), _buffer((0, 0, 0), size=12)) == 0.0

    def test_alpha_is_ignored(self):
        """Only RGB channels are compared."""
        a = _buffer((50, 50, 50))
        pixels = a.pixels.copy()
        pixels[..., 3] = 0
        assert similarity(a, PixelSampleBuffer(pixels=pixels)) == 1.0


class TestFrameSignalAnalyzer:
    """Test the settings-bound analyzer."""

    def test_is_duplicate_against_threshold(self):
        """Buffers above the duplicate threshold are duplicates."""
        analyzer = FrameSignalAnalyzer(SignalSettings(sample_size=10))
        a = analyzer.sample(checkerboard_frame())
        b = analyzer.sample(checkerboard_frame(inverted=True))

        assert analyzer.is_duplicate(a, a) is True
        assert analyzer.is_duplicate(a, b) is False

    def test_is_boring(self):
        """Solid frames are boring, checkerboards are not."""
        analyzer = FrameSignalAnalyzer()

        assert analyzer.is_boring(analyzer.sample(solid_frame(255))) is True
        assert analyzer.is_boring(analyzer.sample(checkerboard_frame())) is False

    def test_settings_from_config(self):
        """Settings are read from the signals block with defaults for gaps."""
        settings = SignalSettings.from_config({"signals": {"sample_size": 50, "noise_floor": 10}})

        assert settings.sample_size == 50
        assert settings.noise_floor == 10
        assert settings.duplicate_threshold == 0.995
