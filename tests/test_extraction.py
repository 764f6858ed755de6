"""Tests for keyframe extraction over an in-memory frame source."""

import numpy as np
import pytest

from conftest import FakeSource, checkerboard_frame, solid_frame
from flowmap.core.errors import ExtractionCancelled, InvalidMedia, MediaDecodeError
from flowmap.core.extraction import (
    CapturedFrame,
    ExtractionCursor,
    ExtractionSettings,
    decide_checkpoint,
    encode_capture,
    extract_keyframes,
)
from flowmap.core.signals import FrameSignalAnalyzer


SCREEN_A = checkerboard_frame()
SCREEN_B = checkerboard_frame(inverted=True)


def _a_b_a(t):
    """Screen A for [0, 1), B for [1, 2), A again afterwards."""
    return SCREEN_B if 1.0 <= t < 2.0 else SCREEN_A


def _times(result):
    return [round(f.time, 6) for f in result.frames]


class TestExtractKeyframes:
    """Test the keep/discard walk over all checkpoints."""

    def test_white_video_keeps_only_first_and_last(self):
        """Interior solid frames are boring; first and last are always kept."""
        source = FakeSource(10.0, lambda t: solid_frame(255))

        result = extract_keyframes(source, ExtractionSettings(scan_interval=1.0))

        assert _times(result) == [0.0, 9.95]
        interior = result.decisions[1:-1]
        assert interior and all(d["reason"] == "boring" for d in interior)
        assert all(d["state"] == "discarded" for d in interior)

    def test_screen_changes_are_kept(self):
        """Each new screen is kept once; returning to a kept screen is kept again."""
        source = FakeSource(3.0, _a_b_a)

        result = extract_keyframes(source, ExtractionSettings(scan_interval=0.5))

        assert _times(result) == [0.0, 1.0, 2.0, 2.95]
        reasons = [d["reason"] for d in result.decisions]
        assert reasons == ["first", "duplicate", "unique", "duplicate", "unique", "duplicate", "last"]

    def test_blank_interior_does_not_reset_dedup_reference(self):
        """A boring frame between two identical screens leaves A as the reference."""
        source = FakeSource(2.0, lambda t: solid_frame(255) if 0.5 <= t < 1.0 else SCREEN_A)

        result = extract_keyframes(source, ExtractionSettings(scan_interval=0.5))

        assert _times(result) == [0.0, 1.95]
        reasons = [d["reason"] for d in result.decisions]
        assert reasons == ["first", "boring", "duplicate", "duplicate", "last"]

    def test_slow_drift_is_measured_against_last_kept_frame(self):
        """Small steps accumulate until the change from the kept screen exceeds the budget."""
        base = checkerboard_frame(size=100, tile=10)

        def drifted(steps):
            frame = base.copy()
            flat = frame.reshape(-1, 3)
            flat[: steps * 30] = 255 - flat[: steps * 30]
            return frame

        plan = {0: base, 1: drifted(1)}
        source = FakeSource(2.0, lambda t: plan.get(int(t * 2), drifted(2)))

        result = extract_keyframes(source, ExtractionSettings(scan_interval=0.5))

        assert _times(result) == [0.0, 1.0, 1.95]
        reasons = [d["reason"] for d in result.decisions]
        assert reasons == ["first", "duplicate", "unique", "duplicate", "last"]

    def test_source_time_reports_decoded_frame(self):
        """Captures carry the decoded frame's timestamp next to the checkpoint."""

        class TenFpsSource(FakeSource):
            def time_at(self, t):
                return min(int(round(t * 10)), 19) / 10.0

        source = TenFpsSource(2.0, lambda t: SCREEN_A)

        result = extract_keyframes(source, ExtractionSettings(scan_interval=0.5))

        last = result.frames[-1]
        assert last.time == pytest.approx(1.95)
        assert last.source_time == pytest.approx(1.9)

    def test_source_time_absent_without_time_at(self):
        """Sources that cannot report frame times leave source_time unset."""
        result = extract_keyframes(FakeSource(1.0, lambda t: SCREEN_A), ExtractionSettings(scan_interval=0.5))

        assert all(f.source_time is None for f in result.frames)

    def test_dedupe_policy_drops_duplicate_final_frame(self):
        """With final_frame_policy=dedupe an unchanged last checkpoint is dropped."""
        source = FakeSource(3.0, _a_b_a)

        result = extract_keyframes(
            source, ExtractionSettings(scan_interval=0.5, final_frame_policy="dedupe")
        )

        assert _times(result) == [0.0, 1.0, 2.0]
        assert result.decisions[-1]["reason"] == "final-duplicate"

    def test_dedupe_policy_keeps_distinct_final_frame(self):
        """A last checkpoint that differs from the last kept frame survives dedupe."""
        source = FakeSource(2.0, lambda t: SCREEN_B if t > 1.9 else SCREEN_A)

        result = extract_keyframes(
            source, ExtractionSettings(scan_interval=0.5, final_frame_policy="dedupe")
        )

        assert _times(result) == [0.0, 1.95]

    def test_static_video_always_policy(self):
        """A static screen under the default policy yields exactly first and last."""
        source = FakeSource(2.0, lambda t: SCREEN_A)

        result = extract_keyframes(source, ExtractionSettings(scan_interval=0.5))

        assert _times(result) == [0.0, 1.95]

    def test_capture_times_strictly_increase(self):
        """Kept frames come back in checkpoint order."""
        source = FakeSource(5.0, lambda t: SCREEN_A if int(t * 5) % 2 == 0 else SCREEN_B)

        result = extract_keyframes(source, ExtractionSettings(scan_interval=0.2))

        times = [f.time for f in result.frames]
        assert all(b > a for a, b in zip(times, times[1:]))
        assert [f.checkpoint for f in result.frames] == sorted(f.checkpoint for f in result.frames)

    def test_frame_cap_stops_without_error(self):
        """Reaching max_frames ends the scan early and flags it."""
        source = FakeSource(5.0, lambda t: SCREEN_A if int(t * 5) % 2 == 0 else SCREEN_B)

        result = extract_keyframes(source, ExtractionSettings(scan_interval=0.2, max_frames=3))

        assert len(result.frames) == 3
        assert result.cap_reached is True
        assert len(source.reads) == 3

    def test_cancellation_raises(self):
        """The cancel signal is checked before every checkpoint."""
        calls = {"n": 0}

        def cancel():
            calls["n"] += 1
            return calls["n"] > 2

        source = FakeSource(5.0, lambda t: SCREEN_A)

        with pytest.raises(ExtractionCancelled):
            extract_keyframes(source, ExtractionSettings(scan_interval=0.5), cancel_fn=cancel)
        assert len(source.reads) == 2

    def test_decode_error_propagates(self):
        """A failed seek/read aborts the run with the checkpoint timestamp."""
        source = FakeSource(3.0, lambda t: SCREEN_A, fail_at=1.0)

        with pytest.raises(MediaDecodeError) as excinfo:
            extract_keyframes(source, ExtractionSettings(scan_interval=0.5))
        assert excinfo.value.timestamp == pytest.approx(1.0)

    def test_invalid_duration(self):
        """A source without a usable duration fails before any read."""
        source = FakeSource(0.0, lambda t: SCREEN_A)

        with pytest.raises(InvalidMedia):
            extract_keyframes(source)
        assert source.reads == []

    def test_progress_reports_fractions(self):
        """Progress climbs to 1.0 once per checkpoint."""
        seen = []
        source = FakeSource(1.0, lambda t: SCREEN_A)

        result = extract_keyframes(
            source,
            ExtractionSettings(scan_interval=0.2),
            progress_cb=lambda frac, msg: seen.append(frac),
        )

        assert len(seen) == len(result.checkpoints)
        assert seen == sorted(seen)
        assert seen[-1] == pytest.approx(1.0)

    def test_summary_counts_reasons(self):
        """The summary tallies every decision reason."""
        source = FakeSource(10.0, lambda t: solid_frame(255))

        summary = extract_keyframes(source, ExtractionSettings(scan_interval=1.0)).summary()

        assert summary["kept"] == 2
        assert summary["reasons"]["boring"] == summary["checkpoints"] - 2


class TestDecideCheckpoint:
    """Test the decision rules on synthetic buffers."""

    def setup_method(self):
        self.analyzer = FrameSignalAnalyzer()
        self.settings = ExtractionSettings()
        self.buf_a = self.analyzer.sample(SCREEN_A)
        self.buf_b = self.analyzer.sample(SCREEN_B)
        self.blank = self.analyzer.sample(solid_frame(0))

    def _cursor(self, position, baseline):
        frame = CapturedFrame(time=0.0, image=b"", width=1, height=1, checkpoint=0)
        cursor = ExtractionCursor(checkpoints=[0.0, 1.0, 2.0], max_frames=10)
        cursor.frames.append(frame)
        cursor.baseline = baseline
        cursor.position = position
        return cursor

    def test_first_checkpoint_always_kept(self):
        """Even a blank first frame is kept."""
        cursor = ExtractionCursor(checkpoints=[0.0, 1.0], max_frames=10)

        decision = decide_checkpoint(cursor, self.blank, self.analyzer, self.settings)

        assert decision.keep is True
        assert decision.reason == "first"

    def test_boring_interior_discarded(self):
        """A blank interior frame is discarded even though it differs from the baseline."""
        decision = decide_checkpoint(self._cursor(1, self.buf_a), self.blank, self.analyzer, self.settings)

        assert decision.keep is False
        assert decision.reason == "boring"

    def test_duplicate_interior_discarded(self):
        """An interior frame matching the last kept buffer is discarded."""
        decision = decide_checkpoint(self._cursor(1, self.buf_a), self.buf_a, self.analyzer, self.settings)

        assert decision.keep is False
        assert decision.reason == "duplicate"
        assert decision.similarity == 1.0

    def test_unique_interior_kept(self):
        """A distinct, non-boring interior frame is kept."""
        decision = decide_checkpoint(self._cursor(1, self.buf_a), self.buf_b, self.analyzer, self.settings)

        assert decision.keep is True
        assert decision.reason == "unique"

    def test_boring_last_frame_kept(self):
        """The last checkpoint bypasses the boring filter."""
        decision = decide_checkpoint(self._cursor(2, self.buf_a), self.blank, self.analyzer, self.settings)

        assert decision.keep is True
        assert decision.reason == "last"


class TestEncodeCapture:
    """Test JPEG rendering of kept frames."""

    def test_longest_side_is_capped(self):
        """A 3000x1000 frame is scaled to 1500x500."""
        frame = np.zeros((1000, 3000, 3), dtype=np.uint8)

        data, width, height = encode_capture(frame, 1500, 80)

        assert (width, height) == (1500, 500)
        assert data[:2] == b"\xff\xd8"

    def test_small_frames_keep_their_size(self):
        """Frames under the cap are not upscaled."""
        _, width, height = encode_capture(SCREEN_A, 1500, 80)

        assert (width, height) == (64, 64)

    def test_data_url(self):
        """Captured frames expose a JPEG data URL."""
        frame = CapturedFrame(time=1.0, image=b"abc", width=1, height=1, checkpoint=0)

        assert frame.to_data_url() == "data:image/jpeg;base64,YWJj"
