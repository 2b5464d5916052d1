"""Tests for the export orchestrator."""

import io
import math
import threading
from pathlib import Path
from unittest.mock import patch

import av
import pytest

from framecut.config import ExportConfig
from framecut.engine import ClipExporter, ExportState, ProgressTracker, export_clip, export_segment
from framecut.errors import (
    ErrorKind,
    ExportCancelledError,
    ExportError,
    InvalidRequestError,
    InvalidSourceError,
    MuxFinalizeError,
    MuxSetupError,
)
from framecut.models import ClipRequest, ClipSegment


def _video_packets(data: bytes):
    with av.open(io.BytesIO(data)) as container:
        stream = container.streams.video[0]
        packets = [p for p in container.demux(stream) if p.size]
        return packets, stream.time_base


def _frame_count(data: bytes) -> int:
    with av.open(io.BytesIO(data)) as container:
        return sum(1 for _ in container.decode(video=0))


class TestProgressTracker:
    def test_never_decreases(self):
        seen = []
        tracker = ProgressTracker(seen.append)
        tracker.reset()
        for p in [5, 10, 7, 80, 79, 100]:
            tracker.update(p)
        assert seen == [0, 5, 10, 80, 100]
        assert tracker.current.percent == 100

    def test_clamps_to_100(self):
        tracker = ProgressTracker()
        tracker.update(250)
        assert tracker.current.percent == 100

    def test_task_label_kept(self):
        tracker = ProgressTracker()
        tracker.reset("Preparing clip: Intro")
        tracker.update(10)
        assert tracker.current.task == "Preparing clip: Intro"
        tracker.update(10, "Encoding video")
        assert tracker.current.task == "Encoding video"

    def test_reset_starts_over(self):
        tracker = ProgressTracker()
        tracker.update(100)
        tracker.reset()
        assert tracker.current.percent == 0


class TestInvalidRequest:
    @patch("framecut.engine.ffutil.open_source")
    def test_fails_before_touching_source(self, mock_open):
        exporter = ClipExporter()
        with pytest.raises(InvalidRequestError) as exc:
            exporter.run(ClipRequest(source=Path("in.mp4"), start=20.0, end=10.0))
        mock_open.assert_not_called()
        assert exc.value.kind == ErrorKind.INVALID_REQUEST
        assert exporter.state == ExportState.FAILED
        assert exporter.progress.error == exc.value.user_message

    @patch("framecut.engine.ffutil.open_source")
    def test_zero_length(self, mock_open):
        with pytest.raises(InvalidRequestError):
            export_clip("in.mp4", 5.0, 5.0)
        mock_open.assert_not_called()


class TestInvalidSource:
    def test_unreadable_file(self, tmp_path: Path):
        bogus = tmp_path / "bogus.mp4"
        bogus.write_bytes(b"\x00" * 64)
        exporter = ClipExporter()
        with pytest.raises(InvalidSourceError) as exc:
            exporter.run(ClipRequest(source=bogus, start=0.0, end=1.0))
        assert exc.value.kind == ErrorKind.INVALID_SOURCE
        assert exporter.state == ExportState.FAILED


class TestExportClip:
    def test_frame_count_and_padding(self, source_video: Path):
        result = export_clip(source_video, 1.0, 2.0)
        assert result.content_frames == 30
        assert result.total_frames == 60
        assert result.total_duration == 2.0
        assert _frame_count(result.data) == 60

    def test_container_tracks(self, source_video: Path):
        result = export_clip(source_video, 0.5, 1.5)
        with av.open(io.BytesIO(result.data)) as container:
            (video,) = container.streams.video
            (audio,) = container.streams.audio
            assert video.codec_context.name in ("h264", "libx264", "libopenh264")
            assert (video.codec_context.width, video.codec_context.height) == (320, 240)
            assert audio.codec_context.name == "aac"
            assert audio.codec_context.sample_rate == 44100
            assert len(audio.codec_context.layout.channels) == 2

    def test_fast_start_layout(self, source_video: Path):
        result = export_clip(source_video, 0.0, 1.0)
        assert result.data.index(b"moov") < result.data.index(b"mdat")

    def test_keyframes(self, source_video: Path):
        result = export_clip(source_video, 0.0, 1.5)
        assert result.total_frames == 75
        packets, time_base = _video_packets(result.data)
        first = min(p.pts for p in packets)
        keys = {round(float((p.pts - first) * time_base) * 30) for p in packets if p.is_keyframe}
        assert {0, 30, 60, 74} <= keys

    def test_audio_sample_count(self, source_video: Path):
        result = export_clip(source_video, 1.0, 2.0)
        assert result.has_audio is True
        assert result.audio_samples == math.ceil(2.0 * 44100)

    def test_window_past_end_of_source(self, source_video: Path):
        result = export_clip(source_video, 2.5, 4.0)
        assert result.total_frames == 75
        assert result.audio_samples == math.ceil(2.5 * 44100)
        assert _frame_count(result.data) == 75

    def test_progress_monotonic_and_complete(self, source_video: Path):
        seen = []
        export_clip(source_video, 0.0, 1.0, on_progress=seen.append)
        assert seen == sorted(seen)
        assert seen[0] == 0
        assert seen[-1] == 100
        assert 80 in seen

    def test_state_and_result_warnings(self, source_video: Path):
        exporter = ClipExporter()
        result = exporter.run(ClipRequest(source=source_video, start=0.0, end=0.5))
        assert exporter.state == ExportState.DONE
        assert exporter.progress.percent == 100
        assert exporter.progress.task == "Done"
        assert result.warnings == []

    def test_no_padding_config(self, source_video: Path):
        result = export_clip(source_video, 0.0, 1.0, config=ExportConfig(padding_frames=0))
        assert result.total_frames == 30
        assert _frame_count(result.data) == 30


class TestVideoOnly:
    def test_source_without_audio(self, silent_video: Path, caplog):
        with caplog.at_level("WARNING", logger="framecut.engine"):
            result = export_clip(silent_video, 0.0, 1.0)
        assert result.has_audio is False
        assert result.audio_samples == 0
        assert [w.kind for w in result.warnings] == [ErrorKind.AUDIO_STAGE_FAILURE]
        assert "No audio stream" in caplog.text
        with av.open(io.BytesIO(result.data)) as container:
            assert len(container.streams.audio) == 0
            assert len(container.streams.video) == 1

    def test_audio_failure_drops_track(self, source_video: Path):
        with patch("framecut.engine.render_window", side_effect=ValueError("decode failed")):
            result = export_clip(source_video, 0.0, 1.0)
        assert result.has_audio is False
        assert result.warnings[0].kind == ErrorKind.AUDIO_STAGE_FAILURE
        assert _frame_count(result.data) == 60

    def test_unexpected_audio_error_drops_track(self, source_video: Path):
        with patch("framecut.engine.render_window", side_effect=RuntimeError("resampler crashed")):
            exporter = ClipExporter()
            result = exporter.run(ClipRequest(source=source_video, start=0.0, end=1.0))
        assert exporter.state == ExportState.DONE
        assert result.has_audio is False
        assert result.warnings[0].kind == ErrorKind.AUDIO_STAGE_FAILURE
        assert "resampler crashed" in result.warnings[0].message
        assert _frame_count(result.data) == 60

    def test_cancel_during_audio_still_propagates(self, source_video: Path):
        with patch(
            "framecut.engine.render_window", side_effect=ExportCancelledError("Export cancelled")
        ):
            exporter = ClipExporter()
            with pytest.raises(ExportCancelledError):
                exporter.run(ClipRequest(source=source_video, start=0.0, end=1.0))
        assert exporter.state == ExportState.CANCELLED

    def test_strict_mode_escalates_audio_failure(self, silent_video: Path):
        exporter = ClipExporter(ExportConfig(strict=True))
        with pytest.raises(ExportError) as exc:
            exporter.run(ClipRequest(source=silent_video, start=0.0, end=1.0))
        assert exc.value.kind == ErrorKind.AUDIO_STAGE_FAILURE
        assert exporter.state == ExportState.FAILED


class TestFailures:
    def test_finalize_failure_is_fatal(self, source_video: Path):
        with patch(
            "framecut.engine.ContainerMuxer.finalize",
            side_effect=MuxFinalizeError("disk full"),
        ):
            exporter = ClipExporter()
            with pytest.raises(MuxFinalizeError):
                exporter.run(ClipRequest(source=source_video, start=0.0, end=0.5))
        assert exporter.state == ExportState.FAILED

    def test_output_setup_failure_is_fatal(self, source_video: Path):
        exporter = ClipExporter(ExportConfig(video_codec="no-such-codec"))
        with pytest.raises(MuxSetupError) as exc:
            exporter.run(ClipRequest(source=source_video, start=0.0, end=0.5))
        assert exc.value.kind == ErrorKind.MUX_SETUP_FAILURE
        assert exporter.state == ExportState.FAILED
        assert exporter.progress.error == exc.value.user_message

    def test_cancel(self, source_video: Path):
        cancel = threading.Event()

        def on_progress(percent: int) -> None:
            if percent >= 20:
                cancel.set()

        exporter = ClipExporter(on_progress=on_progress, cancel=cancel)
        with pytest.raises(ExportCancelledError):
            exporter.run(ClipRequest(source=source_video, start=0.0, end=2.0))
        assert exporter.state == ExportState.CANCELLED
        assert exporter.progress.percent < 80


class TestExportSegment:
    def test_segment_times_are_parsed(self, source_video: Path):
        seg = ClipSegment(title="Opening", start="00:00", end="00:01", description="")
        result = export_segment(source_video, seg)
        assert result.content_frames == 30
        assert result.total_frames == 60
