"""Orchestrator: runs one clip export from source file to MP4 bytes."""

import logging
import threading
import time
from contextlib import closing
from enum import Enum
from pathlib import Path
from typing import Callable

from framecut import ffutil
from framecut.audio import AudioEncodeStage, iter_blocks, render_window
from framecut.config import ExportConfig
from framecut.errors import (
    ErrorKind,
    ExportCancelledError,
    ExportError,
)
from framecut.models import (
    ClipRequest,
    ClipSegment,
    EncodedChunk,
    ExportProgress,
    ExportResult,
    MediaProperties,
    StageWarning,
)
from framecut.muxer import ContainerMuxer
from framecut.sampler import FrameSampler
from framecut.video import VideoEncodeStage, frame_plan

logger = logging.getLogger(__name__)

VIDEO_SHARE = 80


class ExportState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ENCODING_VIDEO = "encoding_video"
    ENCODING_AUDIO = "encoding_audio"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {ExportState.DONE, ExportState.FAILED, ExportState.CANCELLED}


class ProgressTracker:
    """Holds the ExportProgress of one export and never lets it go backwards."""

    def __init__(self, on_progress: Callable[[int], None] | None = None):
        self._on_progress = on_progress
        self.current = ExportProgress()

    def reset(self, task: str = "") -> None:
        self.current = ExportProgress(percent=0, task=task)
        self._notify()

    def update(self, percent: int, task: str | None = None) -> None:
        percent = max(self.current.percent, min(100, int(percent)))
        changed = percent != self.current.percent
        self.current = ExportProgress(
            percent=percent,
            task=task if task is not None else self.current.task,
            error=self.current.error,
        )
        if changed:
            self._notify()

    def fail(self, message: str) -> None:
        self.current = ExportProgress(
            percent=self.current.percent, task=self.current.task, error=message
        )

    def _notify(self) -> None:
        if self._on_progress:
            self._on_progress(self.current.percent)


class ClipExporter:
    """Drives one export through Initializing, video, audio and finalizing.

    An exporter runs one request at a time. ``state``, ``progress`` and
    ``warnings`` are safe to read from a progress callback.
    """

    def __init__(
        self,
        config: ExportConfig | None = None,
        on_progress: Callable[[int], None] | None = None,
        cancel: threading.Event | None = None,
    ):
        self.config = config or ExportConfig()
        self._cancel = cancel
        self._tracker = ProgressTracker(on_progress)
        self.state = ExportState.IDLE
        self.warnings: list[StageWarning] = []

    @property
    def progress(self) -> ExportProgress:
        return self._tracker.current

    def run(self, request: ClipRequest, label: str = "") -> ExportResult:
        """Export *request* and return the finished container.

        Raises an ExportError subclass on fatal failures; recoverable ones
        end up in ``warnings`` and in the result.
        """
        if self.state not in TERMINAL_STATES and self.state != ExportState.IDLE:
            raise RuntimeError(f"Export already in progress ({self.state.value})")

        self.warnings = []
        self._tracker.reset(label)
        try:
            return self._run(request)
        except ExportCancelledError as e:
            self._set_state(ExportState.CANCELLED)
            self._tracker.fail(str(e))
            logger.info(f"Export of {request.source} cancelled")
            raise
        except ExportError as e:
            self._set_state(ExportState.FAILED)
            self._tracker.fail(e.user_message)
            logger.error(f"Export of {request.source} failed ({e.kind.value}): {e}")
            raise
        except BaseException:
            self._set_state(ExportState.FAILED)
            self._tracker.fail("Export failed")
            raise

    def _run(self, request: ClipRequest) -> ExportResult:
        cfg = self.config
        self._set_state(ExportState.INITIALIZING, "Loading source")
        request.validate()

        with closing(ffutil.open_source(request.source)) as source:
            props = ffutil.probe(source, frame_rate=cfg.fps)
            content_frames, total_frames = frame_plan(
                request.duration, cfg.fps, cfg.padding_frames
            )
            logger.info(
                f"Exporting {request.start:.3f}-{request.end:.3f}s of {request.source}: "
                f"{content_frames} content + {total_frames - content_frames} padding frames"
            )

            muxer = ContainerMuxer(props, cfg, has_audio=props.has_audio)
            try:
                self._encode_video(source, props, request, muxer, content_frames, total_frames)

                audio_samples = 0
                if props.has_audio:
                    audio_samples = self._encode_audio(request, muxer, total_frames / cfg.fps)
                else:
                    self._audio_failed(f"No audio stream in {request.source}; exporting video only")

                self._set_state(ExportState.FINALIZING, "Finalizing")
                data = muxer.finalize()
            finally:
                muxer.close()

        self._set_state(ExportState.DONE, "Done")
        self._tracker.update(100)
        return ExportResult(
            data=data,
            content_frames=content_frames,
            total_frames=total_frames,
            audio_samples=audio_samples,
            has_audio=audio_samples > 0,
            frame_rate=cfg.fps,
            warnings=list(self.warnings),
        )

    def _encode_video(
        self,
        source,
        props: MediaProperties,
        request: ClipRequest,
        muxer: ContainerMuxer,
        content_frames: int,
        total_frames: int,
    ) -> None:
        cfg = self.config
        self._set_state(ExportState.ENCODING_VIDEO, "Encoding video")
        stage = VideoEncodeStage(muxer.video_stream, total_frames, cfg, on_chunk=muxer.add_chunk)

        with FrameSampler(source, props, cfg) as sampler:
            sampler.prime(request.start)
            try:
                for index in range(total_frames):
                    self._check_cancelled()
                    if index % cfg.yield_every == 0:
                        self._yield()
                    self._tracker.update(
                        min(VIDEO_SHARE, round(index / content_frames * VIDEO_SHARE))
                    )
                    unit = sampler.sample(
                        index,
                        request.start + index / cfg.fps,
                        hold=index >= content_frames,
                    )
                    stage.encode(unit)
                stage.flush()
            finally:
                self.warnings.extend(sampler.warnings)
                self.warnings.extend(stage.warnings)

        self._tracker.update(VIDEO_SHARE)
        logger.info(f"Encoded {total_frames} frames into {stage.chunks_emitted} video chunks")

    def _encode_audio(self, request: ClipRequest, muxer: ContainerMuxer, duration: float) -> int:
        """Render and encode the audio window; returns the rendered sample count.

        Encoded chunks are held back until the whole stage has succeeded so a
        failure anywhere drops the track instead of leaving half of it.
        """
        cfg = self.config
        self._set_state(ExportState.ENCODING_AUDIO, "Encoding audio")
        pending: list[EncodedChunk] = []
        try:
            with closing(ffutil.open_source(request.source)) as source:
                buffer = render_window(
                    source, request.start, duration, cfg.sample_rate, cfg.channels
                )

            stage = AudioEncodeStage(muxer.audio_stream, cfg, on_chunk=pending.append)
            total = buffer.shape[1]
            for i, block in enumerate(iter_blocks(buffer, cfg.sample_rate, cfg.audio_chunk_seconds)):
                if i % 2 == 0:
                    self._tracker.update(
                        VIDEO_SHARE + round(block.offset / total * (100 - VIDEO_SHARE))
                    )
                    self._yield()
                stage.encode(block)
                self._check_cancelled()
            stage.flush()

            for chunk in pending:
                muxer.add_chunk(chunk)
        except ExportCancelledError:
            raise
        except Exception as e:
            self._audio_failed(f"Audio stage failed, exporting video only: {e}")
            return 0

        logger.info(f"Encoded {total} audio samples into {len(pending)} audio chunks")
        return total

    def _audio_failed(self, message: str) -> None:
        if self.config.strict:
            raise ExportError(message, kind=ErrorKind.AUDIO_STAGE_FAILURE)
        logger.warning(message)
        self.warnings.append(StageWarning(kind=ErrorKind.AUDIO_STAGE_FAILURE, message=message))

    def _set_state(self, state: ExportState, task: str | None = None) -> None:
        logger.debug(f"Export state {self.state.value} -> {state.value}")
        self.state = state
        if task is not None:
            self._tracker.update(self._tracker.current.percent, task)

    def _check_cancelled(self) -> None:
        if self._cancel is not None and self._cancel.is_set():
            raise ExportCancelledError("Export cancelled")

    def _yield(self) -> None:
        time.sleep(0)


def export_clip(
    source: str | Path,
    start: float,
    end: float,
    on_progress: Callable[[int], None] | None = None,
    config: ExportConfig | None = None,
) -> ExportResult:
    """Cut ``[start, end)`` out of *source* into a standalone MP4."""
    request = ClipRequest(source=Path(source), start=float(start), end=float(end))
    return ClipExporter(config, on_progress).run(request)


def export_segment(
    source: str | Path,
    segment: ClipSegment,
    on_progress: Callable[[int], None] | None = None,
    config: ExportConfig | None = None,
) -> ExportResult:
    """Export the time range of an annotated segment."""
    request = ClipRequest.from_segment(source, segment)
    return ClipExporter(config, on_progress).run(request, label=f"Preparing clip: {segment.title}")
