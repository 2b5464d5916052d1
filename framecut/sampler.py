"""Frame sampler: turns a seekable source into evenly spaced images."""

import concurrent.futures
import logging

import numpy as np
from av.error import FFmpegError

from framecut.config import ExportConfig
from framecut.errors import ErrorKind, ExportError
from framecut.models import FrameUnit, MediaProperties, StageWarning

logger = logging.getLogger(__name__)

# Targets further ahead than this are reached by seeking instead of decoding
# forward from the current position.
FORWARD_DECODE_WINDOW = 1.0


class FrameSampler:
    """Samples one image per output frame from a video stream.

    Decoding runs on a single worker thread so every wait on it can be
    bounded by ``config.seek_timeout``. When a wait times out the sampler
    keeps whatever is already on the working surface instead of failing,
    and the decoder catches up on the next call. Only the worker touches
    the container; only the caller touches the surface.
    """

    def __init__(self, container, props: MediaProperties, config: ExportConfig):
        self._container = container
        self._stream = container.streams.video[0]
        self._stream.thread_type = "AUTO"
        self._props = props
        self._config = config
        self._half_frame = 0.5 / config.fps
        self._origin = (
            float(self._stream.start_time * self._stream.time_base)
            if self._stream.start_time is not None and self._stream.time_base
            else 0.0
        )

        self._surface = np.empty((props.height, props.width, 3), dtype=np.uint8)
        self._surface[:] = config.fallback_color
        self._drawn = False

        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="framecut-decode"
        )
        # Worker-owned decode state
        self._frames = None
        self._current = None
        self._exhausted = False
        # Decodes whose wait timed out, keyed by the output frame they served
        self._late: list[tuple[int | None, concurrent.futures.Future]] = []

        self.warnings: list[StageWarning] = []

    def __enter__(self) -> "FrameSampler":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def surface(self) -> np.ndarray:
        return self._surface

    def prime(self, start: float) -> None:
        """Position the decoder at *start* ahead of the first sample."""
        self._collect_late()
        target = self._clamp(start)
        try:
            self._wait(self._executor.submit(self._decode_at, target), None)
        except (FFmpegError, ValueError, OSError) as e:
            logger.warning(f"Decoder warm-up at {target:.3f}s failed: {e}")

    def sample(self, index: int, target: float, hold: bool = False) -> FrameUnit:
        """Return the image for output frame *index*.

        With ``hold`` set, or when *target* lies past the end of the source,
        no decoding happens and the last drawn image is repeated.
        """
        timestamp = round(index * self._config.frame_duration_micros)
        self._collect_late()

        if not hold and target <= self._props.natural_duration:
            try:
                future = self._executor.submit(self._decode_at, self._clamp(target))
                frame = self._wait(future, index)
                if frame is not None:
                    self._draw(frame)
            except (FFmpegError, ValueError, OSError) as e:
                self._capture_failed(index, e)

        if not self._drawn:
            self._surface[:] = self._config.fallback_color

        return FrameUnit(index=index, timestamp_micros=timestamp, image=self._surface.copy())

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._late = []
        self._frames = None
        self._current = None

    def _clamp(self, target: float) -> float:
        return min(max(target, 0.0), self._props.natural_duration)

    def _wait(self, future: concurrent.futures.Future, index: int | None):
        try:
            return future.result(timeout=self._config.seek_timeout)
        except concurrent.futures.TimeoutError:
            logger.debug(f"Decoder not ready after {self._config.seek_timeout}s; reusing surface")
            self._late.append((index, future))
            return None

    def _collect_late(self) -> None:
        """Report decodes that failed after their wait had already timed out."""
        still_running = []
        for index, future in self._late:
            if not future.done():
                still_running.append((index, future))
                continue
            error = future.exception()
            if error is None:
                continue
            if index is None:
                logger.warning(f"Decoder warm-up failed after timing out: {error}")
            else:
                self._capture_failed(index, error, blank=False)
        self._late = still_running

    def _draw(self, frame) -> None:
        rgb = frame.reformat(
            width=self._props.width, height=self._props.height, format="rgb24"
        ).to_ndarray()
        np.copyto(self._surface, rgb)
        self._drawn = True

    def _capture_failed(self, index: int, error: BaseException, blank: bool = True) -> None:
        message = f"Frame {index} capture failed: {error}"
        if self._config.strict:
            raise ExportError(message, kind=ErrorKind.FRAME_CAPTURE_FAILURE) from error
        logger.warning(message)
        self.warnings.append(
            StageWarning(kind=ErrorKind.FRAME_CAPTURE_FAILURE, message=message, index=index)
        )
        # A late failure belongs to a frame that was already emitted
        if blank:
            self._surface[:] = self._config.fallback_color
            self._drawn = True

    # -- worker thread ----------------------------------------------------

    def _frame_time(self, frame, default: float) -> float:
        return frame.time - self._origin if frame.time is not None else default

    def _decode_at(self, target: float):
        """Return the first decodable frame at or after *target*."""
        current = self._current
        if current is not None:
            current_time = self._frame_time(current, target)
            if abs(current_time - target) <= self._half_frame:
                return current
            ahead = target - current_time
            if self._exhausted and ahead > 0:
                return current
            if not (0 < ahead <= FORWARD_DECODE_WINDOW):
                self._seek(target)
        elif self._frames is None:
            self._seek(target)

        try:
            for frame in self._frames:
                self._current = frame
                if self._frame_time(frame, target) >= target - self._half_frame:
                    break
            else:
                self._exhausted = True
        except Exception:
            # A generator that raised is finished; the next call seeks afresh
            self._reset_decoder()
            raise

        return self._current

    def _reset_decoder(self) -> None:
        self._frames = None
        self._current = None
        self._exhausted = False

    def _seek(self, target: float) -> None:
        offset = int((target + self._origin) / self._stream.time_base) if self._stream.time_base else 0
        self._container.seek(offset, stream=self._stream, backward=True)
        self._frames = self._container.decode(self._stream)
        self._exhausted = False
