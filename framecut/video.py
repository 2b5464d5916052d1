"""Video encode stage: keyframe policy, frame planning and H.264 encoding."""

import logging
import math
from fractions import Fraction
from typing import Callable

import av
from av.error import FFmpegError
from av.video.frame import PictureType

from framecut.config import ExportConfig
from framecut.errors import ErrorKind, ExportError
from framecut.models import EncodedChunk, FrameUnit, StageWarning

logger = logging.getLogger(__name__)


def frame_plan(duration: float, fps: int = 30, padding_frames: int = 30) -> tuple[int, int]:
    """Return ``(content_frames, total_frames)`` for a clip of *duration* seconds.

    Content frames cover the requested window; the padding frames repeat the
    last image so a player that drops the tail of a stream only loses those.
    """
    # Round away float noise first so 10.0 * 30 never becomes 301 frames
    content = max(1, math.ceil(round(duration * fps, 6)))
    return content, content + padding_frames


def is_keyframe(index: int, total_frames: int, interval: int = 30) -> bool:
    return index % interval == 0 or index == total_frames - 1


def packet_micros(packet) -> int:
    if packet.pts is None or packet.time_base is None:
        return 0
    return round(float(packet.pts * packet.time_base) * 1e6)


class VideoEncodeStage:
    """Feeds FrameUnits to an encoder stream and forwards the packets.

    Frames must arrive in strictly increasing index order starting at zero.
    Presentation times come from each unit's ``timestamp_micros``, which must
    advance by at least one frame per unit.
    Codec errors are recorded as warnings and the frame is skipped, unless
    ``config.strict`` is set.
    """

    def __init__(
        self,
        stream,
        total_frames: int,
        config: ExportConfig,
        on_chunk: Callable[[EncodedChunk], None],
    ):
        self._stream = stream
        self._total_frames = total_frames
        self._config = config
        self._on_chunk = on_chunk
        self._time_base = Fraction(1, config.fps)
        self._next_index = 0
        self._last_pts = -1
        self.chunks_emitted = 0
        self.warnings: list[StageWarning] = []

    def encode(self, unit: FrameUnit) -> None:
        if unit.index != self._next_index:
            raise ValueError(
                f"Frame {unit.index} submitted out of order (expected {self._next_index})"
            )
        if unit.image is None:
            raise ValueError(f"Frame {unit.index} has no image (already released)")
        pts = round(unit.timestamp_micros / self._config.frame_duration_micros)
        if pts <= self._last_pts:
            raise ValueError(
                f"Frame {unit.index} at {unit.timestamp_micros}us does not advance the timeline"
            )

        unit.is_keyframe = is_keyframe(
            unit.index, self._total_frames, self._config.keyframe_interval
        )

        frame = av.VideoFrame.from_ndarray(unit.image, format="rgb24")
        unit.image = None
        frame = frame.reformat(format="yuv420p")
        frame.pts = pts
        frame.time_base = self._time_base
        if unit.is_keyframe:
            frame.pict_type = PictureType.I

        self._next_index += 1
        self._last_pts = pts
        self._encode(frame, unit.index)

    def flush(self) -> None:
        """Drain packets still buffered in the encoder."""
        self._encode(None, None)

    def _encode(self, frame, index: int | None) -> None:
        try:
            for packet in self._stream.encode(frame):
                self._emit(packet)
        except FFmpegError as e:
            where = "flush" if index is None else f"frame {index}"
            message = f"Video encoder error at {where}: {e}"
            if self._config.strict:
                raise ExportError(message, kind=ErrorKind.ENCODER_FAILURE) from e
            logger.warning(message)
            self.warnings.append(
                StageWarning(kind=ErrorKind.ENCODER_FAILURE, message=message, index=index)
            )

    def _emit(self, packet) -> None:
        chunk = EncodedChunk(
            track="video",
            timestamp_micros=packet_micros(packet),
            packet=packet,
            is_keyframe=packet.is_keyframe,
        )
        self._on_chunk(chunk)
        self.chunks_emitted += 1
