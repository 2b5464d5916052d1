"""Audio render stage: renders the clip window and feeds the AAC encoder."""

import logging
import math
from fractions import Fraction
from typing import Callable, Iterator

import av
import numpy as np

from framecut.config import ExportConfig
from framecut.errors import NoAudioStreamError
from framecut.models import AudioSampleBlock, EncodedChunk
from framecut.video import packet_micros

logger = logging.getLogger(__name__)


def layout_for(channels: int) -> str:
    return "mono" if channels == 1 else "stereo"


def window_samples(duration: float, sample_rate: int = 44100) -> int:
    return math.ceil(round(duration * sample_rate, 6))


def render_window(
    container,
    start: float,
    duration: float,
    sample_rate: int = 44100,
    channels: int = 2,
) -> np.ndarray:
    """Render ``[start, start + duration)`` of the first audio stream.

    Returns a planar float32 array of shape ``(channels, n)`` with
    ``n = ceil(duration * sample_rate)``. Whatever the source does not cover
    stays silent, so a short or truncated track still yields a full buffer.
    """
    stream = next(iter(container.streams.audio), None)
    if stream is None:
        raise NoAudioStreamError(f"No audio stream found in {container.name}")

    total = window_samples(duration, sample_rate)
    out = np.zeros((channels, total), dtype=np.float32)
    first = round(start * sample_rate)
    origin = (
        float(stream.start_time * stream.time_base)
        if stream.start_time is not None and stream.time_base
        else 0.0
    )

    if start > 0:
        container.seek(int((start + origin) * av.time_base), backward=True)

    resampler = av.AudioResampler(
        format="fltp", layout=layout_for(channels), rate=sample_rate
    )

    cursor = None  # absolute position of the next resampled sample
    for frame in container.decode(stream):
        if cursor is None:
            frame_time = frame.time - origin if frame.time is not None else 0.0
            cursor = round(frame_time * sample_rate)
        for rendered in resampler.resample(frame):
            cursor = _place(out, rendered.to_ndarray(), cursor - first) + first
        if cursor - first >= total:
            break
    else:
        if cursor is not None:
            for rendered in resampler.resample(None):
                cursor = _place(out, rendered.to_ndarray(), cursor - first) + first

    if cursor is None:
        logger.warning(f"Audio stream in {container.name} produced no samples")
    return out


def _place(out: np.ndarray, data: np.ndarray, position: int) -> int:
    """Copy *data* into *out* at *position*, clipping to the buffer."""
    count = data.shape[1]
    lo = max(position, 0)
    hi = min(position + count, out.shape[1])
    if hi > lo:
        out[:, lo:hi] = data[:, lo - position:hi - position]
    return position + count


def iter_blocks(
    buffer: np.ndarray,
    sample_rate: int = 44100,
    chunk_seconds: float = 0.5,
) -> Iterator[AudioSampleBlock]:
    """Yield interleaved blocks of ``chunk_seconds`` from a planar buffer."""
    channels, total = buffer.shape
    chunk = int(sample_rate * chunk_seconds)
    for offset in range(0, total, chunk):
        part = buffer[:, offset:offset + chunk]
        yield AudioSampleBlock(
            samples=np.ascontiguousarray(part.T, dtype=np.float32).reshape(-1),
            frame_count=part.shape[1],
            offset=offset,
            timestamp_micros=round(offset / sample_rate * 1e6),
            sample_rate=sample_rate,
            channels=channels,
        )


class AudioEncodeStage:
    """Encodes AudioSampleBlocks and hands the packets to *on_chunk*.

    Errors propagate: a failing audio path drops the whole track, which is
    the caller's decision to make.
    """

    def __init__(self, stream, config: ExportConfig, on_chunk: Callable[[EncodedChunk], None]):
        self._stream = stream
        self._config = config
        self._on_chunk = on_chunk
        self._time_base = Fraction(1, config.sample_rate)

    def encode(self, block: AudioSampleBlock) -> None:
        frame = av.AudioFrame.from_ndarray(
            block.samples.reshape(1, -1),
            format="flt",
            layout=layout_for(block.channels),
        )
        frame.sample_rate = block.sample_rate
        frame.pts = block.offset
        frame.time_base = self._time_base
        self._mux(self._stream.encode(frame))

    def flush(self) -> None:
        self._mux(self._stream.encode(None))

    def _mux(self, packets) -> None:
        for packet in packets:
            self._on_chunk(
                EncodedChunk(track="audio", timestamp_micros=packet_micros(packet), packet=packet)
            )
