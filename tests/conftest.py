"""Shared test fixtures."""

from fractions import Fraction
from pathlib import Path

import av
import numpy as np
import pytest

COLORS = [(0, 0, 255), (255, 0, 0), (0, 255, 0), (255, 255, 0)]


def write_source(
    path: Path,
    duration: float = 3.0,
    fps: int = 30,
    size: tuple[int, int] = (320, 240),
    audio: bool = True,
    sample_rate: int = 44100,
) -> Path:
    """Write a small synthetic MP4: one solid color per second plus a 440 Hz tone."""
    width, height = size
    with av.open(str(path), mode="w") as container:
        video = container.add_stream("mpeg4", rate=fps)
        video.width = width
        video.height = height
        video.pix_fmt = "yuv420p"

        stream = None
        if audio:
            stream = container.add_stream("aac", rate=sample_rate)
            stream.codec_context.layout = "stereo"
            stream.codec_context.format = "fltp"

        for i in range(int(duration * fps)):
            color = COLORS[(i // fps) % len(COLORS)]
            image = np.empty((height, width, 3), dtype=np.uint8)
            image[:] = color
            frame = av.VideoFrame.from_ndarray(image, format="rgb24")
            frame.pts = i
            frame.time_base = Fraction(1, fps)
            container.mux(video.encode(frame))
        container.mux(video.encode(None))

        if stream is not None:
            total = int(duration * sample_rate)
            step = 1024
            for offset in range(0, total, step):
                n = min(step, total - offset)
                t = (np.arange(offset, offset + n) / sample_rate).astype(np.float32)
                tone = 0.5 * np.sin(2 * np.pi * 440 * t).astype(np.float32)
                frame = av.AudioFrame.from_ndarray(
                    np.stack([tone, tone]), format="fltp", layout="stereo"
                )
                frame.sample_rate = sample_rate
                frame.pts = offset
                frame.time_base = Fraction(1, sample_rate)
                container.mux(stream.encode(frame))
            container.mux(stream.encode(None))
    return path


@pytest.fixture
def source_video(tmp_path: Path) -> Path:
    return write_source(tmp_path / "source.mp4")


@pytest.fixture
def silent_video(tmp_path: Path) -> Path:
    return write_source(tmp_path / "silent.mp4", audio=False)
