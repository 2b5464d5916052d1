"""PyAV helpers for opening and probing source media."""

import logging
from pathlib import Path

import av
from av.error import FFmpegError

from framecut.errors import InvalidSourceError
from framecut.models import MediaProperties

logger = logging.getLogger(__name__)


def even(value: int) -> int:
    """Round a pixel dimension down to the nearest even number."""
    return value - (value % 2)


def open_source(input_path: str | Path) -> "av.container.InputContainer":
    """Open a media file for demuxing, mapping failures to InvalidSourceError."""
    try:
        return av.open(str(input_path))
    except (FFmpegError, OSError) as e:
        raise InvalidSourceError(f"Cannot open {input_path}: {e}") from e


def _duration(container, stream) -> float | None:
    if stream.duration is not None and stream.time_base is not None:
        return float(stream.duration * stream.time_base)
    if container.duration is not None:
        return container.duration / av.time_base
    return None


def probe(container, frame_rate: int = 30) -> MediaProperties:
    """Extract media metadata from an opened container.

    Raises InvalidSourceError if there is no video stream or if its
    dimensions or duration are unusable.
    """
    video_stream = next(iter(container.streams.video), None)
    audio_stream = next(iter(container.streams.audio), None)

    if video_stream is None:
        raise InvalidSourceError(f"No video stream found in {container.name}")

    width = video_stream.codec_context.width or 0
    height = video_stream.codec_context.height or 0
    duration = _duration(container, video_stream)

    if even(width) <= 0 or even(height) <= 0:
        raise InvalidSourceError(
            f"Invalid video dimensions {width}x{height} in {container.name}"
        )
    if duration is None or duration <= 0:
        raise InvalidSourceError(f"Unknown or empty duration in {container.name}")

    props = MediaProperties(
        width=even(width),
        height=even(height),
        natural_duration=duration,
        frame_rate=frame_rate,
        has_audio=audio_stream is not None,
        source_width=width,
        source_height=height,
        codec_video=video_stream.codec_context.name,
        codec_audio=audio_stream.codec_context.name if audio_stream else None,
    )
    logger.debug(
        f"Probed {container.name}: {props.codec_video} {width}x{height} -> "
        f"{props.width}x{props.height}, {duration:.3f}s, audio={props.codec_audio}"
    )
    return props
