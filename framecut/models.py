"""Shared data types used across framecut."""

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from framecut.errors import ErrorKind, InvalidRequestError
from framecut.timeutil import parse_time


@dataclass(frozen=True)
class ClipSegment:
    """A titled time range supplied by an external annotation source."""

    title: str
    start: str
    end: str
    description: str = ""


@dataclass(frozen=True)
class ClipRequest:
    """A [start, end) window to cut out of ``source``."""

    source: Path
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    def validate(self) -> None:
        if not (math.isfinite(self.start) and math.isfinite(self.end)):
            raise InvalidRequestError(
                f"Clip bounds must be finite (start={self.start}, end={self.end})"
            )
        if self.start < 0:
            raise InvalidRequestError(f"Clip start must be >= 0, got {self.start}")
        if self.end <= self.start:
            raise InvalidRequestError(
                f"Clip end ({self.end}) must be greater than start ({self.start})"
            )

    @classmethod
    def from_segment(cls, source: str | Path, segment: ClipSegment) -> "ClipRequest":
        return cls(
            source=Path(source),
            start=parse_time(segment.start),
            end=parse_time(segment.end),
        )


@dataclass(frozen=True)
class MediaProperties:
    """Metadata read once from the source before encoding starts.

    ``width`` and ``height`` are already rounded down to even values so they
    can be handed straight to an H.264 encoder.
    """

    width: int
    height: int
    natural_duration: float
    frame_rate: int = 30
    has_audio: bool = False
    source_width: int = 0
    source_height: int = 0
    codec_video: str = ""
    codec_audio: str | None = None


@dataclass
class FrameUnit:
    """One sampled image, owned by whoever holds it until it is encoded."""

    index: int
    timestamp_micros: int
    image: np.ndarray | None
    is_keyframe: bool = False


@dataclass
class EncodedChunk:
    """A compressed access unit on its way to the muxer."""

    track: str
    timestamp_micros: int
    packet: Any
    is_keyframe: bool = False

    @property
    def payload(self) -> bytes:
        return bytes(self.packet)


@dataclass
class AudioSampleBlock:
    """A fixed-length run of interleaved float32 samples."""

    samples: np.ndarray
    frame_count: int
    offset: int
    timestamp_micros: int
    sample_rate: int = 44100
    channels: int = 2


@dataclass
class ExportProgress:
    percent: int = 0
    task: str = ""
    error: str | None = None


@dataclass
class StageWarning:
    """A recoverable failure on a single frame, chunk or stage."""

    kind: ErrorKind
    message: str
    index: int | None = None


@dataclass
class ExportResult:
    data: bytes
    content_frames: int = 0
    total_frames: int = 0
    audio_samples: int = 0
    has_audio: bool = False
    frame_rate: int = 30
    warnings: list[StageWarning] = field(default_factory=list)

    @property
    def total_duration(self) -> float:
        return self.total_frames / self.frame_rate
