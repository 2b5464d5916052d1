"""Export settings: the knobs shared by every pipeline stage."""

import json
from dataclasses import dataclass, fields
from pathlib import Path


@dataclass
class ExportConfig:
    """Encoding policy for a single clip export.

    The defaults produce a 30 fps H.264 track plus a stereo 44.1 kHz AAC
    track, with one second of frozen tail padding.
    """

    fps: int = 30
    padding_frames: int = 30
    keyframe_interval: int = 30
    video_codec: str = "h264"
    video_bitrate: int = 2_500_000
    audio_codec: str = "aac"
    audio_bitrate: int = 128_000
    sample_rate: int = 44100
    channels: int = 2
    audio_chunk_seconds: float = 0.5
    seek_timeout: float = 1.0
    yield_every: int = 5
    fallback_color: tuple[int, int, int] = (0, 0, 0)
    strict: bool = False

    @property
    def frame_duration_micros(self) -> float:
        return 1e6 / self.fps


def load_config(path: str | Path) -> ExportConfig:
    """Load an ExportConfig from a JSON file of overrides."""
    path = Path(path)
    data = json.loads(path.read_text())

    if not isinstance(data, dict):
        raise ValueError("Config file must contain a JSON object")

    known = {f.name for f in fields(ExportConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")

    if "fallback_color" in data:
        data["fallback_color"] = tuple(data["fallback_color"])

    return ExportConfig(**data)
