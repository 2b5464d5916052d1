"""Container muxer: a pre-configured fast-start MP4 sink."""

import logging
import shutil
import tempfile
from pathlib import Path

import av
from av.error import FFmpegError

from framecut.audio import layout_for
from framecut.config import ExportConfig
from framecut.errors import MuxFinalizeError, MuxSetupError
from framecut.models import EncodedChunk, MediaProperties

logger = logging.getLogger(__name__)


class ContainerMuxer:
    """Declares the output tracks up front and collects encoded chunks.

    The MP4 is written to a private scratch file because the fast-start pass
    has to re-read what was written; ``finalize`` returns its bytes and
    ``close`` removes it.
    """

    def __init__(self, props: MediaProperties, config: ExportConfig, has_audio: bool = True):
        self._config = config
        self._dir = Path(tempfile.mkdtemp(prefix="framecut_"))
        self.path = self._dir / "clip.mp4"
        self._finalized = False
        self._closed = False
        self.chunk_counts = {"video": 0, "audio": 0}

        try:
            self._container = av.open(
                str(self.path),
                mode="w",
                format="mp4",
                container_options={"movflags": "+faststart"},
            )
            self.video_stream = self._add_video(props)
            self.audio_stream = self._add_audio() if has_audio else None
        except (FFmpegError, ValueError) as e:
            shutil.rmtree(self._dir, ignore_errors=True)
            raise MuxSetupError(f"Cannot configure output container: {e}") from e

    def _add_video(self, props: MediaProperties):
        cfg = self._config
        stream = self._container.add_stream(cfg.video_codec, rate=cfg.fps)
        stream.width = props.width
        stream.height = props.height
        stream.pix_fmt = "yuv420p"
        stream.bit_rate = cfg.video_bitrate
        stream.codec_context.gop_size = cfg.keyframe_interval
        if stream.codec_context.name == "libx264":
            # Offline export: keep x264's default lookahead, make forced I-frames IDR
            stream.codec_context.options = {"forced-idr": "1"}
        logger.debug(
            f"Video track: {stream.codec_context.name} {props.width}x{props.height} "
            f"@ {cfg.fps} fps, {cfg.video_bitrate} bps"
        )
        return stream

    def _add_audio(self):
        cfg = self._config
        stream = self._container.add_stream(cfg.audio_codec, rate=cfg.sample_rate)
        stream.codec_context.layout = layout_for(cfg.channels)
        stream.codec_context.format = "fltp"
        stream.bit_rate = cfg.audio_bitrate
        logger.debug(
            f"Audio track: {stream.codec_context.name} {cfg.channels}ch @ {cfg.sample_rate} Hz"
        )
        return stream

    def add_chunk(self, chunk: EncodedChunk) -> None:
        if self._finalized:
            raise RuntimeError("Cannot add chunks to a finalized muxer")
        if chunk.track == "audio" and self.audio_stream is None:
            raise ValueError("Muxer was configured without an audio track")
        self._container.mux(chunk.packet)
        self.chunk_counts[chunk.track] += 1

    def finalize(self) -> bytes:
        """Write the trailer and return the finished container bytes.

        Both encoders must already be flushed.
        """
        if self._finalized:
            raise MuxFinalizeError("Muxer already finalized")
        self._finalized = True
        try:
            self._container.close()
            data = self.path.read_bytes()
        except (FFmpegError, OSError) as e:
            raise MuxFinalizeError(f"Failed to finalize container: {e}") from e
        if not data:
            raise MuxFinalizeError("Finalized container is empty")
        logger.info(
            f"Muxed {self.chunk_counts['video']} video and "
            f"{self.chunk_counts['audio']} audio chunks into {len(data)} bytes"
        )
        return data

    def close(self) -> None:
        """Release the container handle and scratch directory."""
        if self._closed:
            return
        self._closed = True
        if not self._finalized:
            try:
                self._container.close()
            except FFmpegError as e:
                logger.debug(f"Ignoring error while discarding unfinished container: {e}")
        shutil.rmtree(self._dir, ignore_errors=True)
