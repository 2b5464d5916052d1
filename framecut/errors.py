"""Error taxonomy for clip export."""

from enum import Enum


USER_MESSAGE = "Export failed. Your environment may lack required video capabilities."


class ErrorKind(str, Enum):
    INVALID_REQUEST = "InvalidRequest"
    INVALID_SOURCE = "InvalidSource"
    FRAME_CAPTURE_FAILURE = "FrameCaptureFailure"
    ENCODER_FAILURE = "EncoderFailure"
    AUDIO_STAGE_FAILURE = "AudioStageFailure"
    MUX_SETUP_FAILURE = "MuxSetupFailure"
    MUX_FINALIZE_FAILURE = "MuxFinalizeFailure"
    CANCELLED = "Cancelled"


class ExportError(RuntimeError):
    """A fatal export failure. ``kind`` says which stage gave up."""

    kind: ErrorKind = ErrorKind.ENCODER_FAILURE

    def __init__(self, message: str, kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def user_message(self) -> str:
        return USER_MESSAGE


class InvalidRequestError(ExportError, ValueError):
    """Raised when end <= start or the window is otherwise unusable."""

    kind = ErrorKind.INVALID_REQUEST


class InvalidSourceError(ExportError):
    """Raised when the source reports no usable dimensions or duration."""

    kind = ErrorKind.INVALID_SOURCE


class MuxSetupError(ExportError):
    """Raised when the output container or its tracks cannot be configured."""

    kind = ErrorKind.MUX_SETUP_FAILURE


class MuxFinalizeError(ExportError):
    kind = ErrorKind.MUX_FINALIZE_FAILURE


class ExportCancelledError(ExportError):
    kind = ErrorKind.CANCELLED


class NoAudioStreamError(ValueError):
    """Raised when the input file has no audio stream."""
    pass
