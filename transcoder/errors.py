"""Failure types raised by the transcode pipeline.

Each error carries a ``retryable`` flag that the worker pool hands to the job
queue. Input and persistence errors are terminal; transcode and storage errors
may be re-attempted by the durable backend.
"""


class PipelineError(RuntimeError):
    retryable = True

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.stage = stage


class InputError(PipelineError):
    """Temp file missing, empty, or not a supported audio type."""

    retryable = False


class TranscodeError(PipelineError):
    """ffmpeg exited non-zero or produced no output."""


class StorageError(PipelineError):
    """An artifact could not be written to or removed from the blob store."""


class TrackAlreadyMaterialized(PipelineError):
    """A Track with this id already exists; needs manual cleanup."""

    retryable = False

    def __init__(self, track_id: str):
        super().__init__(
            f"Track {track_id} already exists; manual cleanup required before reprocessing",
            stage="create-track",
        )
        self.track_id = track_id


class QueueFullError(RuntimeError):
    """The in-process queue has reached its bound."""


def is_retryable(exc: BaseException) -> bool:
    return getattr(exc, "retryable", True)
