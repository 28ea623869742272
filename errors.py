"""
Crowd Count — Error Taxonomy
============================

    InferenceError   transport / timeout / non-2xx from the detection service
    RenderError      one detection or one frame could not be drawn
    CapacityError    live queue full, frame dropped at submission
    ExtractionError  ffmpeg could not split the video into frames
    ReassemblyError  ffmpeg could not rebuild the annotated video

Render errors never leave renderer.py.  Capacity errors are a synchronous
rejection, not a processing failure.  Extraction and reassembly errors are
fatal to a video job.
"""


class CrowdCountError(Exception):
    """Base class for every error raised by this service."""


class InferenceError(CrowdCountError):
    """The external detection service could not produce a result."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# The transport layer is the only source of inference failures.
TransportError = InferenceError


class RenderError(CrowdCountError):
    pass


class CapacityError(CrowdCountError):
    """Raised by the dispatch scheduler when the pending queue is full."""

    def __init__(self, message: str = "Server busy, frame dropped"):
        super().__init__(message)


class VideoJobError(CrowdCountError):
    """A failure that aborts an entire video job."""


class ExtractionError(VideoJobError):
    pass


class ReassemblyError(VideoJobError):
    pass
