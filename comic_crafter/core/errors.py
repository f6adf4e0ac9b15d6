from typing import Optional


class ComicGenerationError(Exception):
    """Base class for every failure raised by the comic pipeline."""


class EmptyResponse(ComicGenerationError):
    """The text model returned no content."""
    def __init__(self, message: str, finish_reason: Optional[str] = None):
        super().__init__(message)
        self.finish_reason = finish_reason


class MalformedResponse(ComicGenerationError):
    """The text model answered, but not in the structured format we asked for."""
    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class ImageGenerationError(ComicGenerationError):
    pass


class ImageGenerationBlocked(ImageGenerationError):
    """The image model refused the request on safety grounds."""


class ImageGenerationFailed(ImageGenerationError):
    """The image model returned no image. The message carries its explanation, if any."""


class ConsistencyFailure(ComicGenerationError):
    """A panel used up its attempts without every character matching its reference."""
    def __init__(self, panel_key: str, reason: str):
        super().__init__(f"Panel {panel_key} failed consistency verification: {reason}")
        self.panel_key = panel_key
        self.reason = reason


class RestoreError(ComicGenerationError):
    pass


class PipelineError(ComicGenerationError):
    """A command was issued that the pipeline cannot honour in its current state."""


class RunCancelled(PipelineError):
    """The active run was abandoned while it waited for a human decision."""
