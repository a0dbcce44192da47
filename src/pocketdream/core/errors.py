"""Exception hierarchy for the PocketDream pipeline.

Every error raised on purpose by the pipeline derives from
:class:`PocketDreamError` so host code can catch the whole family at once,
while still telling the outcomes apart:

==========================  ==================================================
Exception                   Meaning
==========================  ==================================================
ConfigurationError          Missing model files or unusable model metadata.
NoModelLoadedError          ``generate`` called with no resident networks.
BusyError                   A generation is already running on this instance.
GenerationCancelledError    The caller cancelled the generation.
InferenceError              A session invocation failed mid-generation.
PreviewError                A preview decode failed (always handled locally).
ImageNotFoundError          The image store has no image with that id.
==========================  ==================================================
"""

from __future__ import annotations


class PocketDreamError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(PocketDreamError):
    """Model directory or model metadata cannot be used.

    Raised before any network call happens.  Never worth retrying.
    """

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing: list[str] = missing or []


class NoModelLoadedError(PocketDreamError):
    """The text encoder, noise predictor or image decoder is not resident."""


class BusyError(PocketDreamError):
    """Another generation owns this instance; retry later."""


class GenerationCancelledError(PocketDreamError):
    """The generation was cancelled by the caller."""


class InferenceError(PocketDreamError):
    """A network invocation failed and the generation was aborted."""


class PreviewError(PocketDreamError):
    """A preview could not be produced.  Never escapes the denoising loop."""


class ImageNotFoundError(PocketDreamError):
    """No stored image matches the requested identifier."""
