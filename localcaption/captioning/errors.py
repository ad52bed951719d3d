from __future__ import annotations

import asyncio


class CaptioningError(RuntimeError):
    """Base exception for model management and captioning failures."""


class ConfigurationError(CaptioningError):
    """Raised when a variant key is not present in the catalog."""


class NotPresentError(CaptioningError):
    """Raised when model artifacts are missing or corrupted."""


class DownloadError(CaptioningError):
    """Raised when an artifact transfer fails or is already in flight."""


class LoadError(CaptioningError):
    """Raised when a session cannot be constructed."""


class BackendNotAvailableError(LoadError):
    """Raised when the optional native inference dependency is missing."""


class ValidationError(CaptioningError):
    """Raised when a CaptionJob is malformed."""

    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class BatchInProgressError(CaptioningError):
    """Raised when a batch is started while another one is running."""


class PreprocessingError(CaptioningError):
    """Raised when an image cannot be validated or decoded."""


class GenerationError(CaptioningError):
    """Raised when inference fails part way through a caption."""


class CancellationSignal(asyncio.CancelledError):
    """Cooperative cancellation; never converted into a failed outcome."""
