"""Local vision-language captioning: model store, inference engine and batches."""

from .artifacts import ModelLifecycleManager
from .cancellation import CancellationToken
from .catalog import DEFAULT_CATALOG, ModelCatalog, ModelVariant, PromptFamily
from .engine import InferenceEngine, LoadedSession
from .errors import (
    BackendNotAvailableError,
    BatchInProgressError,
    CancellationSignal,
    CaptioningError,
    ConfigurationError,
    DownloadError,
    GenerationError,
    LoadError,
    NotPresentError,
    PreprocessingError,
    ValidationError,
)
from .orchestrator import CaptionOrchestrator
from .postprocess import clean_caption
from .preprocess import preprocess_image
from .types import (
    BatchSummary,
    CaptionJob,
    CaptionOutcome,
    CaptionProgress,
    DownloadProgress,
    ModelArtifactState,
    ModelInfo,
    PreprocessResult,
)

__all__ = [
    "BackendNotAvailableError",
    "BatchInProgressError",
    "BatchSummary",
    "CancellationSignal",
    "CancellationToken",
    "CaptionJob",
    "CaptionOrchestrator",
    "CaptionOutcome",
    "CaptionProgress",
    "CaptioningError",
    "ConfigurationError",
    "DEFAULT_CATALOG",
    "DownloadError",
    "DownloadProgress",
    "GenerationError",
    "InferenceEngine",
    "LoadError",
    "LoadedSession",
    "ModelArtifactState",
    "ModelCatalog",
    "ModelInfo",
    "ModelLifecycleManager",
    "ModelVariant",
    "NotPresentError",
    "PreprocessResult",
    "PreprocessingError",
    "PromptFamily",
    "ValidationError",
    "clean_caption",
    "preprocess_image",
]
