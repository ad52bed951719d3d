from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError

DEFAULT_SYSTEM_PROMPT = "Describe the image using 100 English words"
DEFAULT_TEMPERATURE = 0.7
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0


class ModelArtifactState(str, enum.Enum):
    """On-demand view of a variant's artifacts; never persisted."""

    NOT_PRESENT = "not_present"
    DOWNLOADING = "downloading"
    PRESENT = "present"
    CORRUPTED = "corrupted"
    LOADED = "loaded"

    @property
    def is_usable(self) -> bool:
        return self in (ModelArtifactState.PRESENT, ModelArtifactState.LOADED)


@dataclass(frozen=True)
class DownloadProgress:
    bytes_done: int
    bytes_total: int
    message: str

    @property
    def percentage(self) -> float:
        """Download progress in percent, or -1 when the total is unknown."""
        if self.bytes_total <= 0:
            return -1.0
        return min(100.0, self.bytes_done / self.bytes_total * 100.0)


@dataclass(frozen=True)
class ModelInfo:
    key: str
    display_name: str
    description: str
    state: ModelArtifactState
    local_path: str
    size_bytes: int
    expected_size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.key,
            "displayName": self.display_name,
            "description": self.description,
            "state": self.state.value,
            "localPath": self.local_path,
            "sizeBytes": self.size_bytes,
            "expectedSizeBytes": self.expected_size_bytes,
        }


@dataclass(frozen=True)
class PreprocessResult:
    ok: bool
    data: Optional[bytes] = None
    width: int = 0
    height: int = 0
    was_resized: bool = False
    error: Optional[str] = None

    @classmethod
    def succeeded(
        cls, data: bytes, width: int, height: int, was_resized: bool
    ) -> "PreprocessResult":
        return cls(True, data, width, height, was_resized)

    @classmethod
    def failed(cls, error: str) -> "PreprocessResult":
        return cls(False, error=error)


@dataclass(frozen=True)
class CaptionJob:
    """One batch request. Paths are processed in the given order."""

    image_paths: Tuple[str, ...]
    variant_key: str
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    trigger_word: Optional[str] = None
    blacklist: Tuple[str, ...] = ()
    output_dir: Optional[str] = None
    overwrite: bool = False
    temperature: float = DEFAULT_TEMPERATURE

    def __post_init__(self) -> None:
        # Accept any iterable from callers but store immutable tuples.
        object.__setattr__(
            self, "image_paths", tuple(str(p) for p in (self.image_paths or ()))
        )
        object.__setattr__(
            self, "blacklist", tuple(str(w) for w in (self.blacklist or ()))
        )

    def validate(self) -> List[str]:
        errors: List[str] = []
        if not self.image_paths:
            errors.append("At least one image path is required.")
        elif any(not p.strip() for p in self.image_paths):
            errors.append("Image paths must be non-empty.")
        if not (self.variant_key or "").strip():
            errors.append("A model variant must be selected.")
        if not (self.system_prompt or "").strip():
            errors.append("System prompt cannot be empty.")
        try:
            temperature = float(self.temperature)
        except (TypeError, ValueError):
            errors.append("Temperature must be a number.")
        else:
            if not MIN_TEMPERATURE <= temperature <= MAX_TEMPERATURE:
                errors.append(
                    f"Temperature must be between {MIN_TEMPERATURE} and {MAX_TEMPERATURE}."
                )
        return errors

    def ensure_valid(self) -> None:
        errors = self.validate()
        if errors:
            raise ValidationError(errors)


@dataclass(frozen=True)
class CaptionOutcome:
    success: bool
    image_path: str
    caption: Optional[str] = None
    output_path: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None

    @classmethod
    def succeeded(
        cls, image_path: str, caption: str, output_path: Optional[str] = None
    ) -> "CaptionOutcome":
        return cls(True, image_path, caption=caption, output_path=output_path)

    @classmethod
    def failed(cls, image_path: str, error: str) -> "CaptionOutcome":
        return cls(False, image_path, error=error)

    @classmethod
    def skipped_because(cls, image_path: str, reason: str) -> "CaptionOutcome":
        return cls(True, image_path, skipped=True, skip_reason=reason)

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "succeeded" if self.success else "failed"


@dataclass(frozen=True)
class CaptionProgress:
    index: int
    total: int
    image_path: str
    status: str
    outcome: Optional[CaptionOutcome] = None

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.index / self.total * 100.0


@dataclass
class BatchSummary:
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    failures: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_outcomes(cls, outcomes: List[CaptionOutcome]) -> "BatchSummary":
        summary = cls()
        for outcome in outcomes:
            if outcome.skipped:
                summary.skipped += 1
            elif outcome.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.failures[outcome.image_path] = outcome.error or ""
        return summary

    def __str__(self) -> str:
        return (
            f"{self.succeeded} succeeded, {self.skipped} skipped, {self.failed} failed"
        )
