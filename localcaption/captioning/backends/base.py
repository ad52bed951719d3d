from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterator, Sequence


class InferenceBackend(ABC):
    """Native runtime that builds session handles and streams text from them.

    Every method is blocking; the engine calls them from a worker thread.
    Handles are opaque to the engine and are only passed back to the backend.
    """

    name: str

    @abstractmethod
    def supports_gpu_offload(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def load_weights(self, path: Path, *, gpu_layers: int, context_size: int) -> Any:
        raise NotImplementedError

    @abstractmethod
    def create_context(self, weights: Any, *, context_size: int) -> Any:
        raise NotImplementedError

    @abstractmethod
    def load_projector(self, weights: Any, context: Any, path: Path) -> Any:
        raise NotImplementedError

    @abstractmethod
    def release(self, handle: Any) -> None:
        """Free a handle. Must tolerate ``None`` and repeated calls."""
        raise NotImplementedError

    @abstractmethod
    def generate(
        self,
        weights: Any,
        context: Any,
        projector: Any,
        prompt: str,
        image: bytes,
        *,
        temperature: float,
        max_tokens: int,
        stop: Sequence[str],
    ) -> Iterator[str]:
        raise NotImplementedError
