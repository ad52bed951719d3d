from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

import pytest

from localcaption.captioning.artifacts import ModelLifecycleManager
from localcaption.captioning.backends.base import InferenceBackend
from localcaption.captioning.catalog import ModelCatalog, ModelVariant, PromptFamily
from localcaption.captioning.errors import LoadError


def make_variant(
    key: str,
    family: PromptFamily = PromptFamily.VICUNA,
    *,
    weights_size: int = 1000,
    projector_size: int = 200,
) -> ModelVariant:
    return ModelVariant(
        key=key,
        display_name=key.upper(),
        description=f"{key} test model",
        weights_file=f"{key}.gguf",
        weights_url=f"https://models.test/{key}/{key}.gguf",
        weights_size=weights_size,
        projector_file=f"{key}-mmproj.gguf",
        projector_url=f"https://models.test/{key}/{key}-mmproj.gguf",
        projector_size=projector_size,
        family=family,
    )


def write_artifacts(manager: ModelLifecycleManager, key: str, ratio: float = 1.0) -> None:
    variant = manager.variant(key)
    variant.weights_path(manager.models_dir).write_bytes(
        b"w" * int(variant.weights_size * ratio)
    )
    variant.projector_path(manager.models_dir).write_bytes(b"p" * variant.projector_size)


class FakeBackend(InferenceBackend):
    """In-memory backend recording every handle it builds and releases."""

    name = "fake"

    def __init__(
        self,
        fragments: Optional[Sequence[str]] = None,
        *,
        gpu: bool = True,
        fail_on: Optional[str] = None,
    ) -> None:
        self.fragments = list(fragments if fragments is not None else ["A red ", "car ", "parked"])
        self.gpu = gpu
        self.fail_on = fail_on
        self.built: List[Any] = []
        self.released: List[Any] = []
        self.prompts: List[str] = []
        self.gpu_layers_seen: List[int] = []
        self.generate_kwargs: List[dict] = []
        self.on_generate = None

    def supports_gpu_offload(self) -> bool:
        return self.gpu

    def _build(self, kind: str, path_name: str) -> Any:
        if self.fail_on == kind:
            raise LoadError(f"{kind} failed")
        handle = (kind, path_name)
        self.built.append(handle)
        return handle

    def load_weights(self, path: Path, *, gpu_layers: int, context_size: int) -> Any:
        self.gpu_layers_seen.append(gpu_layers)
        return self._build("weights", Path(path).name)

    def create_context(self, weights: Any, *, context_size: int) -> Any:
        return self._build("context", weights[1])

    def load_projector(self, weights: Any, context: Any, path: Path) -> Any:
        return self._build("projector", Path(path).name)

    def release(self, handle: Any) -> None:
        if handle is not None:
            self.released.append(handle)

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
        self.prompts.append(prompt)
        self.generate_kwargs.append(
            {"temperature": temperature, "max_tokens": max_tokens, "stop": tuple(stop)}
        )
        if self.on_generate is not None:
            self.on_generate(prompt)
        return iter(list(self.fragments))


@pytest.fixture
def catalog() -> ModelCatalog:
    return ModelCatalog(
        [
            make_variant("tiny-llava", PromptFamily.VICUNA),
            make_variant("tiny-qwen", PromptFamily.CHATML),
        ]
    )


@pytest.fixture
def manager(tmp_path: Path, catalog: ModelCatalog) -> ModelLifecycleManager:
    return ModelLifecycleManager(tmp_path / "models", catalog, progress_interval=0.0)
