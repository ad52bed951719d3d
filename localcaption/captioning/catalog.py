from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ConfigurationError

IMAGE_PLACEHOLDER = "<image>"
INSTRUCTION_SLOT = "{instruction}"


class PromptFamily(enum.Enum):
    """Prompt format shared by a model family, with its stop sequences."""

    VICUNA = (
        "A chat between a curious user and an artificial intelligence assistant. "
        "The assistant gives helpful, detailed, and polite answers to the user's questions.\n"
        "USER: <image>\n"
        "{instruction}\n"
        "ASSISTANT:",
        ("USER:", "</s>"),
    )
    CHATML = (
        "<|im_start|>system\n"
        "You are a helpful assistant.<|im_end|>\n"
        "<|im_start|>user\n"
        "<image>\n"
        "{instruction}<|im_end|>\n"
        "<|im_start|>assistant\n",
        ("<|im_end|>", "<|im_start|>", "<|endoftext|>"),
    )

    @property
    def template(self) -> str:
        return self.value[0]

    @property
    def stop_sequences(self) -> Tuple[str, ...]:
        return self.value[1]

    def render(self, instruction: str) -> str:
        # str.replace keeps user braces intact, unlike str.format.
        return self.template.replace(INSTRUCTION_SLOT, (instruction or "").strip())


@dataclass(frozen=True)
class ModelVariant:
    """One quantized checkpoint plus the multimodal projector it needs."""

    key: str
    display_name: str
    description: str

    weights_file: str
    weights_url: str
    weights_size: int

    projector_file: str
    projector_url: str
    projector_size: int

    family: PromptFamily

    @property
    def stop_sequences(self) -> Tuple[str, ...]:
        return self.family.stop_sequences

    @property
    def total_size(self) -> int:
        return int(self.weights_size) + int(self.projector_size)

    def render_prompt(self, instruction: str) -> str:
        return self.family.render(instruction)

    def weights_path(self, models_dir: Path | str) -> Path:
        return Path(models_dir) / self.weights_file

    def projector_path(self, models_dir: Path | str) -> Path:
        return Path(models_dir) / self.projector_file


_HF = "https://huggingface.co"

DEFAULT_VARIANTS: Tuple[ModelVariant, ...] = (
    ModelVariant(
        key="llava-v1.6-34b",
        display_name="LLaVA v1.6 34B",
        description=(
            "High quality vision-language model. Excellent for detailed descriptions. "
            "Requires ~20GB disk space and significant GPU VRAM."
        ),
        weights_file="llava-v1.6-34b.Q4_K_M.gguf",
        weights_url=f"{_HF}/cjpais/llava-v1.6-34b-gguf/resolve/main/llava-v1.6-34b.Q4_K_M.gguf",
        weights_size=20_000_000_000,
        projector_file="mmproj-model-f16.gguf",
        projector_url=f"{_HF}/cjpais/llava-v1.6-34b-gguf/resolve/main/mmproj-model-f16.gguf",
        projector_size=600_000_000,
        family=PromptFamily.VICUNA,
    ),
    ModelVariant(
        key="qwen2.5-vl-7b",
        display_name="Qwen 2.5 VL 7B",
        description=(
            "Efficient vision-language model with strong performance. Good balance of "
            "quality and resource usage. Requires ~5GB disk space."
        ),
        weights_file="Qwen2.5-VL-7B-Instruct-Q4_K_M.gguf",
        weights_url=(
            f"{_HF}/bartowski/Qwen2.5-VL-7B-Instruct-GGUF/resolve/main/"
            "Qwen2.5-VL-7B-Instruct-Q4_K_M.gguf"
        ),
        weights_size=5_000_000_000,
        projector_file="Qwen2.5-VL-7B-Instruct-mmproj-f16.gguf",
        projector_url=(
            f"{_HF}/bartowski/Qwen2.5-VL-7B-Instruct-GGUF/resolve/main/"
            "Qwen2.5-VL-7B-Instruct-mmproj-f16.gguf"
        ),
        projector_size=1_500_000_000,
        family=PromptFamily.CHATML,
    ),
    ModelVariant(
        key="qwen3-vl-8b",
        display_name="Qwen 3 VL 8B",
        description=(
            "Most powerful Qwen VLM. Features 256K context, visual agent capabilities, "
            "3D grounding, and 32-language OCR. Requires ~5.5GB disk space."
        ),
        weights_file="Qwen3-VL-8B-Instruct-Q4_K_M.gguf",
        weights_url=(
            f"{_HF}/Qwen/Qwen3-VL-8B-Instruct-GGUF/resolve/main/"
            "Qwen3-VL-8B-Instruct-Q4_K_M.gguf"
        ),
        weights_size=5_500_000_000,
        projector_file="Qwen3-VL-8B-Instruct-mmproj-f16.gguf",
        projector_url=(
            f"{_HF}/Qwen/Qwen3-VL-8B-Instruct-GGUF/resolve/main/"
            "Qwen3-VL-8B-Instruct-mmproj-f16.gguf"
        ),
        projector_size=1_600_000_000,
        family=PromptFamily.CHATML,
    ),
)


def _normalize_key(key: Optional[str]) -> str:
    return (key or "").strip().lower()


class ModelCatalog:
    """Read-only registry of known model variants, keyed by variant key."""

    def __init__(self, variants: Optional[Iterable[ModelVariant]] = None) -> None:
        entries = tuple(DEFAULT_VARIANTS if variants is None else variants)
        self._variants: Dict[str, ModelVariant] = {}
        for variant in entries:
            key = _normalize_key(variant.key)
            if not key:
                raise ConfigurationError("variant key must be non-empty")
            if key in self._variants:
                raise ConfigurationError(f"Duplicate variant key {variant.key!r}")
            self._variants[key] = variant

    def get(self, key: str) -> ModelVariant:
        variant = self._variants.get(_normalize_key(key))
        if variant is None:
            raise ConfigurationError(
                f"Unknown model variant {key!r}. Available: {', '.join(self.keys())}"
            )
        return variant

    def keys(self) -> List[str]:
        return [variant.key for variant in self._variants.values()]

    def variants(self) -> List[ModelVariant]:
        return list(self._variants.values())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and _normalize_key(key) in self._variants

    def __iter__(self) -> Iterator[ModelVariant]:
        return iter(self.variants())

    def __len__(self) -> int:
        return len(self._variants)


DEFAULT_CATALOG = ModelCatalog()
