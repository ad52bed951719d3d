from __future__ import annotations

import base64
import functools
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence

from localcaption.captioning.backends.base import InferenceBackend
from localcaption.captioning.catalog import IMAGE_PLACEHOLDER
from localcaption.captioning.errors import BackendNotAvailableError, LoadError
from localcaption.utils.logger import logger

_INSTALL_HINT = "Install with: pip install 'localcaption[llama]'"

# Prompts arrive fully rendered for their model family, so the chat template
# only concatenates message parts and leaves the image URL where it stands.
_PASSTHROUGH_TEMPLATE = (
    "{% for message in messages %}"
    "{% if message.content is string %}{{ message.content }}"
    "{% else %}{% for part in message.content %}"
    "{% if part.type == 'text' %}{{ part.text }}"
    "{% elif part.type == 'image_url' %}"
    "{% if part.image_url is mapping %}{{ part.image_url.url }}"
    "{% else %}{{ part.image_url }}{% endif %}"
    "{% endif %}{% endfor %}{% endif %}"
    "{% endfor %}"
)


def _import_llama_cpp():
    try:
        import llama_cpp
    except ImportError as exc:
        raise BackendNotAvailableError(
            "Local captioning requires the optional dependency 'llama-cpp-python'. "
            + _INSTALL_HINT
        ) from exc
    return llama_cpp


@functools.lru_cache(maxsize=1)
def _passthrough_handler_class():
    _import_llama_cpp()
    from llama_cpp.llama_chat_format import Llava15ChatHandler

    class PassthroughChatHandler(Llava15ChatHandler):
        DEFAULT_SYSTEM_MESSAGE = None
        CHAT_FORMAT = _PASSTHROUGH_TEMPLATE

    return PassthroughChatHandler


def _image_mime(data: bytes) -> str:
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    return "image/jpeg"


def encode_image_data_uri(data: bytes) -> str:
    encoded = base64.b64encode(data).decode("utf-8")
    return f"data:{_image_mime(data)};base64,{encoded}"


def build_user_content(prompt: str, image: bytes) -> List[Dict[str, Any]]:
    """Split a rendered prompt at the image placeholder into chat content parts."""
    before, marker, after = prompt.partition(IMAGE_PLACEHOLDER)
    if not marker:
        before, after = "", prompt
    parts: List[Dict[str, Any]] = []
    if before:
        parts.append({"type": "text", "text": before})
    parts.append(
        {"type": "image_url", "image_url": {"url": encode_image_data_uri(image)}}
    )
    if after:
        parts.append({"type": "text", "text": after})
    return parts


@dataclass
class LlamaCppBackend(InferenceBackend):
    """GGUF weights plus a multimodal projector through llama-cpp-python."""

    use_mmap: bool = True
    use_mlock: bool = False
    verbose: bool = False

    name: str = "llama_cpp"

    def supports_gpu_offload(self) -> bool:
        llama_cpp = _import_llama_cpp()
        supports = getattr(llama_cpp, "llama_supports_gpu_offload", None)
        if supports is None:
            return False
        return bool(supports())

    def load_weights(self, path: Path, *, gpu_layers: int, context_size: int) -> Any:
        llama_cpp = _import_llama_cpp()
        try:
            return llama_cpp.Llama(
                model_path=str(path),
                n_ctx=int(context_size),
                n_gpu_layers=int(gpu_layers),
                use_mmap=self.use_mmap,
                use_mlock=self.use_mlock,
                verbose=self.verbose,
            )
        except (ValueError, RuntimeError, OSError) as exc:
            raise LoadError(f"Failed to load model weights from {path}: {exc}") from exc

    def create_context(self, weights: Any, *, context_size: int) -> Any:
        # llama-cpp-python creates the context together with the weights.
        context = getattr(weights, "_ctx", None)
        if context is None:
            raise LoadError("Model weights did not provide an inference context")
        n_ctx = getattr(weights, "n_ctx", None)
        if callable(n_ctx) and int(n_ctx()) != int(context_size):
            logger.warning(
                "Context size is %s, requested %s", n_ctx(), context_size
            )
        return context

    def load_projector(self, weights: Any, context: Any, path: Path) -> Any:
        handler_cls = _passthrough_handler_class()
        try:
            projector = handler_cls(clip_model_path=str(path), verbose=self.verbose)
        except (ValueError, RuntimeError, OSError) as exc:
            raise LoadError(f"Failed to load CLIP projector from {path}: {exc}") from exc
        weights.chat_handler = projector
        return projector

    def release(self, handle: Any) -> None:
        if handle is None:
            return
        close = getattr(handle, "close", None)
        if callable(close):
            close()
            return
        exit_stack = getattr(handle, "_exit_stack", None)
        if exit_stack is not None:
            exit_stack.close()

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
        if getattr(weights, "chat_handler", None) is not projector:
            weights.chat_handler = projector
        weights.reset()
        chunks = weights.create_chat_completion(
            messages=[{"role": "user", "content": build_user_content(prompt, image)}],
            temperature=float(temperature),
            max_tokens=int(max_tokens),
            stop=list(stop),
            stream=True,
        )
        for chunk in chunks:
            choices = chunk.get("choices") or []
            if not choices:
                continue
            text = (choices[0].get("delta") or {}).get("content")
            if text:
                yield text
