from .base import InferenceBackend
from .llama_cpp_backend import LlamaCppBackend

__all__ = [
    "InferenceBackend",
    "LlamaCppBackend",
]
