from __future__ import annotations

import pytest

from localcaption.captioning.catalog import (
    DEFAULT_CATALOG,
    IMAGE_PLACEHOLDER,
    ModelCatalog,
    PromptFamily,
)
from localcaption.captioning.errors import ConfigurationError

from conftest import make_variant


def test_default_catalog_lists_known_variants() -> None:
    assert DEFAULT_CATALOG.keys() == ["llava-v1.6-34b", "qwen2.5-vl-7b", "qwen3-vl-8b"]
    llava = DEFAULT_CATALOG.get("llava-v1.6-34b")
    assert llava.weights_file == "llava-v1.6-34b.Q4_K_M.gguf"
    assert llava.projector_file == "mmproj-model-f16.gguf"
    assert llava.weights_size == 20_000_000_000
    assert llava.total_size == 20_600_000_000


def test_both_qwen_variants_use_chatml() -> None:
    for key in ("qwen2.5-vl-7b", "qwen3-vl-8b"):
        variant = DEFAULT_CATALOG.get(key)
        assert variant.family is PromptFamily.CHATML
        assert variant.stop_sequences == ("<|im_end|>", "<|im_start|>", "<|endoftext|>")
    assert DEFAULT_CATALOG.get("llava-v1.6-34b").stop_sequences == ("USER:", "</s>")


def test_lookup_is_case_and_whitespace_insensitive() -> None:
    assert DEFAULT_CATALOG.get("  Qwen3-VL-8B ").key == "qwen3-vl-8b"
    assert "QWEN3-VL-8B" in DEFAULT_CATALOG
    assert "nope" not in DEFAULT_CATALOG


def test_unknown_key_raises_configuration_error() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        DEFAULT_CATALOG.get("gpt-vision")
    assert "qwen3-vl-8b" in str(excinfo.value)


def test_duplicate_keys_are_rejected() -> None:
    with pytest.raises(ConfigurationError):
        ModelCatalog([make_variant("dup"), make_variant("DUP")])


def test_render_prompt_keeps_image_placeholder_and_braces() -> None:
    variant = DEFAULT_CATALOG.get("qwen3-vl-8b")
    prompt = variant.render_prompt("  Describe {this} image ")
    assert prompt.count(IMAGE_PLACEHOLDER) == 1
    assert "Describe {this} image<|im_end|>" in prompt
    assert prompt.endswith("<|im_start|>assistant\n")

    vicuna = DEFAULT_CATALOG.get("llava-v1.6-34b").render_prompt("Caption it")
    assert "USER: <image>\nCaption it\nASSISTANT:" in vicuna


def test_variant_paths_resolve_under_models_dir(tmp_path) -> None:
    variant = make_variant("tiny")
    assert variant.weights_path(tmp_path) == tmp_path / "tiny.gguf"
    assert variant.projector_path(tmp_path) == tmp_path / "tiny-mmproj.gguf"
