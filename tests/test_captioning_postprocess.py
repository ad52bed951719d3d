from __future__ import annotations

from localcaption.captioning.postprocess import (
    clean_caption,
    remove_blacklisted,
    strip_control_tokens,
)


def test_clean_caption_applies_blacklist_and_trigger() -> None:
    raw = "  A red car driving fast</s> "
    assert clean_caption(raw, trigger_word="photo", blacklist=["red"]) == (
        "photo, A car driving fast"
    )


def test_control_and_role_tokens_are_removed() -> None:
    raw = "<|im_start|>assistant\nA cat on a sofa.<|im_end|><|endoftext|>"
    assert clean_caption(raw) == "A cat on a sofa."
    assert strip_control_tokens("ASSISTANT: <s>Two birds</s> USER:") == "Two birds"


def test_blacklist_matches_whole_words_case_insensitively() -> None:
    text = "Red redwood trees with a RED sky, red."
    assert remove_blacklisted(text, ["red"]) == " redwood trees with a  sky, ."
    assert clean_caption(text, blacklist=["red", "  ", ""]) == "redwood trees with a sky, ."


def test_blacklist_words_are_escaped() -> None:
    assert clean_caption("a c++ compiler", blacklist=["c++"]) == "a c++ compiler"
    assert clean_caption("cost is 5.0 dollars", blacklist=["5.0"]) == "cost is dollars"


def test_blank_trigger_is_ignored_and_whitespace_collapses() -> None:
    assert clean_caption("A\n\n  tall   tree\t", trigger_word="   ") == "A tall tree"
    assert clean_caption("tree", trigger_word=" sks ") == "sks, tree"


def test_chatml_wrapped_caption_with_trigger_and_blacklist() -> None:
    raw = "<|im_start|>A red car driving fast<|im_end|>"
    assert clean_caption(raw, trigger_word="photo", blacklist=["red"]) == (
        "photo, A car driving fast"
    )
