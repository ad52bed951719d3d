from __future__ import annotations

import re
from typing import Iterable, Optional

CONTROL_TOKENS = (
    "<|im_end|>",
    "<|im_start|>",
    "<|endoftext|>",
    "</s>",
    "<s>",
    "USER:",
    "ASSISTANT:",
)

_LEADING_ROLE = re.compile(r"^\s*assistant\s*\n", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def strip_control_tokens(text: str) -> str:
    result = (text or "").strip()
    for token in CONTROL_TOKENS:
        result = result.replace(token, "")
    result = _LEADING_ROLE.sub("", result)
    return result.strip()


def remove_blacklisted(text: str, blacklist: Optional[Iterable[str]]) -> str:
    result = text
    for word in blacklist or ():
        word = (word or "").strip()
        if not word:
            continue
        result = re.sub(rf"\b{re.escape(word)}\b", "", result, flags=re.IGNORECASE)
    return result


def clean_caption(
    raw: str,
    *,
    trigger_word: Optional[str] = None,
    blacklist: Optional[Iterable[str]] = None,
) -> str:
    """Turn raw model output into the caption that gets saved.

    >>> clean_caption("  A red car driving fast</s> ", trigger_word="photo", blacklist=["red"])
    'photo, A car driving fast'
    """
    result = strip_control_tokens(raw)
    result = remove_blacklisted(result, blacklist)
    result = _WHITESPACE.sub(" ", result).strip()
    trigger = (trigger_word or "").strip()
    if trigger:
        result = f"{trigger}, {result}"
    return result
