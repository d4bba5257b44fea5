"""Token estimation for chat content.

A cheap, deterministic approximation: the average of a character-based
estimate (len / 4) and a word-based estimate (words * 1.3). It does not try to
match any provider tokenizer; it only needs to be consistent and monotonic
so budgets and credit charges are predictable.
"""

import math
from collections.abc import Iterable

from chatrelay.models.message import ChatMessage, ImagePart, MessageContent, TextPart

# Flat surcharge per attached image
IMAGE_TOKEN_SURCHARGE = 85


def estimate_text_tokens(text: str | None) -> int:
    if not text:
        return 0
    char_based = math.ceil(len(text) / 4)
    word_based = math.ceil(len(text.split()) * 1.3)
    return math.ceil((char_based + word_based) / 2)


def estimate_content(content: MessageContent | None) -> int:
    if content is None:
        return 0
    if isinstance(content, str):
        return estimate_text_tokens(content)

    total = 0
    for part in content:
        if isinstance(part, TextPart):
            total += estimate_text_tokens(part.text)
        elif isinstance(part, ImagePart):
            total += IMAGE_TOKEN_SURCHARGE
        else:
            raise TypeError(f"Unsupported content part: {type(part).__name__}")
    return total


def estimate_messages(messages: Iterable[ChatMessage]) -> int:
    return sum(estimate_content(m.content) for m in messages)


def would_exceed_budget(
    existing: Iterable[ChatMessage],
    candidate: MessageContent | None,
    limit: int,
) -> bool:
    """True when appending ``candidate`` would push the conversation over ``limit``."""
    return estimate_messages(existing) + estimate_content(candidate) > limit
