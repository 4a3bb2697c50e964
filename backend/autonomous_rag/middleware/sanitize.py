"""
Message screening before the decision prompt.

The user message is pasted verbatim into the decision prompt, so a message
that tries to rewrite the routing rules, or smuggles in a ready-made
decision object, is rejected with HTTP 400 before any LLM call.
"""

import re
from typing import Any

from fastapi import HTTPException, status

from autonomous_rag.core.logging import get_logger

log = get_logger(__name__)

MAX_MESSAGE_CHARS = 4_000

# (label, pattern) pairs; the label is what gets logged
_BLOCKED: list[tuple[str, re.Pattern]] = [
    ("override_instructions", re.compile(
        r"(ignore|disregard|forget)\s+(all\s+)?(previous|prior|above)\s+(instructions?|rules)", re.I)),
    ("persona_switch", re.compile(r"you\s+are\s+now\s+(?:a|an|the)\s+\w+", re.I)),
    ("system_prompt", re.compile(r"system\s*prompt\s*:|<\s*/?system\s*>", re.I)),
    ("chat_template", re.compile(r"\[/?INST\]|###\s*instruction|<\|im_start\|>", re.I)),
    ("prompt_sections", re.compile(r"===\s*(decision tree|context|response format)", re.I)),
    ("forged_decision", re.compile(r"\{\s*\"tool\"\s*:\s*\"\w+\"\s*,\s*\"(reasoning|parameters)\"", re.I)),
]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def find_blocked_pattern(text: str) -> str | None:
    """Label of the first blocked pattern found in text, or None."""
    for label, pattern in _BLOCKED:
        if pattern.search(text):
            return label
    return None


def sanitize_message(text: str, user_id: Any = None) -> str:
    """Strip control characters and surrounding whitespace; raise HTTP 400 on a blocked message."""
    if len(text) > MAX_MESSAGE_CHARS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Message too long ({len(text)} chars). Maximum is {MAX_MESSAGE_CHARS}.",
        )

    cleaned = _CONTROL_CHARS.sub("", text).strip()

    label = find_blocked_pattern(cleaned)
    if label is not None:
        log.warning("message_blocked", user_id=user_id, reason=label, excerpt=cleaned[:100])
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message contains disallowed content.",
        )

    return cleaned
