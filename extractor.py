"""Extract reply text from a Gemini success envelope."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from errors import EnvelopeError
from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)

SAFETY_APOLOGY = (
    "Desculpe, não posso responder a essa mensagem por questões de segurança de conteúdo. "
    "Tente reformular a pergunta."
)

SAFETY_FINISH_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "RECITATION"}


def extract_part_texts(envelope: Any) -> List[str]:
    """Collect the text of every part of the first candidate, in order."""
    if not isinstance(envelope, dict):
        return []
    candidates = envelope.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return []
    first = candidates[0]
    if not isinstance(first, dict):
        return []
    content = first.get("content")
    if not isinstance(content, dict):
        return []
    out: List[str] = []
    for part in content.get("parts") or []:
        if not isinstance(part, dict) or part.get("thought"):
            continue
        text = part.get("text")
        if isinstance(text, str) and text:
            out.append(text)
    return out


def is_safety_blocked(envelope: Dict[str, Any]) -> bool:
    """True when the envelope carries a content-safety / prompt-feedback block."""
    feedback = envelope.get("promptFeedback")
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        return True
    for cand in envelope.get("candidates") or []:
        if isinstance(cand, dict) and cand.get("finishReason") in SAFETY_FINISH_REASONS:
            return True
    return False


def extract_reply(envelope: Any, safety_message: str = SAFETY_APOLOGY) -> str:
    """
    Return the assistant reply.

    1. all part texts joined with a newline
    2. the safety apology when the prompt or candidate was blocked
    3. EnvelopeError otherwise
    """
    texts = extract_part_texts(envelope)
    if texts:
        return "\n".join(texts)

    if isinstance(envelope, dict) and is_safety_blocked(envelope):
        log.warning(
            "Reply blocked by safety filter promptFeedback=%r",
            envelope.get("promptFeedback"),
        )
        return safety_message

    keys = sorted(envelope.keys()) if isinstance(envelope, dict) else type(envelope).__name__
    log.error("Unexpected upstream envelope shape keys=%s", keys)
    raise EnvelopeError("Upstream returned no valid content")
