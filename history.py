"""Conversation history normalization.

Incoming history comes from web clients with mixed role vocabularies and
optional text. The provider only accepts strictly alternating user/model
turns, so the history is reshaped before it is sent:

  - role synonyms collapse into ROLE_USER / ROLE_MODEL
  - missing text becomes a placeholder (the turn is kept)
  - runs of the same role keep only their first turn
  - only the most recent ``window`` entries are considered
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)

ROLE_USER = "user"
ROLE_MODEL = "model"

MISSING_TEXT_PLACEHOLDER = "..."

_MODEL_ROLE_SYNONYMS = {"model", "assistant", "bot", "ai"}


@dataclass(frozen=True)
class Turn:
    """One message in a conversation."""

    role: str
    text: str


def canonical_role(raw: Any) -> str:
    """Map a vendor-specific role spelling to ROLE_USER or ROLE_MODEL."""
    if isinstance(raw, str) and raw.strip().lower() in _MODEL_ROLE_SYNONYMS:
        return ROLE_MODEL
    return ROLE_USER


def _entry_text(entry: dict) -> str:
    text = entry.get("text")
    if not isinstance(text, str):
        text = entry.get("content")
    if isinstance(text, str) and text.strip():
        return text
    return MISSING_TEXT_PLACEHOLDER


def normalize_history(
    entries: Any,
    window: int = 6,
    *,
    previous_role: Optional[str] = None,
) -> List[Turn]:
    """
    Convert a loosely-typed history list into alternating turns.

    ``previous_role`` is the role of whatever precedes the history in the
    final request (e.g. the acknowledgment turn of a priming pair), so the
    alternation also holds across that boundary.

    Never raises: anything that is not a list of dicts yields an empty list.
    """
    if not isinstance(entries, list) or window <= 0:
        return []

    out: List[Turn] = []
    last_role = previous_role
    for entry in entries[-window:]:
        if not isinstance(entry, dict):
            continue
        role = canonical_role(entry.get("role"))
        if role == last_role:
            continue
        out.append(Turn(role=role, text=_entry_text(entry)))
        last_role = role

    if log.isEnabledFor(logging.DEBUG):
        log.debug("History normalized: in=%d window=%d out=%d", len(entries), window, len(out))
    return out


def drop_trailing_user(turns: Iterable[Turn]) -> List[Turn]:
    """Remove a trailing user turn before a new user turn is appended."""
    out = list(turns)
    if out and out[-1].role == ROLE_USER:
        out.pop()
    return out
