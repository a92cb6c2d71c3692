"""Candidate model selection for the fallback dispatcher."""

from __future__ import annotations

import logging
from typing import Iterable, List

from config import AppConfig
from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for mid in ids:
        if not isinstance(mid, str):
            continue
        mid = mid.strip()
        # tolerate "models/gemini-x" as returned by the models listing
        if mid.startswith("models/"):
            mid = mid[len("models/"):]
        if not mid or mid in seen:
            continue
        seen.add(mid)
        out.append(mid)
    return out


class ModelSelector:
    """Select the ordered list of model identifiers to try."""

    def choose_candidates(self, config: AppConfig) -> List[str]:
        """
        Explicit override (GEMINI_MODEL) first, then the fallback list.

        Empty entries and duplicates are dropped; order is preserved.
        """
        candidates = _dedupe([config.model_override, *config.fallback_models])
        log.debug("Candidate models: %s", candidates)
        return candidates
