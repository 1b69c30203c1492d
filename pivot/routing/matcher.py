"""Pattern matcher: terminal output -> ranked signature matches."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..base.config import RoutingConfig
from ..contracts.models import PatternSignature
from .signatures import EMPTY_RESPONSE_ID
from .state import RoutingStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternMatch:
    signature: PatternSignature
    confidence: float
    matched: Tuple[str, ...]


class PatternMatcher:
    def __init__(self, store: RoutingStateStore, config: Optional[RoutingConfig] = None):
        self.store = store
        self.config = config or store.config

    def match(self, terminal_output: str) -> List[PatternMatch]:
        """
        Match every signature against the obstacle text.

        Each extra matched pattern adds a small bonus (capped at 1.0). Empty
        output matches only the empty-response signature.
        """
        if not terminal_output or not terminal_output.strip():
            empty = self.store.get_signature(EMPTY_RESPONSE_ID)
            return [PatternMatch(empty, empty.confidence, ())] if empty else []

        haystack = terminal_output.lower()
        matches: List[PatternMatch] = []
        for signature in self.store.signatures():
            hits = tuple(p for p in signature.patterns if p and p.lower() in haystack)
            if not hits:
                continue
            confidence = min(signature.confidence + (len(hits) - 1) * self.config.multi_match_bonus, 1.0)
            matches.append(PatternMatch(signature, round(confidence, 6), hits))

        matches.sort(key=lambda m: m.confidence, reverse=True)
        if matches:
            logger.debug(f"[Matcher] Top match {matches[0].signature.id} ({matches[0].confidence:.2f})")
        return matches


__all__ = ["PatternMatch", "PatternMatcher"]
