"""Router: picks the lane for an obstacle from the top signature match."""

from __future__ import annotations

import logging
from typing import Optional

from ..base.config import RoutingConfig
from ..contracts.enums import Lane, ObstacleClassification
from ..contracts.models import ObstacleEvent, RoutingDecision
from ..scoring.scorer import DeterministicScorer
from .matcher import PatternMatcher
from .state import RoutingStateStore

logger = logging.getLogger(__name__)


class Router:
    def __init__(
        self,
        store: RoutingStateStore,
        matcher: Optional[PatternMatcher] = None,
        scorer: Optional[DeterministicScorer] = None,
        config: Optional[RoutingConfig] = None,
    ):
        self.store = store
        self.config = config or store.config
        self.matcher = matcher or PatternMatcher(store, self.config)
        self.scorer = scorer

    def select_lane(self, weighted_confidence: float, decay_detected: bool = False) -> Lane:
        if weighted_confidence > self.config.deterministic_threshold and not decay_detected:
            return Lane.DETERMINISTIC
        if weighted_confidence < self.config.freestyle_threshold:
            return Lane.FREESTYLE
        return Lane.HYBRID

    def route(self, event: ObstacleEvent) -> RoutingDecision:
        matches = self.matcher.match(event.terminal_output)
        if not matches:
            decision = RoutingDecision(
                lane=Lane.FREESTYLE,
                confidence=self.config.no_match_confidence,
                matched_pattern=None,
                classification=ObstacleClassification.UNKNOWN,
                reasoning="No signature matched the obstacle output",
                fallback_eligible=True,
            )
            logger.info(f"[Router] {event.obstacle_id}: no match -> freestyle")
            return decision

        top = matches[0]
        signature = top.signature
        weight = self.store.weight(signature.id)
        weighted = min(top.confidence * weight, 1.0)

        decay = False
        if self.scorer is not None:
            decay = self.scorer.get_confidence_decay_status(signature.classification, event.engagement_id)

        lane = self.select_lane(weighted, decay)
        hits = ", ".join(top.matched) if top.matched else "empty output"
        reasoning = (
            f"Matched {signature.id} ({hits}): confidence {top.confidence:.2f} "
            f"x weight {weight:.2f} = {weighted:.2f}"
        )
        if decay and weighted > self.config.deterministic_threshold:
            reasoning += " [confidence decay detected, downgraded to hybrid]"

        logger.info(f"[Router] {event.obstacle_id}: {signature.id} -> {lane.value} ({weighted:.2f})")
        return RoutingDecision(
            lane=lane,
            confidence=round(weighted, 6),
            matched_pattern=signature.id,
            classification=signature.classification,
            reasoning=reasoning,
            fallback_eligible=lane != Lane.DETERMINISTIC,
        )


__all__ = ["Router"]
