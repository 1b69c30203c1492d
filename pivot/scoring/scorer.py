"""
pivot/scoring/scorer.py

Deterministic scorer: turns deltas into scores and decides, per obstacle,
whether to keep probing, declare success or give up.
"""

from __future__ import annotations

import logging
import statistics
from typing import List, Optional

from ..base.config import ScoringConfig
from ..contracts.enums import AttemptOutcome, ObstacleClassification
from ..contracts.models import AttemptRecord, ResponseDelta, ScoreVector
from .ledger import AttemptLedger
from .signals import score_delta

logger = logging.getLogger(__name__)


class DeterministicScorer:
    def __init__(self, config: Optional[ScoringConfig] = None, ledger: Optional[AttemptLedger] = None):
        self.config = config or ScoringConfig()
        self.ledger = ledger or AttemptLedger()

    def evaluate_delta(
        self,
        delta: ResponseDelta,
        obstacle_id: str,
        engagement_id: str,
        strategy: str,
        classification: Optional[ObstacleClassification] = None,
        payload: str = "",
    ) -> ScoreVector:
        """
        Score one probe and record it against the obstacle.

        Only call this once the probe has a definite outcome; the attempt
        counter moves here and nowhere else.
        """
        vector = score_delta(delta, self.config.weights)
        total = vector.weighted_total

        progressed = self.is_making_progress(total, obstacle_id, engagement_id)
        if self.is_exploit_confirmed(total):
            outcome = AttemptOutcome.EXPLOITED
        elif progressed:
            outcome = AttemptOutcome.PROGRESSING
        else:
            outcome = AttemptOutcome.NO_PROGRESS

        class_key = classification.value if classification else None
        self.ledger.record(
            engagement_id,
            obstacle_id,
            AttemptRecord(strategy=strategy, payload=payload, score=total, outcome=outcome.value),
            progressed,
            class_key,
        )

        decay = self.get_confidence_decay_status(classification, engagement_id) if classification else False
        logger.debug(
            f"[Scorer] {engagement_id}/{obstacle_id} {strategy}: {total:.3f} ({outcome.value})"
        )
        return vector.model_copy(update={"confidence_decay": decay})

    def is_exploit_confirmed(self, score: float) -> bool:
        return score >= self.config.exploit_confirm_threshold

    def is_making_progress(self, score: float, obstacle_id: str, engagement_id: str) -> bool:
        """True when ``score`` beats the best score so far by more than the progress delta."""
        track = self.ledger.peek(engagement_id, obstacle_id)
        previous_best = track.best_score if track else 0.0
        return score - previous_best > self.config.progress_delta

    def last_made_progress(self, obstacle_id: str, engagement_id: str) -> bool:
        track = self.ledger.peek(engagement_id, obstacle_id)
        return bool(track and track.progress and track.progress[-1])

    def should_abandon(self, obstacle_id: str, engagement_id: str) -> bool:
        track = self.ledger.peek(engagement_id, obstacle_id)
        if track is None or track.attempts < self.config.max_deterministic_attempts:
            return False
        return not any(track.recent_progress(self.config.progress_window))

    def get_confidence_decay_status(self, classification: ObstacleClassification, engagement_id: str) -> bool:
        window = self.config.decay_window
        scores = self.ledger.classification_scores(engagement_id, classification.value)[-window:]
        if window < 2 or len(scores) < window:
            return False
        slope = statistics.linear_regression(range(len(scores)), scores).slope
        return slope < -self.config.decay_slope

    def attempt_count(self, obstacle_id: str, engagement_id: str) -> int:
        track = self.ledger.peek(engagement_id, obstacle_id)
        return track.attempts if track else 0

    def best_score(self, obstacle_id: str, engagement_id: str) -> float:
        track = self.ledger.peek(engagement_id, obstacle_id)
        return track.best_score if track else 0.0

    def history(self, obstacle_id: str, engagement_id: str) -> List[AttemptRecord]:
        track = self.ledger.peek(engagement_id, obstacle_id)
        return list(track.records) if track else []

    def reset_engagement(self, engagement_id: str) -> None:
        self.ledger.reset_engagement(engagement_id)

    @staticmethod
    def score_summary(vector: ScoreVector) -> str:
        parts = [
            f"{name}={value:.2f}"
            for name, value in vector.model_dump(exclude={"weighted_total", "confidence_decay"}).items()
            if value
        ]
        head = f"total={vector.weighted_total:.2f}"
        if vector.confidence_decay:
            head += " (decaying)"
        return " ".join([head] + parts)


__all__ = ["DeterministicScorer"]
