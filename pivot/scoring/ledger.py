"""
Attempt ledger: per-(engagement, obstacle) attempt history.

State is grouped into one arena per engagement so tearing an engagement
down is a single dictionary pop.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..contracts.models import AttemptRecord


@dataclass
class ObstacleTrack:
    attempts: int = 0
    scores: List[float] = field(default_factory=list)
    progress: List[bool] = field(default_factory=list)
    records: List[AttemptRecord] = field(default_factory=list)
    best_score: float = 0.0

    def recent_progress(self, window: int) -> List[bool]:
        return self.progress[-window:] if window > 0 else []


@dataclass
class EngagementArena:
    obstacles: Dict[str, ObstacleTrack] = field(default_factory=dict)
    # classification -> scores in arrival order, for decay detection
    classification_scores: Dict[str, List[float]] = field(default_factory=dict)


class AttemptLedger:
    def __init__(self):
        self._arenas: Dict[str, EngagementArena] = {}
        self._lock = threading.Lock()

    def _arena(self, engagement_id: str) -> EngagementArena:
        with self._lock:
            arena = self._arenas.get(engagement_id)
            if arena is None:
                arena = self._arenas[engagement_id] = EngagementArena()
            return arena

    def peek(self, engagement_id: str, obstacle_id: str) -> Optional[ObstacleTrack]:
        arena = self._arenas.get(engagement_id)
        return arena.obstacles.get(obstacle_id) if arena else None

    def record(
        self,
        engagement_id: str,
        obstacle_id: str,
        record: AttemptRecord,
        progressed: bool,
        classification: Optional[str] = None,
    ) -> ObstacleTrack:
        arena = self._arena(engagement_id)
        track = arena.obstacles.setdefault(obstacle_id, ObstacleTrack())
        track.attempts += 1
        track.scores.append(record.score)
        track.progress.append(progressed)
        track.records.append(record)
        track.best_score = max(track.best_score, record.score)
        if classification:
            arena.classification_scores.setdefault(classification, []).append(record.score)
        return track

    def append_record(self, engagement_id: str, obstacle_id: str, record: AttemptRecord) -> None:
        """Add history without counting an attempt (e.g. a stalled-lane marker)."""
        arena = self._arena(engagement_id)
        arena.obstacles.setdefault(obstacle_id, ObstacleTrack()).records.append(record)

    def classification_scores(self, engagement_id: str, classification: str) -> List[float]:
        arena = self._arenas.get(engagement_id)
        if arena is None:
            return []
        return list(arena.classification_scores.get(classification, []))

    def engagements(self) -> List[str]:
        return list(self._arenas)

    def reset_engagement(self, engagement_id: str) -> None:
        with self._lock:
            self._arenas.pop(engagement_id, None)


__all__ = ["AttemptLedger", "EngagementArena", "ObstacleTrack"]
