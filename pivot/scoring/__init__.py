from .ledger import AttemptLedger, ObstacleTrack
from .scorer import DeterministicScorer
from .signals import score_delta

__all__ = ["AttemptLedger", "DeterministicScorer", "ObstacleTrack", "score_delta"]
