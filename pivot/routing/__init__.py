from .matcher import PatternMatch, PatternMatcher
from .router import Router
from .signatures import EMPTY_RESPONSE_ID, default_signatures
from .state import RoutingStateStore, StagedUpdates

__all__ = [
    "EMPTY_RESPONSE_ID",
    "PatternMatch",
    "PatternMatcher",
    "Router",
    "RoutingStateStore",
    "StagedUpdates",
    "default_signatures",
]
