from .baseline import BaselineManager
from .delta import (
    calculate_delta,
    change_kinds,
    change_summary,
    has_any_change,
    relative_length_change,
    token_similarity,
)
from .statistics import compute_statistics

__all__ = [
    "BaselineManager",
    "calculate_delta",
    "change_kinds",
    "change_summary",
    "compute_statistics",
    "has_any_change",
    "relative_length_change",
    "token_similarity",
]
