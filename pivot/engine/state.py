"""Per-obstacle lifecycle: routed -> attempting -> {exploited | stalled | abandoned}."""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from ..base.errors import InvalidStateTransitionError
from ..contracts.enums import ObstacleState

S = ObstacleState

# A fresh event for a known obstacle always re-enters at ROUTED
ALLOWED_TRANSITIONS: Dict[Optional[ObstacleState], FrozenSet[ObstacleState]] = {
    None: frozenset({S.ROUTED}),
    S.ROUTED: frozenset({S.ROUTED, S.ATTEMPTING, S.ABANDONED}),
    S.ATTEMPTING: frozenset({S.ROUTED, S.EXPLOITED, S.STALLED, S.ABANDONED}),
    S.STALLED: frozenset({S.ROUTED, S.ATTEMPTING, S.ABANDONED}),
    S.EXPLOITED: frozenset({S.ROUTED}),
    S.ABANDONED: frozenset({S.ROUTED}),
}


def check_transition(current: Optional[ObstacleState], target: ObstacleState) -> ObstacleState:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransitionError(
            message=f"Illegal obstacle transition {current.value if current else 'new'} -> {target.value}",
            details={"from": current.value if current else None, "to": target.value},
        )
    return target


__all__ = ["ALLOWED_TRANSITIONS", "check_transition"]
