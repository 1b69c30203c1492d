"""
Family registry: which mutation families apply to which obstacle, in what
order, and the ordered mutation plan for a blocked payload.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

from ..base.errors import UnknownMutationFamilyError
from ..contracts.enums import MutationFamily, ObstacleClassification
from .base import Mutation, MutationContext, MutationFamilyBase
from .encoding import EncodingFamily
from .protocol import ProtocolFamily
from .structural import StructuralFamily
from .timing import TimingFamily

logger = logging.getLogger(__name__)

C = ObstacleClassification

FAMILY_PRIORITY: Dict[MutationFamily, int] = {
    MutationFamily.ENCODING: 1,
    MutationFamily.STRUCTURAL: 2,
    MutationFamily.TIMING: 3,
    MutationFamily.PROTOCOL: 4,
}

_PAYLOAD_SURFACES: FrozenSet[ObstacleClassification] = frozenset({
    C.WAF_BLOCK,
    C.SQL_INJECTION_SURFACE,
    C.XSS_SURFACE,
    C.TEMPLATE_INJECTION_SURFACE,
    C.CHARACTER_FILTER,
    C.PATH_TRAVERSAL_SURFACE,
    C.COMMAND_INJECTION_SURFACE,
    C.XXE_SURFACE,
    C.DESERIALIZATION_SURFACE,
    C.UNKNOWN,
})

APPLICABILITY: Dict[MutationFamily, FrozenSet[ObstacleClassification]] = {
    MutationFamily.ENCODING: _PAYLOAD_SURFACES,
    MutationFamily.STRUCTURAL: _PAYLOAD_SURFACES,
    MutationFamily.TIMING: frozenset({C.RATE_LIMIT, C.TIMEOUT_OR_DROP, C.UNKNOWN}),
    MutationFamily.PROTOCOL: frozenset({C.WAF_BLOCK, C.AUTH_FAILURE, C.RATE_LIMIT, C.UNKNOWN}),
}


def parse_family(name: Union[str, MutationFamily]) -> MutationFamily:
    if isinstance(name, MutationFamily):
        return name
    try:
        return MutationFamily(str(name).lower())
    except ValueError:
        raise UnknownMutationFamilyError(str(name)) from None


class FamilyRegistry:
    """Holds one instance of each family, all sharing a single seeded random source."""

    def __init__(self, rng: Optional[random.Random] = None, seed: Optional[int] = None):
        self.rng = rng or random.Random(seed)
        self._families: Dict[MutationFamily, MutationFamilyBase] = {
            MutationFamily.ENCODING: EncodingFamily(self.rng),
            MutationFamily.STRUCTURAL: StructuralFamily(self.rng),
            MutationFamily.TIMING: TimingFamily(self.rng),
            MutationFamily.PROTOCOL: ProtocolFamily(self.rng),
        }

    def get(self, family: Union[str, MutationFamily]) -> MutationFamilyBase:
        return self._families[parse_family(family)]

    def families_for(self, classification: ObstacleClassification) -> List[MutationFamily]:
        applicable = [f for f, classes in APPLICABILITY.items() if classification in classes]
        return sorted(applicable, key=FAMILY_PRIORITY.__getitem__)

    def apply(
        self,
        family: Union[str, MutationFamily],
        variant: str,
        payload: str,
        context: Optional[MutationContext] = None,
    ) -> Mutation:
        return self.get(family).mutate(payload, variant, context)

    def build_plans(
        self,
        payload: str,
        classification: ObstacleClassification,
        context: Optional[MutationContext] = None,
        exclude: Iterable[str] = (),
    ) -> List[Mutation]:
        """
        Produce the ordered list of mutations to try for a blocked payload.

        Families come in priority order; within a family, cheaper variants
        (lower complexity) come first. Strategies named in ``exclude``
        (``family:variant``) are skipped.
        """
        skip = set(exclude)
        plans: List[Mutation] = []
        for family_id in self.families_for(classification):
            family = self._families[family_id]
            variants = sorted(family.list_variants(), key=lambda v: family.describe(v).complexity)
            for variant in variants:
                if f"{family_id.value}:{variant}" in skip:
                    continue
                plans.append(family.mutate(payload, variant, context))

        logger.debug(f"[Registry] {len(plans)} plans for {classification.value}")
        return plans

    def export_config(self) -> Dict[str, Any]:
        return {
            family_id.value: {
                "priority": FAMILY_PRIORITY[family_id],
                "applicable_to": sorted(c.value for c in APPLICABILITY[family_id]),
                "variants": {
                    name: {
                        "description": family.describe(name).description,
                        "bypass_target": family.describe(name).bypass_target,
                        "complexity": family.describe(name).complexity,
                    }
                    for name in family.list_variants()
                },
            }
            for family_id, family in self._families.items()
        }


__all__ = [
    "APPLICABILITY",
    "FAMILY_PRIORITY",
    "FamilyRegistry",
    "parse_family",
]
