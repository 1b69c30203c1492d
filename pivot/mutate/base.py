from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from ..base.errors import UnknownVariantError
from ..contracts.enums import MutationFamily
from ..contracts.models import RequestDirectives


@dataclass(frozen=True)
class VariantSpec:
    """Static description of one variant of a family."""
    name: str
    description: str
    bypass_target: str
    complexity: int = 1  # 1-10, higher = more invasive transformation


@dataclass(frozen=True)
class MutationContext:
    """What a variant may know about the request it is mutating."""
    language: str = "sql"
    param_name: str = "q"
    method: str = "GET"
    content_type: Optional[str] = None
    host: Optional[str] = None


@dataclass(frozen=True)
class Mutation:
    family: MutationFamily
    variant: str
    payload: str
    directives: RequestDirectives = field(default_factory=RequestDirectives)

    @property
    def strategy(self) -> str:
        return f"{self.family.value}:{self.variant}"


VariantOutput = Union[str, Mutation]


class MutationFamilyBase:
    """
    Common machinery for the four families.

    Subclasses declare SPECS and one ``_<variant>(payload, context)`` handler
    per variant. A handler returns either the mutated payload or a full
    Mutation when the variant also shapes the request.
    """

    family: MutationFamily
    SPECS: Dict[str, VariantSpec] = {}

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def list_variants(self) -> List[str]:
        return list(self.SPECS)

    def describe(self, variant: str) -> VariantSpec:
        spec = self.SPECS.get(variant)
        if spec is None:
            raise UnknownVariantError(self.family.value, variant)
        return spec

    def mutate(self, payload: str, variant: str, context: Optional[MutationContext] = None) -> Mutation:
        self.describe(variant)
        handler = getattr(self, f"_{variant}")
        out = handler(payload, context or MutationContext())
        if isinstance(out, Mutation):
            return out
        return Mutation(self.family, variant, out)

    def apply(self, payload: str, variant: str, context: Optional[MutationContext] = None) -> str:
        return self.mutate(payload, variant, context).payload

    def directives(self, variant: str, payload: str, context: Optional[MutationContext] = None) -> RequestDirectives:
        return self.mutate(payload, variant, context).directives

    def variants_for_bypass_target(self, target: str) -> List[str]:
        needle = target.lower()
        return [name for name, spec in self.SPECS.items() if needle in spec.bypass_target.lower()]

    def _shaped(self, variant: str, payload: str, **directives) -> Mutation:
        return Mutation(self.family, variant, payload, RequestDirectives(**directives))


__all__ = [
    "Mutation",
    "MutationContext",
    "MutationFamilyBase",
    "VariantSpec",
]
