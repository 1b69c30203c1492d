"""Mutation families (encoding, structural, timing, protocol) and their registry."""

from .base import Mutation, MutationContext, MutationFamilyBase, VariantSpec
from .encoding import EncodingFamily
from .protocol import ProtocolFamily
from .registry import FamilyRegistry, parse_family
from .structural import StructuralFamily
from .timing import TimingFamily

__all__ = [
    "EncodingFamily",
    "FamilyRegistry",
    "Mutation",
    "MutationContext",
    "MutationFamilyBase",
    "ProtocolFamily",
    "StructuralFamily",
    "TimingFamily",
    "VariantSpec",
    "parse_family",
]
