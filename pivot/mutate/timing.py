"""Timing family: the payload is preserved, delivery cadence changes."""

from __future__ import annotations

from ..contracts.enums import MutationFamily
from .base import Mutation, MutationContext, MutationFamilyBase, VariantSpec

RATE_JITTER_SECONDS = (0.5, 3.0)
DELAYED_RETRY_SECONDS = 5.0
CONCURRENT_COPIES = 3
RACE_BURST = 5


class TimingFamily(MutationFamilyBase):
    family = MutationFamily.TIMING

    SPECS = {
        spec.name: spec
        for spec in [
            VariantSpec("rate_variation", "Wait a jittered interval before sending", "rate limiter window", 2),
            VariantSpec("concurrent_delivery", "Send a few identical requests at once", "per-connection rate limiting", 3),
            VariantSpec("delayed_retry", "Back off before retrying", "temporary block / cooldown", 2),
            VariantSpec("race_condition", "Burst identical requests to hit a race window", "check-then-act validation", 6),
        ]
    }

    def _rate_variation(self, payload: str, context: MutationContext) -> Mutation:
        delay = round(self.rng.uniform(*RATE_JITTER_SECONDS), 3)
        return self._shaped("rate_variation", payload, delay_seconds=delay)

    def _concurrent_delivery(self, payload: str, context: MutationContext) -> Mutation:
        return self._shaped("concurrent_delivery", payload, concurrency=CONCURRENT_COPIES)

    def _delayed_retry(self, payload: str, context: MutationContext) -> Mutation:
        return self._shaped("delayed_retry", payload, delay_seconds=DELAYED_RETRY_SECONDS)

    def _race_condition(self, payload: str, context: MutationContext) -> Mutation:
        return self._shaped("race_condition", payload, concurrency=RACE_BURST)


__all__ = ["TimingFamily"]
