"""Signal weight table: ResponseDelta -> per-signal contributions."""

from __future__ import annotations

from ..base.config import SignalWeights
from ..contracts.models import ResponseDelta, ScoreVector


def _tiered(value: float, minor_at: float, minor: float, major_at: float, major: float) -> float:
    score = 0.0
    if value > minor_at:
        score += minor
    if value > major_at:
        score += major
    return score


def score_delta(delta: ResponseDelta, weights: SignalWeights) -> ScoreVector:
    """
    Apply the weight table. ``weighted_total`` is the clamped sum of the
    per-signal contributions; ``confidence_decay`` is left to the scorer.
    """
    status = weights.status_changed if delta.status_changed else 0.0
    error_class = weights.error_class_changed if delta.error_class_changed else 0.0
    body_hash = weights.body_hash_changed if delta.body_hash_changed else 0.0
    reflected = weights.payload_reflected if delta.body_contains_target else 0.0

    length = _tiered(
        delta.body_length_delta,
        weights.body_length_minor_threshold, weights.body_length_minor,
        weights.body_length_major_threshold, weights.body_length_major,
    )
    timing = _tiered(
        delta.timing_delta_std,
        weights.timing_minor_threshold, weights.timing_minor,
        weights.timing_major_threshold, weights.timing_major,
    )
    headers = (
        len(delta.headers_added) * weights.header_added
        + len(delta.headers_removed) * weights.header_removed
        + len(delta.headers_changed) * weights.header_changed
    )

    # Lower similarity means the response moved further from the baseline
    similarity = 0.0
    if delta.raw_body_similarity < weights.similarity_minor_threshold:
        similarity += weights.similarity_minor
    if delta.raw_body_similarity < weights.similarity_major_threshold:
        similarity += weights.similarity_major

    total = status + error_class + body_hash + reflected + length + timing + headers + similarity
    return ScoreVector(
        status_changed=status,
        error_class_changed=error_class,
        body_hash_changed=body_hash,
        payload_reflected=reflected,
        body_length_delta=length,
        timing_delta=timing,
        header_changes=headers,
        body_similarity=similarity,
        weighted_total=round(min(max(total, 0.0), 1.0), 6),
    )


__all__ = ["score_delta"]
