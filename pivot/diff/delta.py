"""
pivot/diff/delta.py

Pure comparison of a probe fingerprint against the engagement baseline.

Nothing here keeps state; the scorer and the anomaly buffer consume the
ResponseDelta produced by ``calculate_delta``.
"""

from __future__ import annotations

import re
from typing import List, Optional

from ..base.config import DeltaConfig
from ..contracts.models import BaselineStatistics, HeaderChange, ResponseDelta, ResponseFingerprint

_TOKEN_SPLIT = re.compile(r"[\s.,;:!?()\[\]{}'\"`<>|\\/=&]+")


def _tokens(text: str) -> set:
    return {t for t in _TOKEN_SPLIT.split(text.lower()) if t}


def token_similarity(a: str, b: str) -> float:
    """Jaccard similarity over lowercase whitespace/punctuation-delimited tokens."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    ta, tb = _tokens(a), _tokens(b)
    union = ta | tb
    if not union:
        return 1.0 if a.strip() == b.strip() else 0.0
    return len(ta & tb) / len(union)


def relative_length_change(baseline_length: int, current_length: int) -> float:
    if baseline_length == 0:
        return 0.0 if current_length == 0 else 1.0
    return abs(current_length - baseline_length) / baseline_length


def calculate_delta(
    baseline: ResponseFingerprint,
    current: ResponseFingerprint,
    baseline_stats: Optional[BaselineStatistics] = None,
    mutation_payload: Optional[str] = None,
) -> ResponseDelta:
    timing = 0.0
    if baseline_stats is not None and baseline_stats.std_dev_response_time > 0:
        timing = (
            abs(current.mean_response_time - baseline_stats.mean_response_time)
            / baseline_stats.std_dev_response_time
        )

    reflected = bool(mutation_payload) and mutation_payload.lower() in current.raw_body_sample.lower()

    added = sorted(set(current.headers) - set(baseline.headers))
    removed = sorted(set(baseline.headers) - set(current.headers))
    changed = {
        name: HeaderChange(old=baseline.headers[name], new=current.headers[name])
        for name in sorted(set(baseline.headers) & set(current.headers))
        if baseline.headers[name] != current.headers[name]
    }

    return ResponseDelta(
        status_changed=baseline.status_code != current.status_code,
        error_class_changed=baseline.error_class != current.error_class,
        body_hash_changed=baseline.body_hash != current.body_hash,
        body_contains_target=reflected,
        body_length_delta=relative_length_change(baseline.body_length, current.body_length),
        timing_delta_std=timing,
        raw_body_similarity=token_similarity(baseline.raw_body_sample, current.raw_body_sample),
        headers_added=added,
        headers_removed=removed,
        headers_changed=changed,
    )


def has_any_change(delta: ResponseDelta, thresholds: Optional[DeltaConfig] = None) -> bool:
    t = thresholds or DeltaConfig()
    return (
        delta.status_changed
        or delta.error_class_changed
        or delta.body_hash_changed
        or delta.body_contains_target
        or delta.body_length_delta > t.body_length_epsilon
        or delta.timing_delta_std > t.timing_epsilon_std
        or bool(delta.headers_added or delta.headers_removed or delta.headers_changed)
        or delta.raw_body_similarity < t.similarity_floor
    )


def change_kinds(delta: ResponseDelta, thresholds: Optional[DeltaConfig] = None) -> List[str]:
    """Names of the components that moved past their no-change threshold."""
    t = thresholds or DeltaConfig()
    kinds: List[str] = []
    if delta.status_changed:
        kinds.append("status")
    if delta.error_class_changed:
        kinds.append("error_class")
    if delta.body_hash_changed:
        kinds.append("body_hash")
    if delta.body_length_delta > t.body_length_epsilon:
        kinds.append("body_length")
    if delta.timing_delta_std > t.timing_epsilon_std:
        kinds.append("timing")
    if delta.headers_added:
        kinds.append("headers_added")
    if delta.headers_removed:
        kinds.append("headers_removed")
    if delta.headers_changed:
        kinds.append("headers_changed")
    if delta.body_contains_target:
        kinds.append("payload_reflected")
    if delta.raw_body_similarity < t.similarity_floor:
        kinds.append("similarity")
    return kinds


def change_summary(delta: ResponseDelta, thresholds: Optional[DeltaConfig] = None) -> str:
    """Comma-separated, human-readable list of what changed ("no_change" if nothing)."""
    parts: List[str] = []
    for kind in change_kinds(delta, thresholds):
        if kind == "body_length":
            parts.append(f"body_length({delta.body_length_delta:.2f})")
        elif kind == "timing":
            parts.append(f"timing({delta.timing_delta_std:.2f}σ)")
        elif kind == "headers_added":
            parts.append(f"headers_added({len(delta.headers_added)})")
        elif kind == "headers_removed":
            parts.append(f"headers_removed({len(delta.headers_removed)})")
        elif kind == "headers_changed":
            parts.append(f"headers_changed({len(delta.headers_changed)})")
        elif kind == "similarity":
            parts.append(f"similarity({delta.raw_body_similarity:.2f})")
        else:
            parts.append(kind)
    return ", ".join(parts) if parts else "no_change"


__all__ = [
    "calculate_delta",
    "change_kinds",
    "change_summary",
    "has_any_change",
    "relative_length_change",
    "token_similarity",
]
