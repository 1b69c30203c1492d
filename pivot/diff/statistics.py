"""Summary statistics over baseline fingerprints."""

from __future__ import annotations

import statistics
from typing import Dict, List, Sequence

from ..contracts.models import BaselineStatistics, ResponseFingerprint


def _pstdev(values: Sequence[float]) -> float:
    return statistics.pstdev(values) if len(values) > 1 else 0.0


def compute_statistics(fingerprints: Sequence[ResponseFingerprint]) -> BaselineStatistics:
    """
    Collapse N clean samples into one baseline.

    Timing uses the union of every sample's timings; standard deviations are
    population deviations. Status and error class survive only when every
    sample agrees. The first fingerprint is kept as the reference sample.
    """
    if not fingerprints:
        raise ValueError("compute_statistics() needs at least one fingerprint")

    timings: List[float] = [t for fp in fingerprints for t in fp.response_time_ms]
    lengths = [float(fp.body_length) for fp in fingerprints]

    first = fingerprints[0]
    common: Dict[str, str] = {
        name: value
        for name, value in first.headers.items()
        if all(fp.headers.get(name) == value for fp in fingerprints[1:])
    }

    statuses = {fp.status_code for fp in fingerprints}
    error_classes = {fp.error_class for fp in fingerprints}

    return BaselineStatistics(
        mean_response_time=statistics.fmean(timings) if timings else 0.0,
        std_dev_response_time=_pstdev(timings),
        mean_body_length=statistics.fmean(lengths),
        std_dev_body_length=_pstdev(lengths),
        common_headers=common,
        status_code=first.status_code if len(statuses) == 1 else 200,
        error_class=first.error_class if len(error_classes) == 1 else None,
        sample_fingerprint=first,
        sample_count=len(fingerprints),
    )


__all__ = ["compute_statistics"]
