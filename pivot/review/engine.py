"""
pivot/review/engine.py

Post-engagement review: looks back at how obstacles were routed, what the
freestyle lane produced and which anomalies piled up, and proposes routing
weight changes plus new signatures.

Proposals are staged against the engagement in the RoutingStateStore; they
only affect other engagements once promoted.
"""

from __future__ import annotations

import logging
import re
from collections import Counter, defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

from ..base.config import DeltaConfig, RoutingConfig
from ..contracts.enums import Lane, ObstacleClassification, SignatureSource
from ..contracts.models import (
    AnomalyRecord,
    FreestyleLogEntry,
    PatternSignature,
    ReviewReport,
    ReviewStatistics,
    RoutingHistoryEntry,
    WeightAdjustment,
)
from ..diff.delta import change_kinds
from ..routing.state import RoutingStateStore

logger = logging.getLogger(__name__)

_ID_UNSAFE = re.compile(r"[^A-Z0-9]+")

EXPLOITED_OUTCOMES = frozenset({"exploited"})


class ReviewEngine:
    def __init__(
        self,
        store: RoutingStateStore,
        config: Optional[RoutingConfig] = None,
        thresholds: Optional[DeltaConfig] = None,
    ):
        self.store = store
        self.config = config or store.config
        self.thresholds = thresholds or DeltaConfig()

    # ------------------------------------------------------------------
    # Misrouting
    # ------------------------------------------------------------------

    def find_misrouted(self, history: Sequence[RoutingHistoryEntry]) -> List[Tuple[RoutingHistoryEntry, float, str]]:
        """Return (entry, weight delta, reason) for every obstacle routed to the wrong lane."""
        step = self.config.review_weight_step
        found: List[Tuple[RoutingHistoryEntry, float, str]] = []
        for entry in history:
            lane = entry.decision.lane
            if lane == Lane.DETERMINISTIC and entry.abandoned:
                found.append((entry, -step, "deterministic route abandoned without progress"))
            elif lane in (Lane.FREESTYLE, Lane.HYBRID) and entry.freestyle_succeeded:
                found.append((entry, step, f"{lane.value} route solved by a freestyle suggestion"))
        return found

    def propose_weight_adjustments(self, history: Sequence[RoutingHistoryEntry]) -> List[WeightAdjustment]:
        deltas: Dict[str, float] = defaultdict(float)
        reasons: Dict[str, List[str]] = defaultdict(list)
        for entry, delta, reason in self.find_misrouted(history):
            signature_id = entry.decision.matched_pattern
            if not signature_id:
                continue
            deltas[signature_id] += delta
            reasons[signature_id].append(f"{entry.obstacle_id}: {reason}")

        adjustments: List[WeightAdjustment] = []
        for signature_id, delta in sorted(deltas.items()):
            current = self.store.weight(signature_id)
            new = self.store.clamp(current + delta)
            if new == current:
                continue
            adjustments.append(
                WeightAdjustment(
                    signature_id=signature_id,
                    current_weight=current,
                    new_weight=new,
                    delta=round(new - current, 6),
                    reasons=reasons[signature_id],
                )
            )
        return adjustments

    # ------------------------------------------------------------------
    # New signatures
    # ------------------------------------------------------------------

    def propose_signatures(self, anomalies: Sequence[AnomalyRecord]) -> List[PatternSignature]:
        groups: Dict[Tuple[str, ...], List[AnomalyRecord]] = defaultdict(list)
        for record in anomalies:
            kinds = tuple(change_kinds(record.delta, self.thresholds))
            if kinds:
                groups[kinds].append(record)

        proposals: List[PatternSignature] = []
        for kinds, records in sorted(groups.items()):
            if len(records) < self.config.min_anomaly_support:
                continue
            signature_id = "ANOMALY_" + _ID_UNSAFE.sub("_", "_".join(kinds).upper()).strip("_")
            if self.store.get_signature(signature_id) is not None:
                continue

            patterns = self._patterns_from(records)
            if not patterns:
                logger.debug(f"[Review] {signature_id}: no terminal excerpts to learn patterns from")
                continue

            proposals.append(
                PatternSignature(
                    id=signature_id,
                    patterns=patterns,
                    classification=self._dominant_classification(records),
                    confidence=round(min(self.config.max_proposed_confidence, len(records) / 10), 4),
                    lane_recommendation=Lane.HYBRID,
                    source=SignatureSource.REVIEW,
                    description=f"Learned from {len(records)} anomalies ({', '.join(kinds)})",
                )
            )
        return proposals

    @staticmethod
    def _patterns_from(records: Sequence[AnomalyRecord], limit: int = 3) -> List[str]:
        counts: Counter = Counter()
        for record in records:
            excerpt = str(record.context.get("terminal_excerpt") or "")
            first_line = next((line.strip() for line in excerpt.splitlines() if line.strip()), "")
            if first_line:
                counts[first_line[:120]] += 1
        return [pattern for pattern, _ in counts.most_common(limit)]

    @staticmethod
    def _dominant_classification(records: Sequence[AnomalyRecord]) -> ObstacleClassification:
        counts = Counter(str(r.context.get("classification") or "") for r in records)
        for value, _ in counts.most_common():
            try:
                return ObstacleClassification(value)
            except ValueError:
                continue
        return ObstacleClassification.UNKNOWN

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def review(
        self,
        engagement_id: str,
        history: Sequence[RoutingHistoryEntry],
        freestyle_log: Sequence[FreestyleLogEntry] = (),
        anomalies: Sequence[AnomalyRecord] = (),
    ) -> ReviewReport:
        misrouted = self.find_misrouted(history)
        stats = ReviewStatistics(
            total_obstacles=len(history),
            misrouted=len(misrouted),
            abandoned=sum(1 for e in history if e.abandoned),
            exploited=sum(1 for e in history if e.outcome in EXPLOITED_OUTCOMES),
            freestyle_suggestions=sum(1 for f in freestyle_log if f.suggestion is not None),
            freestyle_successes=sum(1 for f in freestyle_log if f.succeeded),
            total_anomalies=len(anomalies),
            lanes=dict(Counter(e.decision.lane.value for e in history)),
        )

        report = ReviewReport(
            engagement_id=engagement_id,
            statistics=stats,
            weight_adjustments=self.propose_weight_adjustments(history),
            new_signatures=self.propose_signatures(anomalies),
            recommendations=self.recommendations(stats),
        )
        logger.info(
            f"[Review] {engagement_id}: {stats.total_obstacles} obstacles, {stats.misrouted} misrouted, "
            f"{len(report.weight_adjustments)} weight changes, {len(report.new_signatures)} new signatures"
        )
        return report

    @staticmethod
    def recommendations(stats: ReviewStatistics) -> List[str]:
        notes: List[str] = []
        if stats.misrouted > 0:
            notes.append(
                f"{stats.misrouted} obstacle(s) were misrouted; review the proposed weight adjustments before promoting"
            )
        if stats.abandoned > 0:
            notes.append(f"{stats.abandoned} obstacle(s) were abandoned and need human review")
        if stats.total_anomalies > 10:
            notes.append(
                f"{stats.total_anomalies} anomalies recorded; inspect high-confidence anomalies for unclassified obstacles"
            )
        if stats.freestyle_suggestions > 5:
            notes.append(
                f"Freestyle lane produced {stats.freestyle_suggestions} suggestions; "
                "consider codifying the successful ones as signatures"
            )
        if not notes:
            notes.append("No significant issues detected in this engagement")
        return notes

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def stage(self, report: ReviewReport) -> int:
        """Stage a report's proposals against its engagement. Returns the number staged."""
        for adjustment in report.weight_adjustments:
            self.store.stage_weight(report.engagement_id, adjustment.signature_id, adjustment.new_weight)
        for signature in report.new_signatures:
            self.store.stage_signature(report.engagement_id, signature)
        return len(report.weight_adjustments) + len(report.new_signatures)

    def promote(self, engagement_id: str) -> int:
        return self.store.promote(engagement_id)


__all__ = ["ReviewEngine"]
