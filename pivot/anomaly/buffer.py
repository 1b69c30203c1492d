"""
pivot/anomaly/buffer.py

Append-only anomaly log.

One JSON-lines file per engagement under the anomaly storage root. The file
is only ever appended to, except by ``prune``/``clear`` which rewrite it
under the engagement lock. Records are loaded lazily on first access, so a
restarted process picks up where the previous one stopped without
duplicating lines.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import threading
from collections import Counter
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..base.config import PivotConfig, get_config
from ..base.storage import atomic_write_text, safe_stem
from ..contracts.models import AnomalyRecord, ResponseDelta, utcnow
from ..diff.delta import change_kinds, change_summary

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "timestamp",
    "engagement_id",
    "obstacle_id",
    "confidence_score",
    "change_summary",
    "mutation_strategy",
]

LOW_CONFIDENCE = 0.3
HIGH_CONFIDENCE = 0.7


def confidence_band(score: float) -> str:
    if score < LOW_CONFIDENCE:
        return "low"
    if score < HIGH_CONFIDENCE:
        return "medium"
    return "high"


class AnomalyBuffer:
    def __init__(self, config: Optional[PivotConfig] = None, root: Optional[Path] = None):
        cfg = config or get_config()
        self.root = Path(root or cfg.storage.anomalies_path)
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_per_engagement = cfg.anomaly.max_per_engagement
        self.max_age_days = cfg.anomaly.max_age_days
        self.thresholds = cfg.delta

        self._records: Dict[str, List[AnomalyRecord]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def path_for(self, engagement_id: str) -> Path:
        return self.root / f"anomalies_{safe_stem(engagement_id)}.jsonl"

    def _lock(self, engagement_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(engagement_id)
            if lock is None:
                lock = self._locks[engagement_id] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _read_file(self, engagement_id: str) -> List[AnomalyRecord]:
        path = self.path_for(engagement_id)
        if not path.exists():
            return []
        records: List[AnomalyRecord] = []
        line_no = 0
        try:
            with path.open("r", encoding="utf-8") as handle:
                for line_no, line in enumerate(handle, start=1):
                    if line.strip():
                        records.append(AnomalyRecord.model_validate_json(line))
        except (OSError, ValueError, ValidationError) as e:
            quarantine = path.with_name(f"{path.name}.corrupt-{utcnow().strftime('%Y%m%dT%H%M%S')}")
            logger.warning(
                f"[Anomaly] Corrupt anomaly log {path} (line {line_no}): {e}; moved to {quarantine.name}"
            )
            path.replace(quarantine)
            return []
        return records

    def _ensure_loaded(self, engagement_id: str) -> List[AnomalyRecord]:
        # Caller holds the engagement lock
        records = self._records.get(engagement_id)
        if records is None:
            records = self._read_file(engagement_id)[-self.max_per_engagement:]
            self._records[engagement_id] = records
            if records:
                logger.info(f"[Anomaly] Loaded {len(records)} anomalies for engagement {engagement_id}")
        return records

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def add(self, record: AnomalyRecord) -> AnomalyRecord:
        engagement_id = record.engagement_id
        line = record.model_dump_json() + "\n"
        with self._lock(engagement_id):
            records = self._ensure_loaded(engagement_id)
            with self.path_for(engagement_id).open("a", encoding="utf-8") as handle:
                handle.write(line)
            records.append(record)
            if len(records) > self.max_per_engagement:
                del records[: len(records) - self.max_per_engagement]
        return record

    def record(
        self,
        engagement_id: str,
        delta: ResponseDelta,
        confidence_score: float,
        obstacle_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AnomalyRecord:
        return self.add(
            AnomalyRecord(
                engagement_id=engagement_id,
                obstacle_id=obstacle_id,
                delta=delta,
                confidence_score=min(max(confidence_score, 0.0), 1.0),
                change_summary=change_summary(delta, self.thresholds),
                context=context or {},
            )
        )

    def prune(
        self,
        engagement_id: str,
        max_age_days: Optional[int] = None,
        max_count: Optional[int] = None,
    ) -> int:
        """Drop records older than ``max_age_days`` and beyond ``max_count``; returns how many went."""
        max_age = self.max_age_days if max_age_days is None else max_age_days
        cutoff = utcnow() - timedelta(days=max_age)

        with self._lock(engagement_id):
            self._records.pop(engagement_id, None)
            all_records = self._read_file(engagement_id)
            kept = [r for r in all_records if r.timestamp >= cutoff]
            if max_count is not None and len(kept) > max_count:
                kept = kept[len(kept) - max_count:]
            removed = len(all_records) - len(kept)
            if removed:
                atomic_write_text(
                    self.path_for(engagement_id),
                    "".join(r.model_dump_json() + "\n" for r in kept),
                )
            self._records[engagement_id] = kept[-self.max_per_engagement:]

        if removed:
            logger.info(f"[Anomaly] Pruned {removed} anomalies for engagement {engagement_id}")
        return removed

    def clear(self, engagement_id: str) -> None:
        with self._lock(engagement_id):
            self._records.pop(engagement_id, None)
            self.path_for(engagement_id).unlink(missing_ok=True)

    def release(self, engagement_id: str) -> None:
        """Forget the in-memory copy; the file stays on disk."""
        with self._lock(engagement_id):
            self._records.pop(engagement_id, None)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_anomalies(
        self,
        engagement_id: str,
        min_confidence: float = 0.0,
        limit: Optional[int] = None,
    ) -> List[AnomalyRecord]:
        """Most recent records held in memory (at most ``max_per_engagement``)."""
        with self._lock(engagement_id):
            records = list(self._ensure_loaded(engagement_id))
        selected = [r for r in records if r.confidence_score >= min_confidence]
        return selected[-limit:] if limit else selected

    def by_confidence(self, engagement_id: str) -> Dict[str, List[AnomalyRecord]]:
        bands: Dict[str, List[AnomalyRecord]] = {"low": [], "medium": [], "high": []}
        for record in self.get_anomalies(engagement_id):
            bands[confidence_band(record.confidence_score)].append(record)
        return bands

    def by_change_type(self, engagement_id: str) -> Dict[str, List[AnomalyRecord]]:
        groups: Dict[str, List[AnomalyRecord]] = {}
        for record in self.get_anomalies(engagement_id):
            for kind in change_kinds(record.delta, self.thresholds):
                groups.setdefault(kind, []).append(record)
        return groups

    def statistics(self, engagement_id: str) -> Dict[str, Any]:
        records = self.get_anomalies(engagement_id)
        bands = Counter(confidence_band(r.confidence_score) for r in records)
        kinds = Counter(kind for r in records for kind in change_kinds(r.delta, self.thresholds))
        average = sum(r.confidence_score for r in records) / len(records) if records else 0.0
        return {
            "engagement_id": engagement_id,
            "total": len(records),
            "by_confidence": {band: bands.get(band, 0) for band in ("low", "medium", "high")},
            "by_change_type": dict(kinds),
            "average_confidence": round(average, 4),
            "recent": [r.model_dump(mode="json") for r in records[-10:]],
        }

    def export(self, engagement_id: str, format: str = "json") -> str:
        """Export every record in the engagement's log file, not just the in-memory tail."""
        with self._lock(engagement_id):
            records = self._read_file(engagement_id)
        fmt = format.lower()
        if fmt == "json":
            return json.dumps(
                {
                    "engagement_id": engagement_id,
                    "exported_at": utcnow().isoformat(),
                    "total_anomalies": len(records),
                    "anomalies": [r.model_dump(mode="json") for r in records],
                },
                indent=2,
            )
        if fmt == "csv":
            out = io.StringIO()
            writer = csv.writer(out)
            writer.writerow(CSV_COLUMNS)
            for r in records:
                writer.writerow([
                    r.timestamp.isoformat(),
                    r.engagement_id,
                    r.obstacle_id or "",
                    f"{r.confidence_score:.4f}",
                    r.change_summary,
                    r.context.get("mutation_strategy", ""),
                ])
            return out.getvalue()
        raise ValueError(f"Unsupported export format: {format}")


__all__ = ["AnomalyBuffer", "CSV_COLUMNS", "confidence_band"]
