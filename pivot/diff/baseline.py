"""
pivot/diff/baseline.py

Per-engagement baseline cache.

A baseline is captured once per engagement (N clean samples through the
probe executor), persisted as JSON next to the other engagement state and
reused for every obstacle in that engagement until explicitly invalidated.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from pydantic import ValidationError

from ..base.config import PivotConfig, get_config
from ..base.storage import atomic_write_text, safe_stem
from ..contracts.models import BaselineRecord, BaselineStatistics, RequestOptions

if TYPE_CHECKING:
    from ..net.executor import ProbeExecutor

logger = logging.getLogger(__name__)


class BaselineManager:
    def __init__(self, executor: "ProbeExecutor", config: Optional[PivotConfig] = None):
        self.executor = executor
        self.config = config or get_config()
        self.root = Path(self.config.storage.baselines_path)
        self._cache: Dict[str, BaselineStatistics] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def path_for(self, engagement_id: str) -> Path:
        return self.root / f"baseline_{safe_stem(engagement_id)}.json"

    def _lock(self, engagement_id: str) -> asyncio.Lock:
        lock = self._locks.get(engagement_id)
        if lock is None:
            lock = self._locks[engagement_id] = asyncio.Lock()
        return lock

    def has_baseline(self, engagement_id: str) -> bool:
        return engagement_id in self._cache or self.path_for(engagement_id).exists()

    def get_cached(self, engagement_id: str) -> Optional[BaselineStatistics]:
        return self._cache.get(engagement_id)

    def load(self, engagement_id: str) -> Optional[BaselineStatistics]:
        """Read the persisted baseline; a corrupt file is reported and treated as absent."""
        path = self.path_for(engagement_id)
        if not path.exists():
            return None
        try:
            record = BaselineRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"[Baseline] Ignoring corrupt baseline file {path}: {e}")
            return None
        self._cache[engagement_id] = record.statistics
        return record.statistics

    async def get_or_capture(
        self,
        engagement_id: str,
        target_url: str,
        options: Optional[RequestOptions] = None,
    ) -> BaselineStatistics:
        cached = self._cache.get(engagement_id)
        if cached is not None:
            return cached

        async with self._lock(engagement_id):
            cached = self._cache.get(engagement_id) or self.load(engagement_id)
            if cached is not None:
                return cached
            return await self._capture(engagement_id, target_url, options or RequestOptions())

    async def recapture(
        self,
        engagement_id: str,
        target_url: str,
        options: Optional[RequestOptions] = None,
    ) -> BaselineStatistics:
        async with self._lock(engagement_id):
            self._drop(engagement_id)
            return await self._capture(engagement_id, target_url, options or RequestOptions())

    async def _capture(self, engagement_id: str, target_url: str, options: RequestOptions) -> BaselineStatistics:
        logger.info(f"[Baseline] Capturing baseline for engagement {engagement_id} at {target_url}")
        _, stats = await self.executor.capture_baseline(
            target_url, options, self.config.baseline.sample_count
        )
        record = BaselineRecord(
            engagement_id=engagement_id,
            target_url=target_url,
            config=self.config.snapshot(),
            statistics=stats,
        )
        atomic_write_text(self.path_for(engagement_id), record.model_dump_json(indent=2))
        self._cache[engagement_id] = stats
        return stats

    def _drop(self, engagement_id: str) -> None:
        self._cache.pop(engagement_id, None)
        self.path_for(engagement_id).unlink(missing_ok=True)

    def invalidate(self, engagement_id: str) -> None:
        """Forget the baseline so the next obstacle triggers a fresh capture."""
        self._drop(engagement_id)
        logger.info(f"[Baseline] Invalidated baseline for engagement {engagement_id}")

    def release(self, engagement_id: str) -> None:
        """Drop in-memory state for a finished engagement; the file stays on disk."""
        self._cache.pop(engagement_id, None)
        self._locks.pop(engagement_id, None)


__all__ = ["BaselineManager"]
