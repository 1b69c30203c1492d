"""
pivot/routing/state.py

Routing state store: the signature library and its routing weights.

This is the one piece of state shared by every engagement in the process.
Writers take a lock and swap in a fresh dictionary; readers never lock and
see either the old or the new mapping. Review output is staged per
engagement and only reaches the shared mapping through ``promote``.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from ..base.config import RoutingConfig
from ..base.errors import CorruptStateFileError
from ..base.storage import atomic_write_text
from ..contracts.models import PatternSignature
from .signatures import default_signatures

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


@dataclass
class StagedUpdates:
    weights: Dict[str, float] = field(default_factory=dict)
    signatures: Dict[str, PatternSignature] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.weights and not self.signatures


class RoutingStateStore:
    def __init__(
        self,
        signatures: Optional[Iterable[PatternSignature]] = None,
        config: Optional[RoutingConfig] = None,
    ):
        self.config = config or RoutingConfig()
        sigs = list(signatures) if signatures is not None else default_signatures()
        self._signatures: Dict[str, PatternSignature] = {s.id: s for s in sigs}
        self._weights: Dict[str, float] = {}
        self._staged: Dict[str, StagedUpdates] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def signatures(self) -> List[PatternSignature]:
        return list(self._signatures.values())

    def get_signature(self, signature_id: str) -> Optional[PatternSignature]:
        return self._signatures.get(signature_id)

    def weight(self, signature_id: str) -> float:
        """Stored routing weight; unset weights default to the signature's own confidence."""
        stored = self._weights.get(signature_id)
        if stored is not None:
            return stored
        sig = self._signatures.get(signature_id)
        return sig.confidence if sig else self.config.default_weight

    def weights(self) -> Dict[str, float]:
        return {sig_id: self.weight(sig_id) for sig_id in self._signatures}

    # ------------------------------------------------------------------
    # Writes (atomic per signature id)
    # ------------------------------------------------------------------

    def clamp(self, weight: float) -> float:
        return round(min(max(weight, self.config.weight_floor), self.config.weight_ceiling), 6)

    def set_weight(self, signature_id: str, weight: float) -> float:
        value = self.clamp(weight)
        with self._lock:
            updated = dict(self._weights)
            updated[signature_id] = value
            self._weights = updated
        return value

    def add_signature(self, signature: PatternSignature, weight: Optional[float] = None) -> None:
        with self._lock:
            sigs = dict(self._signatures)
            sigs[signature.id] = signature
            weights = dict(self._weights)
            weights[signature.id] = self.clamp(signature.confidence if weight is None else weight)
            self._signatures = sigs
            self._weights = weights
        logger.info(f"[Routing] Signature {signature.id} registered ({signature.classification.value})")

    def remove_signature(self, signature_id: str) -> bool:
        with self._lock:
            if signature_id not in self._signatures:
                return False
            sigs = dict(self._signatures)
            del sigs[signature_id]
            weights = dict(self._weights)
            weights.pop(signature_id, None)
            self._signatures = sigs
            self._weights = weights
        return True

    # ------------------------------------------------------------------
    # Engagement-scoped staging
    # ------------------------------------------------------------------

    def stage_weight(self, engagement_id: str, signature_id: str, weight: float) -> None:
        with self._lock:
            self._staged.setdefault(engagement_id, StagedUpdates()).weights[signature_id] = self.clamp(weight)

    def stage_signature(self, engagement_id: str, signature: PatternSignature) -> None:
        with self._lock:
            self._staged.setdefault(engagement_id, StagedUpdates()).signatures[signature.id] = signature

    def staged(self, engagement_id: str) -> StagedUpdates:
        return self._staged.get(engagement_id, StagedUpdates())

    def promote(self, engagement_id: str) -> int:
        """Apply an engagement's staged updates to the shared state. Returns the number applied."""
        with self._lock:
            staged = self._staged.pop(engagement_id, None)
            if staged is None or staged.is_empty():
                return 0
            for signature in staged.signatures.values():
                self.add_signature(signature)
            for signature_id, weight in staged.weights.items():
                self.set_weight(signature_id, weight)
        count = len(staged.weights) + len(staged.signatures)
        logger.info(f"[Routing] Promoted {count} staged updates from engagement {engagement_id}")
        return count

    def discard(self, engagement_id: str) -> None:
        with self._lock:
            self._staged.pop(engagement_id, None)

    # ------------------------------------------------------------------
    # Snapshot / persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        sigs, weights = self._signatures, self._weights
        return {
            "version": SNAPSHOT_VERSION,
            "signatures": [s.model_dump(mode="json") for s in sigs.values()],
            "weights": dict(weights),
        }

    def restore(self, data: Dict[str, Any]) -> None:
        signatures = [PatternSignature.model_validate(s) for s in data.get("signatures", [])]
        weights = {str(k): self.clamp(float(v)) for k, v in data.get("weights", {}).items()}
        with self._lock:
            self._signatures = {s.id: s for s in signatures}
            self._weights = weights

    def save(self, path: Path) -> None:
        atomic_write_text(Path(path), json.dumps(self.snapshot(), indent=2))

    @classmethod
    def load(
        cls,
        path: Path,
        config: Optional[RoutingConfig] = None,
        strict: bool = False,
    ) -> "RoutingStateStore":
        """
        Load a snapshot; a missing file yields the default library.

        A corrupt file also yields the defaults, unless ``strict`` is set, in
        which case CorruptStateFileError is raised so the caller does not
        overwrite it.
        """
        store = cls(config=config)
        path = Path(path)
        if not path.exists():
            return store
        try:
            store.restore(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError, AttributeError, ValidationError) as e:
            if strict:
                raise CorruptStateFileError(
                    message=f"Routing state {path} is unreadable: {e}",
                    details={"path": str(path)},
                ) from e
            logger.warning(f"[Routing] Ignoring corrupt routing state {path}: {e}")
            return cls(config=config)
        return store


__all__ = ["RoutingStateStore", "StagedUpdates"]
