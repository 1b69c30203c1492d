# ============================================================================
# pivot/base/config.py
# Pivot Engine Configuration Management
# ============================================================================
#
# PURPOSE:
# Every tunable knob of the mutation engine lives here: probe timeouts,
# baseline sampling, scoring thresholds, routing thresholds, anomaly
# retention, the local LLM endpoint and where state is persisted.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: one section per concern, immutable once built
# 2. Environment variables: PIVOT_* overrides (e.g. PIVOT_SEED=7)
# 3. Singleton: get_config() / set_config() share one instance per process
#
# ============================================================================

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ErrorCode, PivotError

logger = logging.getLogger(__name__)


# ============================================================================
# Probe Configuration
# ============================================================================
# Controls how mutated requests are replayed against the target.

@dataclass(frozen=True)
class ProbeConfig:
    # Per-request timeout in seconds
    timeout_seconds: float = 10.0

    # User-Agent sent with every probe unless the request overrides it
    user_agent: str = "Mozilla/5.0 (compatible; SentinelForge-Pivot/1.0)"

    # How many characters of the response body are kept on the fingerprint
    body_sample_chars: int = 2000

    # Whether to verify TLS certificates of the target
    verify_tls: bool = False

    # Payload used when neither the event nor the history carries one
    default_payload: str = "test"


# ============================================================================
# Baseline Configuration
# ============================================================================
# A baseline is a handful of clean requests used as the reference point
# for every delta in an engagement.

@dataclass(frozen=True)
class BaselineConfig:
    sample_count: int = 5

    # Pause between baseline samples (seconds)
    request_delay_seconds: float = 1.0


# ============================================================================
# Signal Weights
# ============================================================================
# Each observable change contributes a fixed weight to the deterministic
# score. The table can be replaced from a JSON file (PIVOT_SIGNAL_WEIGHTS).

@dataclass(frozen=True)
class SignalWeights:
    status_changed: float = 0.30
    error_class_changed: float = 0.20
    body_hash_changed: float = 0.15
    payload_reflected: float = 0.50

    # Relative body length change tiers (fraction of baseline length)
    body_length_minor_threshold: float = 0.10
    body_length_minor: float = 0.10
    body_length_major_threshold: float = 0.30
    body_length_major: float = 0.20

    # Timing deviation tiers (in baseline standard deviations)
    timing_minor_threshold: float = 1.0
    timing_minor: float = 0.10
    timing_major_threshold: float = 2.0
    timing_major: float = 0.20

    # Per-header weights
    header_added: float = 0.05
    header_removed: float = 0.03
    header_changed: float = 0.02

    # Body similarity tiers (lower similarity = bigger change)
    similarity_minor_threshold: float = 0.80
    similarity_minor: float = 0.10
    similarity_major_threshold: float = 0.50
    similarity_major: float = 0.20

    @classmethod
    def from_file(cls, path: Path) -> "SignalWeights":
        """Load a weight table from JSON, ignoring unknown keys."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"[Config] Ignoring unknown signal weights: {unknown}")
        return cls(**{k: float(v) for k, v in data.items() if k in known})


# ============================================================================
# Scoring Configuration
# ============================================================================

@dataclass(frozen=True)
class ScoringConfig:
    weights: SignalWeights = field(default_factory=SignalWeights)

    # A score at or above this confirms the bypass (stop probing)
    exploit_confirm_threshold: float = 0.85

    # A score must beat the previous best by more than this to count as progress
    progress_delta: float = 0.05

    # Attempt budget per obstacle before abandonment is considered
    max_deterministic_attempts: int = 12

    # Abandon only if none of the last N attempts made progress
    progress_window: int = 3

    # Confidence decay: slope over the last N scores per classification
    decay_window: int = 4
    decay_slope: float = 0.05


# ============================================================================
# Routing Configuration
# ============================================================================

@dataclass(frozen=True)
class RoutingConfig:
    # Weighted confidence above this (with no decay) goes deterministic
    deterministic_threshold: float = 0.75

    # Weighted confidence below this goes freestyle
    freestyle_threshold: float = 0.40

    # Confidence reported when nothing matches
    no_match_confidence: float = 0.10

    # Extra confidence per additional matching pattern
    multi_match_bonus: float = 0.05

    # Routing weight bounds and review step size
    weight_floor: float = 0.10
    weight_ceiling: float = 1.0
    default_weight: float = 0.50
    review_weight_step: float = 0.10

    # Anomaly groups need this many members to become a signature
    min_anomaly_support: int = 3
    max_proposed_confidence: float = 0.70


# ============================================================================
# Delta Configuration
# ============================================================================

@dataclass(frozen=True)
class DeltaConfig:
    # A component counts as changed only when it moves past these
    body_length_epsilon: float = 0.01
    timing_epsilon_std: float = 0.5
    similarity_floor: float = 0.95


# ============================================================================
# Anomaly Configuration
# ============================================================================

@dataclass(frozen=True)
class AnomalyConfig:
    # In-memory cap per engagement (file is append-only)
    max_per_engagement: int = 1000

    # Default retention for prune()
    max_age_days: int = 30


# ============================================================================
# Freestyle (LLM) Configuration
# ============================================================================

@dataclass(frozen=True)
class FreestyleConfig:
    enabled: bool = True
    provider: str = "ollama"
    ollama_url: str = "http://localhost:11434"
    model: str = "sentinel-9b-god-tier"
    request_timeout: float = 60.0

    # Brief bounds
    excerpt_chars: int = 800
    history_window: int = 5

    # Freestyle results are trusted less than the route that sent them
    confidence_discount: float = 0.7


# ============================================================================
# Storage Configuration
# ============================================================================

@dataclass(frozen=True)
class StorageConfig:
    base_dir: Path = field(default_factory=lambda: Path.home() / ".sentinelforge" / "pivot")

    @property
    def baselines_path(self) -> Path:
        return self.base_dir / "baselines"

    @property
    def anomalies_path(self) -> Path:
        return self.base_dir / "anomalies"

    @property
    def routing_state_file(self) -> Path:
        return self.base_dir / "routing_state.json"


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_enabled: bool = True
    file_name: str = "pivot.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass  # Not frozen because __post_init__ creates directories
class PivotConfig:
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    baseline: BaselineConfig = field(default_factory=BaselineConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    delta: DeltaConfig = field(default_factory=DeltaConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    freestyle: FreestyleConfig = field(default_factory=FreestyleConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log: LogConfig = field(default_factory=LogConfig)

    # Seed for every random source the mutation families use (None = OS entropy)
    seed: Optional[int] = None

    debug: bool = False

    def __post_init__(self):
        self.storage.base_dir.mkdir(parents=True, exist_ok=True)
        self.storage.baselines_path.mkdir(parents=True, exist_ok=True)
        self.storage.anomalies_path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_directory(cls, base_dir: Path, **overrides: Any) -> "PivotConfig":
        """Build a default config rooted at base_dir (tests, one-off tools)."""
        return cls(storage=StorageConfig(base_dir=Path(base_dir)), **overrides)

    def with_scoring(self, **changes: Any) -> "PivotConfig":
        return replace(self, scoring=replace(self.scoring, **changes))

    def with_routing(self, **changes: Any) -> "PivotConfig":
        return replace(self, routing=replace(self.routing, **changes))

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view of the settings that shape results."""
        return {
            "probe": asdict(self.probe),
            "baseline": asdict(self.baseline),
            "scoring": asdict(self.scoring),
            "routing": asdict(self.routing),
            "delta": asdict(self.delta),
            "seed": self.seed,
        }

    @classmethod
    def from_env(cls) -> "PivotConfig":
        try:
            return cls._from_env()
        except (ValueError, OSError) as e:
            raise PivotError(ErrorCode.CONFIG_INVALID, f"Invalid PIVOT_* environment: {e}") from e

    @classmethod
    def _from_env(cls) -> "PivotConfig":
        probe = ProbeConfig(
            timeout_seconds=float(os.getenv("PIVOT_PROBE_TIMEOUT", "10")),
            user_agent=os.getenv("PIVOT_USER_AGENT", ProbeConfig.user_agent),
            verify_tls=os.getenv("PIVOT_VERIFY_TLS", "false").lower() == "true",
            default_payload=os.getenv("PIVOT_DEFAULT_PAYLOAD", "test"),
        )

        baseline = BaselineConfig(
            sample_count=int(os.getenv("PIVOT_BASELINE_SAMPLES", "5")),
            request_delay_seconds=float(os.getenv("PIVOT_BASELINE_DELAY", "1.0")),
        )

        weights_file = os.getenv("PIVOT_SIGNAL_WEIGHTS")
        weights = SignalWeights.from_file(Path(weights_file)) if weights_file else SignalWeights()

        scoring = ScoringConfig(
            weights=weights,
            exploit_confirm_threshold=float(os.getenv("PIVOT_EXPLOIT_THRESHOLD", "0.85")),
            progress_delta=float(os.getenv("PIVOT_PROGRESS_DELTA", "0.05")),
            max_deterministic_attempts=int(os.getenv("PIVOT_MAX_ATTEMPTS", "12")),
            progress_window=int(os.getenv("PIVOT_PROGRESS_WINDOW", "3")),
            decay_window=int(os.getenv("PIVOT_DECAY_WINDOW", "4")),
            decay_slope=float(os.getenv("PIVOT_DECAY_SLOPE", "0.05")),
        )

        routing = RoutingConfig(
            deterministic_threshold=float(os.getenv("PIVOT_DETERMINISTIC_THRESHOLD", "0.75")),
            freestyle_threshold=float(os.getenv("PIVOT_FREESTYLE_THRESHOLD", "0.40")),
        )

        delta = DeltaConfig(
            body_length_epsilon=float(os.getenv("PIVOT_CHANGE_BODY_LENGTH", "0.01")),
            timing_epsilon_std=float(os.getenv("PIVOT_CHANGE_TIMING_STD", "0.5")),
            similarity_floor=float(os.getenv("PIVOT_CHANGE_SIMILARITY", "0.95")),
        )

        anomaly = AnomalyConfig(
            max_per_engagement=int(os.getenv("PIVOT_ANOMALY_MAX", "1000")),
            max_age_days=int(os.getenv("PIVOT_ANOMALY_MAX_AGE_DAYS", "30")),
        )

        freestyle = FreestyleConfig(
            enabled=os.getenv("PIVOT_FREESTYLE_ENABLED", "true").lower() == "true",
            ollama_url=os.getenv("PIVOT_OLLAMA_URL", "http://localhost:11434"),
            model=os.getenv("PIVOT_AI_MODEL", "sentinel-9b-god-tier"),
            request_timeout=float(os.getenv("PIVOT_AI_TIMEOUT", "60")),
        )

        base_dir = Path(os.getenv("PIVOT_DATA_DIR", str(Path.home() / ".sentinelforge" / "pivot")))
        seed = os.getenv("PIVOT_SEED")

        return cls(
            probe=probe,
            baseline=baseline,
            scoring=scoring,
            routing=routing,
            delta=delta,
            anomaly=anomaly,
            freestyle=freestyle,
            storage=StorageConfig(base_dir=base_dir),
            log=LogConfig(level=os.getenv("PIVOT_LOG_LEVEL", "INFO")),
            seed=int(seed) if seed else None,
            debug=os.getenv("PIVOT_DEBUG", "false").lower() == "true",
        )


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[PivotConfig] = None


def get_config() -> PivotConfig:
    """
    Get the global configuration instance.

    Returns:
        The shared PivotConfig instance (built from the environment on first use)
    """
    global _config
    if _config is None:
        _config = PivotConfig.from_env()
    return _config


def set_config(config: Optional[PivotConfig]) -> None:
    """Replace the global configuration (mainly used for testing)."""
    global _config
    _config = config


def setup_logging(config: Optional[PivotConfig] = None) -> None:
    """
    Configure console and rotating file logging.

    Call this once at application startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        log_path = cfg.storage.base_dir / cfg.log.file_name
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    level = "DEBUG" if cfg.debug else cfg.log.level.upper()
    logging.basicConfig(
        level=getattr(logging, level),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )


__all__ = [
    "AnomalyConfig",
    "BaselineConfig",
    "DeltaConfig",
    "FreestyleConfig",
    "LogConfig",
    "PivotConfig",
    "ProbeConfig",
    "RoutingConfig",
    "ScoringConfig",
    "SignalWeights",
    "StorageConfig",
    "get_config",
    "set_config",
    "setup_logging",
]
