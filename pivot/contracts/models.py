from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import (
    InjectionPoint,
    Lane,
    MutationFamily,
    ObstacleClassification,
    SignatureSource,
)

PAYLOAD_PLACEHOLDER = "{{payload}}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Obstacle input
# ---------------------------------------------------------------------------


class AttemptRecord(BaseModel):
    strategy: str
    payload: str = ""
    score: float = Field(ge=0.0, le=1.0, default=0.0)
    outcome: str = ""


class RequestOptions(BaseModel):
    """How the blocked request is replayed; the payload lands at injection_point."""
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    injection_point: InjectionPoint = InjectionPoint.QUERY
    param_name: str = "q"
    timeout_seconds: Optional[float] = Field(default=None, gt=0.0, le=600.0)
    follow_redirects: bool = False


class ObstacleEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    obstacle_id: str = Field(min_length=1)
    engagement_id: str = Field(min_length=1)
    phase: str = "exploitation"
    terminal_output: str = ""
    target_url: str = ""
    attempt_history: List[AttemptRecord] = Field(default_factory=list)

    # The payload that hit the obstacle; falls back to the last attempt's payload
    seed_payload: Optional[str] = None
    request_options: RequestOptions = Field(default_factory=RequestOptions)

    def base_payload(self, default: str = "test") -> str:
        if self.seed_payload:
            return self.seed_payload
        for record in reversed(self.attempt_history):
            if record.payload:
                return record.payload
        return default


# ---------------------------------------------------------------------------
# Request shaping emitted by mutation families
# ---------------------------------------------------------------------------


class RequestDirectives(BaseModel):
    headers: Dict[str, str] = Field(default_factory=dict)
    method: Optional[str] = None
    content_type: Optional[str] = None
    injection_point: Optional[InjectionPoint] = None
    delay_seconds: float = Field(ge=0.0, le=60.0, default=0.0)
    concurrency: int = Field(ge=1, le=20, default=1)
    chunk_size: Optional[int] = Field(default=None, ge=1)

    def is_empty(self) -> bool:
        return self == RequestDirectives()


# ---------------------------------------------------------------------------
# Responses, baselines and deltas
# ---------------------------------------------------------------------------


class ResponseFingerprint(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_code: int = Field(ge=0, le=999)
    body_hash: str
    body_length: int = Field(ge=0)
    response_time_ms: List[float] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)
    error_class: Optional[str] = None
    raw_body_sample: str = ""

    @property
    def mean_response_time(self) -> float:
        if not self.response_time_ms:
            return 0.0
        return sum(self.response_time_ms) / len(self.response_time_ms)


class BaselineStatistics(BaseModel):
    mean_response_time: float = 0.0
    std_dev_response_time: float = 0.0
    mean_body_length: float = 0.0
    std_dev_body_length: float = 0.0
    common_headers: Dict[str, str] = Field(default_factory=dict)
    status_code: int = 200
    error_class: Optional[str] = None
    sample_fingerprint: ResponseFingerprint
    sample_count: int = Field(ge=1)


class BaselineRecord(BaseModel):
    """On-disk form of a captured baseline."""
    engagement_id: str
    target_url: str = ""
    captured_at: datetime = Field(default_factory=utcnow)
    config: Dict[str, Any] = Field(default_factory=dict)
    statistics: BaselineStatistics


class HeaderChange(BaseModel):
    old: str
    new: str


class ResponseDelta(BaseModel):
    status_changed: bool = False
    error_class_changed: bool = False
    body_hash_changed: bool = False
    body_contains_target: bool = False

    # Relative change against the baseline body length
    body_length_delta: float = 0.0

    # Deviation from baseline mean timing in standard deviations
    timing_delta_std: float = 0.0

    raw_body_similarity: float = Field(ge=0.0, le=1.0, default=1.0)

    headers_added: List[str] = Field(default_factory=list)
    headers_removed: List[str] = Field(default_factory=list)
    headers_changed: Dict[str, HeaderChange] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Scoring and routing
# ---------------------------------------------------------------------------


class ScoreVector(BaseModel):
    status_changed: float = 0.0
    error_class_changed: float = 0.0
    body_hash_changed: float = 0.0
    payload_reflected: float = 0.0
    body_length_delta: float = 0.0
    timing_delta: float = 0.0
    header_changes: float = 0.0
    body_similarity: float = 0.0
    weighted_total: float = Field(ge=0.0, le=1.0, default=0.0)
    confidence_decay: bool = False


class PatternSignature(BaseModel):
    id: str = Field(min_length=1)
    patterns: List[str] = Field(default_factory=list)
    classification: ObstacleClassification
    confidence: float = Field(ge=0.0, le=1.0)
    lane_recommendation: Lane = Lane.HYBRID
    source: SignatureSource = SignatureSource.BUILTIN
    description: str = ""


class RoutingDecision(BaseModel):
    lane: Lane
    confidence: float = Field(ge=0.0, le=1.0)
    matched_pattern: Optional[str] = None
    classification: ObstacleClassification = ObstacleClassification.UNKNOWN
    reasoning: str = ""
    fallback_eligible: bool = True


class MutationResult(BaseModel):
    strategy_used: str
    lane_routed: Lane
    payload: str = ""
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)
    score_vector: Optional[ScoreVector] = None
    next_steps: List[str] = Field(default_factory=list)
    abandon: bool = False
    human_review_flag: bool = False
    trace_id: str = ""


# ---------------------------------------------------------------------------
# Anomalies
# ---------------------------------------------------------------------------


class AnomalyRecord(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    engagement_id: str
    obstacle_id: Optional[str] = None
    delta: ResponseDelta
    confidence_score: float = Field(ge=0.0, le=1.0)
    change_summary: str
    context: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Freestyle collaborator contract
# ---------------------------------------------------------------------------


class FreestyleBrief(BaseModel):
    obstacle_classification: ObstacleClassification
    phase: str
    terminal_output_excerpt: str = Field(max_length=800)
    attempted_mutations: List[str] = Field(default_factory=list, max_length=5)
    available_families: List[MutationFamily] = Field(default_factory=list)


class FreestyleSuggestion(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: str = Field(min_length=1, max_length=200)
    mutation_family: MutationFamily
    payload_template: str = Field(min_length=1, max_length=8192)
    rationale: str = Field(min_length=1)

    @field_validator("payload_template")
    @classmethod
    def require_placeholder(cls, v: str) -> str:
        if PAYLOAD_PLACEHOLDER not in v:
            raise ValueError(f"payload_template must contain {PAYLOAD_PLACEHOLDER}")
        return v

    def render(self, payload: str) -> str:
        return self.payload_template.replace(PAYLOAD_PLACEHOLDER, payload)


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


class RoutingHistoryEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    engagement_id: str
    obstacle_id: str
    decision: RoutingDecision
    result_lane: Lane
    outcome: str
    best_score: float = Field(ge=0.0, le=1.0, default=0.0)
    abandoned: bool = False
    freestyle_used: bool = False
    freestyle_succeeded: bool = False


class FreestyleLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    engagement_id: str
    obstacle_id: str
    suggestion: Optional[FreestyleSuggestion] = None
    score: Optional[float] = None
    succeeded: bool = False
    error: Optional[str] = None


class WeightAdjustment(BaseModel):
    signature_id: str
    current_weight: float
    new_weight: float
    delta: float
    reasons: List[str] = Field(default_factory=list)


class ReviewStatistics(BaseModel):
    total_obstacles: int = 0
    misrouted: int = 0
    abandoned: int = 0
    exploited: int = 0
    freestyle_suggestions: int = 0
    freestyle_successes: int = 0
    total_anomalies: int = 0
    lanes: Dict[str, int] = Field(default_factory=dict)


class ReviewReport(BaseModel):
    engagement_id: str
    reviewed_at: datetime = Field(default_factory=utcnow)
    statistics: ReviewStatistics = Field(default_factory=ReviewStatistics)
    weight_adjustments: List[WeightAdjustment] = Field(default_factory=list)
    new_signatures: List[PatternSignature] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


__all__ = [
    "PAYLOAD_PLACEHOLDER",
    "AnomalyRecord",
    "AttemptRecord",
    "BaselineRecord",
    "BaselineStatistics",
    "FreestyleBrief",
    "FreestyleLogEntry",
    "FreestyleSuggestion",
    "HeaderChange",
    "MutationResult",
    "ObstacleEvent",
    "PatternSignature",
    "RequestDirectives",
    "RequestOptions",
    "ResponseDelta",
    "ResponseFingerprint",
    "ReviewReport",
    "ReviewStatistics",
    "RoutingDecision",
    "RoutingHistoryEntry",
    "ScoreVector",
    "WeightAdjustment",
    "utcnow",
]
