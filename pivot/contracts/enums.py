from __future__ import annotations

from enum import Enum


class Lane(str, Enum):
    DETERMINISTIC = "deterministic"
    FREESTYLE = "freestyle"
    HYBRID = "hybrid"


class ObstacleClassification(str, Enum):
    WAF_BLOCK = "WAF_BLOCK"
    SQL_INJECTION_SURFACE = "SQL_INJECTION_SURFACE"
    XSS_SURFACE = "XSS_SURFACE"
    TEMPLATE_INJECTION_SURFACE = "TEMPLATE_INJECTION_SURFACE"
    CHARACTER_FILTER = "CHARACTER_FILTER"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT_OR_DROP = "TIMEOUT_OR_DROP"
    AUTH_FAILURE = "AUTH_FAILURE"
    PATH_TRAVERSAL_SURFACE = "PATH_TRAVERSAL_SURFACE"
    COMMAND_INJECTION_SURFACE = "COMMAND_INJECTION_SURFACE"
    XXE_SURFACE = "XXE_SURFACE"
    DESERIALIZATION_SURFACE = "DESERIALIZATION_SURFACE"
    UNKNOWN = "UNKNOWN"


class MutationFamily(str, Enum):
    ENCODING = "encoding"
    STRUCTURAL = "structural"
    TIMING = "timing"
    PROTOCOL = "protocol"


class InjectionPoint(str, Enum):
    QUERY = "query"
    BODY = "body"
    HEADER = "header"
    PATH = "path"
    RAW_QUERY = "raw_query"


class ObstacleState(str, Enum):
    ROUTED = "routed"
    ATTEMPTING = "attempting"
    EXPLOITED = "exploited"
    STALLED = "stalled"
    ABANDONED = "abandoned"


class AttemptOutcome(str, Enum):
    EXPLOITED = "exploited"
    PROGRESSING = "progressing"
    NO_PROGRESS = "no_progress"
    STALLED = "stalled"
    FAILED = "failed"
    BLOCKED = "blocked"


class SignatureSource(str, Enum):
    BUILTIN = "builtin"
    REVIEW = "review"
    MANUAL = "manual"


__all__ = [
    "AttemptOutcome",
    "InjectionPoint",
    "Lane",
    "MutationFamily",
    "ObstacleClassification",
    "ObstacleState",
    "SignatureSource",
]
