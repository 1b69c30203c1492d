"""Built-in obstacle signature library."""

from __future__ import annotations

from typing import List

from ..contracts.enums import Lane, ObstacleClassification
from ..contracts.models import PatternSignature

EMPTY_RESPONSE_ID = "EMPTY_RESPONSE"

_C = ObstacleClassification

_DEFAULTS = [
    PatternSignature(
        id="WAF_GENERIC_BLOCK",
        patterns=["403 Forbidden", "Access Denied", "Request blocked"],
        classification=_C.WAF_BLOCK,
        confidence=0.90,
        lane_recommendation=Lane.DETERMINISTIC,
        description="Generic WAF block page",
    ),
    PatternSignature(
        id="SQL_ERROR_MYSQL",
        patterns=["You have an error in your SQL syntax", "mysql_fetch"],
        classification=_C.SQL_INJECTION_SURFACE,
        confidence=0.95,
        lane_recommendation=Lane.DETERMINISTIC,
        description="MySQL syntax error leaked to the response",
    ),
    PatternSignature(
        id="CHAR_BLACKLIST",
        patterns=["invalid character", "character not allowed", "illegal character"],
        classification=_C.CHARACTER_FILTER,
        confidence=0.85,
        lane_recommendation=Lane.DETERMINISTIC,
        description="Input character blacklist",
    ),
    PatternSignature(
        id="SSTI_ERROR",
        patterns=["TemplateSyntaxError", "jinja2.exceptions", "Smarty Error"],
        classification=_C.TEMPLATE_INJECTION_SURFACE,
        confidence=0.90,
        lane_recommendation=Lane.DETERMINISTIC,
        description="Template engine error",
    ),
    PatternSignature(
        id="RATE_LIMIT",
        patterns=["429 Too Many Requests", "rate limit exceeded", "slow down"],
        classification=_C.RATE_LIMIT,
        confidence=0.95,
        lane_recommendation=Lane.DETERMINISTIC,
        description="Rate limiter response",
    ),
    PatternSignature(
        id="AUTH_REQUIRED",
        patterns=["401 Unauthorized", "authentication required", "invalid token"],
        classification=_C.AUTH_FAILURE,
        confidence=0.80,
        lane_recommendation=Lane.HYBRID,
        description="Authentication gate",
    ),
    PatternSignature(
        id="AMBIGUOUS_500",
        patterns=["500 Internal Server Error"],
        classification=_C.UNKNOWN,
        confidence=0.40,
        lane_recommendation=Lane.HYBRID,
        description="Server error with no clear cause",
    ),
    PatternSignature(
        id=EMPTY_RESPONSE_ID,
        patterns=[],
        classification=_C.TIMEOUT_OR_DROP,
        confidence=0.30,
        lane_recommendation=Lane.FREESTYLE,
        description="No output at all (timeout or dropped connection)",
    ),
]


def default_signatures() -> List[PatternSignature]:
    return [sig.model_copy(deep=True) for sig in _DEFAULTS]


__all__ = ["EMPTY_RESPONSE_ID", "default_signatures"]
