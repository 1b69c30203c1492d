"""Structured error taxonomy for the pivot engine."""
#
# PURPOSE:
# Every failure the engine can surface carries a searchable code, a human
# message and a details dictionary. Callers can branch on the typed
# subclasses; logs and the CLI print the code.
#
# ERROR CODE FORMAT:
# - MUTATION_XXX: mutation family / variant errors (caller bugs)
# - PROBE_XXX: probe execution errors
# - BASELINE_XXX: baseline capture errors
# - FREESTYLE_XXX: LLM collaborator errors
# - STATE_XXX: persisted state and state machine errors
# - CONFIG_XXX: configuration errors
#
# USAGE:
#   from pivot.base.errors import PivotError, ErrorCode
#
#   raise PivotError(
#       ErrorCode.PROBE_TIMEOUT,
#       "Probe timed out",
#       details={"target_url": "https://example.com"}
#   )
#
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Mutation Errors
    MUTATION_UNKNOWN_FAMILY = "MUTATION_001"
    MUTATION_UNKNOWN_VARIANT = "MUTATION_002"

    # Probe Errors
    PROBE_TRANSPORT_FAILED = "PROBE_001"
    PROBE_TIMEOUT = "PROBE_002"

    # Baseline Errors
    BASELINE_CAPTURE_FAILED = "BASELINE_001"

    # Freestyle Errors
    FREESTYLE_UNAVAILABLE = "FREESTYLE_001"
    FREESTYLE_INVALID_RESPONSE = "FREESTYLE_002"

    # State Errors
    STATE_CORRUPT_FILE = "STATE_001"
    STATE_INVALID_TRANSITION = "STATE_002"

    # Config Errors
    CONFIG_INVALID = "CONFIG_001"

    # System Errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


# Codes that indicate a caller bug; retrying the same call cannot succeed
NON_RETRYABLE = frozenset({
    ErrorCode.MUTATION_UNKNOWN_FAMILY,
    ErrorCode.MUTATION_UNKNOWN_VARIANT,
    ErrorCode.STATE_INVALID_TRANSITION,
    ErrorCode.CONFIG_INVALID,
})


class PivotError(Exception):
    """
    Base exception with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "PROBE_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
    """

    default_code = ErrorCode.SYSTEM_INTERNAL_ERROR

    def __init__(
        self,
        code: Optional[ErrorCode] = None,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code.value}] {message}")

    @property
    def retryable(self) -> bool:
        return self.code not in NON_RETRYABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class UnknownMutationFamilyError(PivotError):
    """Raised when a mutation family name is not one of the four known families."""

    def __init__(self, family: str):
        super().__init__(
            ErrorCode.MUTATION_UNKNOWN_FAMILY,
            f"Unknown mutation family: {family}",
            details={"family": family},
        )
        self.family = family


class UnknownVariantError(PivotError):
    """Raised when a family is asked to apply a variant it does not define."""

    def __init__(self, family: str, variant: str):
        super().__init__(
            ErrorCode.MUTATION_UNKNOWN_VARIANT,
            f"Unknown {family} variant: {variant}",
            details={"family": family, "variant": variant},
        )
        self.family = family
        self.variant = variant


class ProbeExecutionError(PivotError):
    """Raised when a probe never produced a response (transport failure or timeout)."""

    default_code = ErrorCode.PROBE_TRANSPORT_FAILED


class BaselineCaptureFailedError(PivotError):
    """Raised when every baseline sample failed."""

    default_code = ErrorCode.BASELINE_CAPTURE_FAILED


class FreestyleCollaboratorError(PivotError):
    default_code = ErrorCode.FREESTYLE_UNAVAILABLE


class InvalidStateTransitionError(PivotError):
    default_code = ErrorCode.STATE_INVALID_TRANSITION


class CorruptStateFileError(PivotError):
    default_code = ErrorCode.STATE_CORRUPT_FILE


def handle_error(error: Exception, context: Optional[str] = None) -> PivotError:
    """
    Convert a generic exception to a PivotError.

    Args:
        error: The original exception
        context: Optional context string (e.g., "while replaying probe")

    Returns:
        PivotError with an appropriate code and message
    """
    if isinstance(error, PivotError):
        return error

    error_type = type(error).__name__
    if "Timeout" in error_type:
        code = ErrorCode.PROBE_TIMEOUT
    elif "Connect" in error_type or "Network" in error_type:
        code = ErrorCode.PROBE_TRANSPORT_FAILED
    else:
        code = ErrorCode.SYSTEM_INTERNAL_ERROR

    message = str(error) or error_type
    if context:
        message = f"{context}: {message}"

    return PivotError(
        code,
        message,
        details={"original_type": error_type, "original_message": str(error)},
    )


__all__ = [
    "BaselineCaptureFailedError",
    "CorruptStateFileError",
    "ErrorCode",
    "FreestyleCollaboratorError",
    "InvalidStateTransitionError",
    "PivotError",
    "ProbeExecutionError",
    "UnknownMutationFamilyError",
    "UnknownVariantError",
    "handle_error",
]
