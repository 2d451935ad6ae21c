"""Deterministic error classification for job failures."""

from __future__ import annotations

from dataclasses import dataclass

from dualpath.handlers.base import HandlerError
from dualpath.jobs.models import ErrorClass

HANDLER_NOT_FOUND = "HANDLER_NOT_FOUND"
LOST_OWNERSHIP = "LOST_OWNERSHIP"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

# Rules are checked in order; the first matching pattern wins.
_RULES: tuple[tuple[str, ErrorClass, tuple[str, ...]], ...] = (
    ("TIMEOUT", ErrorClass.TRANSIENT, ("timeout", "timed out")),
    (
        "CONNECTION_ERROR",
        ErrorClass.TRANSIENT,
        ("econnrefused", "connection refused", "connection reset", "failed to fetch"),
    ),
    ("NOT_FOUND", ErrorClass.PERMANENT, ("404", "not found")),
    ("AUTH_ERROR", ErrorClass.PERMANENT, ("401", "403", "unauthorized", "forbidden")),
    ("RATE_LIMITED", ErrorClass.TRANSIENT, ("429", "rate limit", "too many")),
    ("VALIDATION_ERROR", ErrorClass.PERMANENT, ("validation", "invalid")),
    ("MISSING_API_KEY", ErrorClass.PERMANENT, ("api key", "not configured")),
    ("SERVER_ERROR", ErrorClass.TRANSIENT, ("500", "internal server error")),
)
_CODE_CLASSES: dict[str, ErrorClass] = {code: error_class for code, error_class, _ in _RULES}


@dataclass(slots=True)
class ErrorClassification:
    """Normalized error classification result."""

    error_class: ErrorClass
    code: str
    retryable: bool
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        return {
            "error_class": self.error_class.value,
            "code": self.code,
            "retryable": self.retryable,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(error: BaseException | str) -> ErrorClassification:
    """Classify an exception or error message into a stable code."""

    if isinstance(error, HandlerError) and error.code:
        return classify_code(error.code)
    if isinstance(error, TimeoutError):
        return ErrorClassification(
            error_class=ErrorClass.TRANSIENT,
            code="TIMEOUT",
            retryable=True,
            matched_pattern=None,
        )

    haystack = str(error).lower()
    for code, error_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorClassification(
                error_class=error_class,
                code=code,
                retryable=error_class is ErrorClass.TRANSIENT,
                matched_pattern=pattern,
            )

    return ErrorClassification(
        error_class=ErrorClass.UNKNOWN,
        code=UNKNOWN_ERROR,
        retryable=False,
        matched_pattern=None,
    )


def classify_code(code: str) -> ErrorClassification:
    """Classification for an explicit code; unknown codes are permanent."""

    error_class = _CODE_CLASSES.get(code, ErrorClass.PERMANENT)
    return ErrorClassification(
        error_class=error_class,
        code=code,
        retryable=error_class is ErrorClass.TRANSIENT,
        matched_pattern=None,
    )


def error_message(error: BaseException | str) -> str:
    """Human-readable message used for ``error_message`` columns."""

    if isinstance(error, str):
        return error
    text = str(error)
    return text or type(error).__name__


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
