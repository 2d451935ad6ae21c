from __future__ import annotations

import allure
import pytest

from dualpath.handlers.base import HandlerError
from dualpath.jobs.failure_classifier import (
    HANDLER_NOT_FOUND,
    UNKNOWN_ERROR,
    classify_code,
    classify_error,
    error_message,
)
from dualpath.jobs.models import ErrorClass

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("message", "code", "error_class"),
    [
        ("Request timed out after 30s", "TIMEOUT", ErrorClass.TRANSIENT),
        ("connect ECONNREFUSED 127.0.0.1:443", "CONNECTION_ERROR", ErrorClass.TRANSIENT),
        ("HTTP 404 from upstream", "NOT_FOUND", ErrorClass.PERMANENT),
        ("401 Unauthorized", "AUTH_ERROR", ErrorClass.PERMANENT),
        ("429 Too Many Requests", "RATE_LIMITED", ErrorClass.TRANSIENT),
        ("Validation failed for field email", "VALIDATION_ERROR", ErrorClass.PERMANENT),
        ("OpenAI API key is missing", "MISSING_API_KEY", ErrorClass.PERMANENT),
        ("500 Internal Server Error", "SERVER_ERROR", ErrorClass.TRANSIENT),
    ],
)
def test_classifier_maps_message_patterns(message: str, code: str, error_class: ErrorClass) -> None:
    classified = classify_error(RuntimeError(message))

    assert classified.code == code
    assert classified.error_class == error_class
    assert classified.retryable is (error_class is ErrorClass.TRANSIENT)
    assert classified.matched_pattern is not None


def test_classifier_rule_order_prefers_timeout_over_server_error() -> None:
    classified = classify_error("500: upstream timeout")

    assert classified.code == "TIMEOUT"
    assert classified.matched_pattern == "timeout"


def test_classifier_honours_explicit_handler_code() -> None:
    classified = classify_error(HandlerError("nothing matches here", code="RATE_LIMITED"))

    assert classified.code == "RATE_LIMITED"
    assert classified.retryable is True
    assert classified.to_event_details()["error_class"] == "transient"


def test_classifier_maps_builtin_timeout_error() -> None:
    assert classify_error(TimeoutError()).code == "TIMEOUT"


def test_classifier_falls_back_to_unknown() -> None:
    classified = classify_error(RuntimeError("boom"))

    assert classified.code == UNKNOWN_ERROR
    assert classified.error_class == ErrorClass.UNKNOWN
    assert classified.retryable is False


def test_error_message_uses_type_name_for_empty_exceptions() -> None:
    assert error_message(KeyError()) == "KeyError"
    assert error_message(RuntimeError("boom")) == "boom"
    assert error_message("plain") == "plain"


def test_explicit_codes_keep_their_class() -> None:
    assert classify_code("RATE_LIMITED").retryable is True
    not_found = classify_code(HANDLER_NOT_FOUND)
    assert not_found.error_class == ErrorClass.PERMANENT
    assert not_found.to_event_details() == {
        "error_class": "permanent",
        "code": HANDLER_NOT_FOUND,
        "retryable": False,
        "matched_pattern": None,
    }
