from __future__ import annotations

from typing import Any

import allure
import pytest

from dualpath.assistant.responder import (
    FastPathError,
    FastRequest,
    FastResponder,
    ResponseType,
    UserProfile,
    classify_message,
)
from dualpath.assistant.routing import RoutingEngine
from dualpath.config import RoutingSettings
from dualpath.handlers.base import HandlerResult
from dualpath.jobs.models import DEEP_PROCESSING_JOB_TYPE, JobStatus
from dualpath.jobs.repository import JobStore

pytestmark = [
    allure.epic("Fast Path"),
    allure.feature("Fast Responder"),
]


class _RecordingHandler:
    def __init__(self, result: HandlerResult | None = None, error: Exception | None = None):
        self.result = result or HandlerResult.ok("4")
        self.error = error
        self.payloads: list[dict[str, Any]] = []

    def __call__(self, payload: dict[str, Any]) -> HandlerResult:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.result


def _responder(store: JobStore, handler: _RecordingHandler | None = None) -> FastResponder:
    return FastResponder(
        store=store,
        routing_engine=RoutingEngine(settings=RoutingSettings()),
        direct_handler=handler or _RecordingHandler(),
    )


def test_trivial_message_is_answered_directly_without_job(store: JobStore) -> None:
    handler = _RecordingHandler(HandlerResult.ok("2+2 is 4"))

    response = _responder(store, handler).respond(
        FastRequest(message="What's 2+2?", user_id="user-1"),
    )

    assert response.response_type == ResponseType.DIRECT
    assert response.content == "2+2 is 4"
    assert response.job_id is None
    assert response.has_follow_up is False
    assert len(handler.payloads) == 1
    assert store.list_jobs() == []
    replies = store.list_fast_replies(thread_id=response.thread_id)
    assert [reply.response_type for reply in replies] == ["direct"]


def test_research_request_enqueues_follow_up_job(store: JobStore) -> None:
    handler = _RecordingHandler()

    response = _responder(store, handler).respond(
        FastRequest(
            message="Research the latest news about fusion energy",
            user_id="user-1",
            thread_id="thread-7",
            user_profile=UserProfile(name="Sam"),
        ),
    )

    assert response.has_follow_up is True
    assert response.job_id is not None
    assert response.thread_id == "thread-7"
    assert response.agent == "researcher"
    assert response.response_type == ResponseType.ACKNOWLEDGMENT
    assert response.content.startswith("Sam, ")
    assert handler.payloads == []

    job = store.get_job(response.job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.job_type == DEEP_PROCESSING_JOB_TYPE
    assert job.thread_id == "thread-7"
    assert job.user_id == "user-1"
    assert job.payload["message"] == "Research the latest news about fusion energy"
    assert job.payload["routing"]["agent"] == "researcher"
    assert job.payload["user_profile"]["name"] == "Sam"


def test_command_message_gets_action_preview(store: JobStore) -> None:
    response = _responder(store).respond(
        FastRequest(message="Schedule a meeting and email an invite to the team", user_id="user-1"),
    )

    assert response.response_type == ResponseType.ACTION_PREVIEW
    assert response.agent == "secretary"
    assert "scheduling" in response.content
    assert response.job_id is not None


def test_short_ambiguous_message_asks_for_clarification(store: JobStore) -> None:
    response = _responder(store).respond(FastRequest(message="Hmm maybe", user_id="user-1"))

    assert response.response_type == ResponseType.CLARIFICATION
    assert response.has_follow_up is False
    assert response.job_id is None
    assert store.list_jobs() == []


def test_skip_fast_talker_runs_handler_synchronously(store: JobStore) -> None:
    handler = _RecordingHandler(HandlerResult.ok("full answer"))

    response = _responder(store, handler).respond(
        FastRequest(
            message="Research the latest news about fusion energy",
            user_id="user-1",
            skip_fast_talker=True,
        ),
    )

    assert response.response_type == ResponseType.DIRECT
    assert response.content == "full answer"
    assert store.list_jobs() == []


def test_direct_handler_failure_raises_fast_path_error(store: JobStore) -> None:
    failing = _RecordingHandler(error=RuntimeError("agent crashed"))

    with pytest.raises(FastPathError, match="agent crashed"):
        _responder(store, failing).respond(FastRequest(message="What's 2+2?", user_id="user-1"))

    reported = _RecordingHandler(HandlerResult.failure("no answer"))
    with pytest.raises(FastPathError, match="no answer"):
        _responder(store, reported).respond(FastRequest(message="What's 2+2?", user_id="user-1"))


def test_empty_message_is_rejected(store: JobStore) -> None:
    with pytest.raises(ValueError, match="message"):
        _responder(store).respond(FastRequest(message="   ", user_id="user-1"))
    with pytest.raises(ValueError, match="user_id"):
        _responder(store).respond(FastRequest(message="hi there friend", user_id=""))


def test_response_serializes_with_wire_names(store: JobStore) -> None:
    response = _responder(store).respond(
        FastRequest(message="Research the latest news about fusion energy", user_id="user-1"),
    )

    payload = response.to_dict()
    assert payload["jobId"] == response.job_id
    assert payload["hasFollowUp"] is True
    assert payload["responseType"] == "acknowledgment"
    assert payload["routing"]["agent"] == "researcher"
    assert payload["latencyMs"] >= 0


@pytest.mark.parametrize(
    ("message", "kind", "response_type"),
    [
        ("hey there", "greeting", ResponseType.ACKNOWLEDGMENT),
        ("turn off the fan", "command", ResponseType.ACTION_PREVIEW),
        ("explain quantum tunnelling", "research", ResponseType.ACKNOWLEDGMENT),
        ("fix the flaky login test", "code", ResponseType.ACKNOWLEDGMENT),
        ("my week was long", "general", ResponseType.PREVIEW),
    ],
)
def test_classify_message(message: str, kind: str, response_type: ResponseType) -> None:
    classification = classify_message(message)

    assert classification.kind == kind
    assert classification.response_type == response_type
