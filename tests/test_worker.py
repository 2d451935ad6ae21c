from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Any

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from dualpath.handlers.base import HandlerError, HandlerRegistry, HandlerResult
from dualpath.jobs.delivery import JOB_COMPLETED_EVENT, JOB_FAILED_EVENT, InMemoryDeliveryChannel
from dualpath.jobs.failure_classifier import HANDLER_NOT_FOUND, LOST_OWNERSHIP, UNKNOWN_ERROR
from dualpath.jobs.models import JobStatus
from dualpath.jobs.repository import JobStore
from dualpath.jobs.worker import WorkerBatchProcessor
from dualpath.storage.common import to_db_datetime, utc_now
from dualpath.storage.sqlmodel_models import Job

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Worker Batch Processing"),
]


def _echo_handler(payload: dict[str, Any]) -> HandlerResult:
    if payload.get("message") == "B":
        raise RuntimeError("boom")
    return HandlerResult.ok(f"done: {payload['message']}", {"handler": "echo"})


def _backdate_start(store: JobStore, job_id: str, *, minutes: int) -> None:
    with Session(store.engine) as session:
        session.exec(
            sa_update(Job)
            .where(col(Job.job_id) == job_id)
            .values(started_at=to_db_datetime(utc_now() - timedelta(minutes=minutes))),
        )
        session.commit()


def _processor(store: JobStore, registry: HandlerRegistry, **kwargs: Any) -> WorkerBatchProcessor:
    return WorkerBatchProcessor(store=store, registry=registry, **kwargs)


def test_batch_processes_all_jobs_and_isolates_failures(store: JobStore) -> None:
    registry = HandlerRegistry()
    registry.register("deep-processing", _echo_handler)
    ids = {message: store.enqueue("deep-processing", {"message": message}) for message in "ABC"}

    result = _processor(store, registry).process_batch(
        worker_id="worker-1",
        batch_size=10,
        concurrency=2,
    )

    assert result.processed == 3
    assert result.succeeded == 2
    assert result.failed == 1
    assert store.get_job(ids["A"]).status == JobStatus.COMPLETED
    assert store.get_job(ids["C"]).status == JobStatus.COMPLETED
    failed = store.get_job(ids["B"])
    assert failed.status == JobStatus.FAILED
    assert failed.error_message == "boom"
    assert failed.error_code == UNKNOWN_ERROR

    payload = result.to_dict()
    assert payload["success"] is True
    assert payload["workerId"] == "worker-1"
    assert {entry["jobId"] for entry in payload["jobs"]} == set(ids.values())
    failed_entry = next(entry for entry in payload["jobs"] if entry["jobId"] == ids["B"])
    assert failed_entry == {
        "jobId": ids["B"],
        "status": "failed",
        "durationMs": failed_entry["durationMs"],
        "error": "boom",
    }


def test_batch_never_exceeds_concurrency(store: JobStore) -> None:
    active = 0
    peak = 0
    lock = threading.Lock()

    def _slow(payload: dict[str, Any]) -> HandlerResult:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
        return HandlerResult.ok("slow")

    registry = HandlerRegistry()
    registry.register("deep-processing", _slow)
    for index in range(8):
        store.enqueue("deep-processing", {"message": str(index)})

    result = _processor(store, registry).process_batch(batch_size=8, concurrency=3)

    assert result.processed == 8
    assert result.succeeded == 8
    assert 1 <= peak <= 3


def test_batch_size_caps_claimed_jobs(store: JobStore) -> None:
    registry = HandlerRegistry()
    registry.register("deep-processing", lambda payload: HandlerResult.ok("ok"))
    for index in range(5):
        store.enqueue("deep-processing", {"message": str(index)})

    result = _processor(store, registry).process_batch(batch_size=2, concurrency=1)

    assert result.processed == 2
    assert store.get_queue_stats().by_status["pending"] == 3


def test_types_are_claimed_round_robin(store: JobStore) -> None:
    order: list[str] = []

    def _record(job_type: str):
        def _handler(payload: dict[str, Any]) -> HandlerResult:
            order.append(job_type)
            return HandlerResult.ok(job_type)

        return _handler

    registry = HandlerRegistry()
    registry.register("alpha", _record("alpha"))
    registry.register("beta", _record("beta"))
    for index in range(3):
        store.enqueue("alpha", {"message": f"a{index}"})
    store.enqueue("beta", {"message": "b0"})

    result = _processor(store, registry).process_batch(
        types=["alpha", "beta"],
        batch_size=3,
        concurrency=1,
    )

    assert result.processed == 3
    assert order == ["alpha", "beta", "alpha"]


def test_missing_handler_fails_job_with_handler_not_found(store: JobStore) -> None:
    job_id = store.enqueue("unregistered", {"message": "orphan"})

    result = _processor(store, HandlerRegistry()).process_batch(types=["unregistered"])

    assert result.failed == 1
    job = store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_code == HANDLER_NOT_FOUND


def test_handler_failure_result_and_coded_error(store: JobStore) -> None:
    def _handler(payload: dict[str, Any]) -> HandlerResult:
        if payload["message"] == "soft":
            return HandlerResult.failure("upstream said no", error_code="AUTH_ERROR")
        raise HandlerError("agent timed out", code="TIMEOUT")

    registry = HandlerRegistry()
    registry.register("deep-processing", _handler)
    soft = store.enqueue("deep-processing", {"message": "soft"})
    hard = store.enqueue("deep-processing", {"message": "hard"})

    result = _processor(store, registry).process_batch(concurrency=1)

    assert result.failed == 2
    assert store.get_job(soft).error_code == "AUTH_ERROR"
    assert store.get_job(hard).error_code == "TIMEOUT"

    failed_event = next(
        event for event in store.get_job_details(hard).events if event.event_type == "failed"
    )
    assert failed_event.details["error_class"] == "transient"
    assert failed_event.details["retryable"] is True
    assert failed_event.details["error_code"] == "TIMEOUT"


def test_empty_queue_returns_zero_counts(store: JobStore) -> None:
    registry = HandlerRegistry()
    registry.register("deep-processing", _echo_handler)

    result = _processor(store, registry).process_batch()

    assert result.processed == 0
    assert result.to_dict()["jobs"] == []


def test_invalid_batch_arguments_are_rejected(store: JobStore) -> None:
    processor = _processor(store, HandlerRegistry())
    with pytest.raises(ValueError, match="batch_size"):
        processor.process_batch(batch_size=0)
    with pytest.raises(ValueError, match="concurrency"):
        processor.process_batch(concurrency=0)


@allure.feature("Delivery")
def test_terminal_jobs_are_published_to_their_thread(store: JobStore) -> None:
    registry = HandlerRegistry()
    registry.register("deep-processing", _echo_handler)
    delivery = InMemoryDeliveryChannel()
    subscription = delivery.subscribe("thread-1")
    ok = store.enqueue("deep-processing", {"message": "A"}, thread_id="thread-1")
    bad = store.enqueue("deep-processing", {"message": "B"}, thread_id="thread-1")
    store.enqueue("deep-processing", {"message": "C"})

    _processor(store, registry, delivery=delivery).process_batch(concurrency=1)

    events = {event.job_id: event for event in delivery.events_for("thread-1")}
    assert set(events) == {ok, bad}
    assert events[ok].event_type == JOB_COMPLETED_EVENT
    assert events[ok].content == "done: A"
    assert events[bad].event_type == JOB_FAILED_EVENT
    assert events[bad].error_message == "boom"
    assert subscription.qsize() == 2


@allure.feature("Delivery")
def test_delivery_failure_does_not_change_job_outcome(store: JobStore) -> None:
    class _BrokenChannel:
        def publish(self, thread_id, event) -> None:
            raise RuntimeError("socket closed")

    registry = HandlerRegistry()
    registry.register("deep-processing", _echo_handler)
    job_id = store.enqueue("deep-processing", {"message": "A"}, thread_id="thread-1")

    result = _processor(store, registry, delivery=_BrokenChannel()).process_batch()

    assert result.succeeded == 1
    assert store.get_job(job_id).status == JobStatus.COMPLETED


def test_process_job_by_id_runs_only_pending_job(store: JobStore) -> None:
    registry = HandlerRegistry()
    registry.register("deep-processing", _echo_handler)
    job_id = store.enqueue("deep-processing", {"message": "A"})
    processor = _processor(store, registry)

    outcome = processor.process_job_by_id(job_id, worker_id="worker-direct")

    assert outcome is not None
    assert outcome.status == JobStatus.COMPLETED
    assert processor.process_job_by_id(job_id) is None


def test_run_loop_stops_after_idle_poll(store: JobStore) -> None:
    registry = HandlerRegistry()
    registry.register("deep-processing", _echo_handler)
    for message in "AC":
        store.enqueue("deep-processing", {"message": message})

    result = _processor(store, registry, poll_interval_seconds=0.01).run_loop(
        worker_id="looper",
        batch_size=1,
        concurrency=1,
        max_idle_polls=1,
    )

    assert result.processed == 2
    assert result.succeeded == 2
    assert result.worker_id == "looper"


@allure.feature("Stale Recovery")
@pytest.mark.parametrize("handler_outcome", ["success", "failure"])
def test_requeued_mid_run_job_is_lost_and_not_delivered(
    store: JobStore,
    handler_outcome: str,
) -> None:
    job_id = store.enqueue("deep-processing", {"message": "slow"}, thread_id="thread-1")

    def _reaped_while_running(payload: dict[str, Any]) -> HandlerResult:
        _backdate_start(store, job_id, minutes=10)
        assert store.cleanup_stale_jobs(threshold_ms=1000, max_attempts=3).requeued == [job_id]
        if handler_outcome == "failure":
            raise RuntimeError("connection reset")
        return HandlerResult.ok("late answer")

    registry = HandlerRegistry()
    registry.register("deep-processing", _reaped_while_running)
    delivery = InMemoryDeliveryChannel()

    result = _processor(store, registry, delivery=delivery).process_batch(
        worker_id="worker-slow",
        batch_size=1,
    )

    assert result.processed == 1
    assert result.succeeded == 0
    assert result.failed == 1
    assert result.jobs[0].error_code == LOST_OWNERSHIP
    assert delivery.events_for("thread-1") == []

    job = store.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.output_content is None
    assert job.error_code is None


@allure.feature("Stale Recovery")
def test_batch_reaps_stale_jobs_before_claiming(store: JobStore) -> None:
    exhausted = store.enqueue("other", {"message": "never finishes"})
    assert store.claim_job(exhausted, "crashed-worker") is not None
    _backdate_start(store, exhausted, minutes=10)
    assert store.cleanup_stale_jobs(threshold_ms=1000, max_attempts=3).requeued == [exhausted]
    assert store.claim_job(exhausted, "crashed-worker").attempt == 3
    _backdate_start(store, exhausted, minutes=10)

    crashed = store.enqueue("deep-processing", {"message": "A"})
    assert store.claim_next(["deep-processing"], "crashed-worker") is not None
    _backdate_start(store, crashed, minutes=10)

    registry = HandlerRegistry()
    registry.register("deep-processing", _echo_handler)

    result = _processor(
        store,
        registry,
        stale_threshold_ms=60_000,
        max_attempts=3,
    ).process_batch(worker_id="worker-2")

    assert result.stale_cleanup.requeued == [crashed]
    assert result.stale_cleanup.failed == [exhausted]
    assert result.to_dict()["staleJobsCleaned"] == 2
    assert result.succeeded == 1
    assert store.get_job(crashed).status == JobStatus.COMPLETED
    assert store.get_job(exhausted).status == JobStatus.FAILED
