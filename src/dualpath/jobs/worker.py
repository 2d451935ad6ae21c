"""Worker batch processor: claims pending jobs and runs their handlers under a concurrency cap."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from dualpath.handlers.base import HandlerRegistry, HandlerResult
from dualpath.jobs.delivery import DeliveryChannel, terminal_event
from dualpath.jobs.failure_classifier import (
    HANDLER_NOT_FOUND,
    LOST_OWNERSHIP,
    ErrorClassification,
    classify_code,
    classify_error,
    error_message,
)
from dualpath.jobs.models import JobStatus, JobView, StaleCleanupResult
from dualpath.jobs.repository import JobStore
from dualpath.jobs.stats import QueueStats

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobOutcome:
    """Per-job entry of a batch result."""

    job_id: str
    job_type: str
    status: JobStatus
    duration_ms: int
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jobId": self.job_id,
            "status": self.status.value,
            "durationMs": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class BatchResult:
    """Aggregate counters for one or more batches."""

    worker_id: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    jobs: list[JobOutcome] = field(default_factory=list)
    stale_cleanup: StaleCleanupResult = field(default_factory=StaleCleanupResult)

    def record(self, outcome: JobOutcome) -> None:
        self.processed += 1
        if outcome.status is JobStatus.COMPLETED:
            self.succeeded += 1
        else:
            self.failed += 1
        self.jobs.append(outcome)

    def merge(self, other: BatchResult) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.jobs.extend(other.jobs)
        self.stale_cleanup.requeued.extend(other.stale_cleanup.requeued)
        self.stale_cleanup.failed.extend(other.stale_cleanup.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "workerId": self.worker_id,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "staleJobsCleaned": self.stale_cleanup.total,
            "jobs": [outcome.to_dict() for outcome in self.jobs],
        }


class WorkerBatchProcessor:
    """Claims jobs from the store and dispatches them to registered handlers.

    Correctness across concurrently running processors rests on the store's
    conditional claim; this class holds no job state between calls.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        registry: HandlerRegistry,
        delivery: DeliveryChannel | None = None,
        stale_threshold_ms: int = 300_000,
        max_attempts: int = 3,
        cleanup_before_batch: bool = True,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.delivery = delivery
        self.stale_threshold_ms = stale_threshold_ms
        self.max_attempts = max_attempts
        self.cleanup_before_batch = cleanup_before_batch
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    def process_batch(
        self,
        *,
        worker_id: str | None = None,
        types: Sequence[str] | None = None,
        batch_size: int = 10,
        concurrency: int = 3,
    ) -> BatchResult:
        """Claim up to ``batch_size`` jobs, running at most ``concurrency`` at once.

        Requested types are visited round-robin in the order given; each
        claim attempt advances the rotation. Without ``types`` the registered
        handler types are used in registration order.
        """

        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")

        worker_id = worker_id or _new_worker_id()
        result = BatchResult(worker_id=worker_id)
        if self.cleanup_before_batch:
            result.stale_cleanup = self.cleanup_stale_jobs()

        job_types = list(dict.fromkeys(types)) if types else self.registry.job_types
        if not job_types:
            logger.warning("Worker %s has no job types to claim", worker_id)
            return result

        logger.info(
            "Worker %s batch start: types=%s batch_size=%d concurrency=%d",
            worker_id,
            ",".join(job_types),
            batch_size,
            concurrency,
        )
        slots = threading.BoundedSemaphore(concurrency)
        result_lock = threading.Lock()
        exhausted: set[str] = set()
        rotation = 0
        claimed = 0

        with ThreadPoolExecutor(
            max_workers=concurrency,
            thread_name_prefix=f"dualpath-{worker_id}",
        ) as executor:
            while claimed < batch_size and len(exhausted) < len(job_types):
                slots.acquire()
                while job_types[rotation % len(job_types)] in exhausted:
                    rotation += 1
                job_type = job_types[rotation % len(job_types)]
                rotation += 1
                try:
                    job = self.store.claim_next([job_type], worker_id)
                except Exception:
                    slots.release()
                    raise
                if job is None:
                    exhausted.add(job_type)
                    slots.release()
                    continue

                claimed += 1
                executor.submit(
                    self._run_claimed,
                    job=job,
                    worker_id=worker_id,
                    slots=slots,
                    result=result,
                    result_lock=result_lock,
                )

        logger.info(
            "Worker %s batch finished: processed=%d succeeded=%d failed=%d",
            worker_id,
            result.processed,
            result.succeeded,
            result.failed,
        )
        return result

    def process_job_by_id(self, job_id: str, *, worker_id: str | None = None) -> JobOutcome | None:
        """Claim and run one specific pending job; ``None`` if it is not pending."""

        worker_id = worker_id or _new_worker_id()
        job = self.store.claim_job(job_id, worker_id)
        if job is None:
            return None
        return self._execute(job=job, worker_id=worker_id)

    def run_loop(  # noqa: PLR0913
        self,
        *,
        worker_id: str | None = None,
        types: Sequence[str] | None = None,
        batch_size: int = 10,
        concurrency: int = 3,
        max_batches: int | None = None,
        max_idle_polls: int = 1,
    ) -> BatchResult:
        """Process batches until the queue stays idle or ``max_batches`` is reached."""

        worker_id = worker_id or _new_worker_id()
        aggregate = BatchResult(worker_id=worker_id)
        consecutive_idle = 0
        batches = 0
        self._stop_requested = False
        with self._signal_handlers():
            while not self._stop_requested:
                if max_batches is not None and batches >= max_batches:
                    break
                batch = self.process_batch(
                    worker_id=worker_id,
                    types=types,
                    batch_size=batch_size,
                    concurrency=concurrency,
                )
                batches += 1
                aggregate.merge(batch)
                if batch.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def cleanup_stale_jobs(self) -> StaleCleanupResult:
        return self.store.cleanup_stale_jobs(
            threshold_ms=self.stale_threshold_ms,
            max_attempts=self.max_attempts,
        )

    def get_queue_stats(self) -> QueueStats:
        return self.store.get_queue_stats()

    def _run_claimed(
        self,
        *,
        job: JobView,
        worker_id: str,
        slots: threading.BoundedSemaphore,
        result: BatchResult,
        result_lock: threading.Lock,
    ) -> None:
        started = time.monotonic()
        try:
            outcome = self._execute(job=job, worker_id=worker_id)
        except Exception as error:  # noqa: BLE001
            # Store errors after the claim leave the row to stale recovery.
            logger.exception("Unexpected error while running job %s", job.job_id)
            outcome = JobOutcome(
                job_id=job.job_id,
                job_type=job.job_type,
                status=JobStatus.FAILED,
                duration_ms=_elapsed_ms(started),
                error=error_message(error),
                error_code=classify_error(error).code,
            )
        finally:
            slots.release()
        with result_lock:
            result.record(outcome)

    def _execute(self, *, job: JobView, worker_id: str) -> JobOutcome:
        started = time.monotonic()
        handler = self.registry.get(job.job_type)
        if handler is None:
            return self._fail(
                job=job,
                worker_id=worker_id,
                message=f"No handler registered for job type: {job.job_type}",
                classification=classify_code(HANDLER_NOT_FOUND),
                started=started,
            )

        try:
            handler_result = handler(job.payload)
        except Exception as error:  # noqa: BLE001
            return self._fail(
                job=job,
                worker_id=worker_id,
                message=error_message(error),
                classification=classify_error(error),
                started=started,
            )

        if not isinstance(handler_result, HandlerResult):
            return self._fail(
                job=job,
                worker_id=worker_id,
                message=f"Handler returned {type(handler_result).__name__}, expected HandlerResult",
                classification=classify_code("VALIDATION_ERROR"),
                started=started,
            )
        if not handler_result.success:
            message = handler_result.error or "Handler reported failure"
            return self._fail(
                job=job,
                worker_id=worker_id,
                message=message,
                classification=(
                    classify_code(handler_result.error_code)
                    if handler_result.error_code
                    else classify_error(message)
                ),
                started=started,
            )

        completed = self.store.complete_job(
            job.job_id,
            handler_result.content,
            handler_result.metadata,
            worker_id=worker_id,
            attempt=job.attempt,
        )
        if not completed:
            logger.warning("Worker %s lost ownership of job %s", worker_id, job.job_id)
            return JobOutcome(
                job_id=job.job_id,
                job_type=job.job_type,
                status=JobStatus.FAILED,
                duration_ms=_elapsed_ms(started),
                error="Job was no longer owned by this worker at completion",
                error_code=LOST_OWNERSHIP,
            )
        self._publish(job)
        return JobOutcome(
            job_id=job.job_id,
            job_type=job.job_type,
            status=JobStatus.COMPLETED,
            duration_ms=_elapsed_ms(started),
        )

    def _fail(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        worker_id: str,
        message: str,
        classification: ErrorClassification,
        started: float,
    ) -> JobOutcome:
        failed = self.store.fail_job(
            job.job_id,
            message,
            classification.code,
            worker_id=worker_id,
            attempt=job.attempt,
            details=classification.to_event_details(),
        )
        if failed:
            self._publish(job)
        else:
            logger.warning("Worker %s lost ownership of job %s", worker_id, job.job_id)
        return JobOutcome(
            job_id=job.job_id,
            job_type=job.job_type,
            status=JobStatus.FAILED,
            duration_ms=_elapsed_ms(started),
            error=message,
            error_code=classification.code if failed else LOST_OWNERSHIP,
        )

    def _publish(self, job: JobView) -> None:
        if self.delivery is None or not job.thread_id:
            return
        stored = self.store.get_job(job.job_id)
        if stored is None or not stored.status.is_terminal:
            return
        try:
            self.delivery.publish(job.thread_id, terminal_event(stored))
        except (RuntimeError, ValueError, OSError) as error:
            logger.warning("Delivery failed for job %s: %s", job.job_id, error)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Worker stop requested by signal %s", signal.Signals(signum).name)
            self._stop_requested = True

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _new_worker_id() -> str:
    return f"worker-{uuid4().hex[:8]}"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
