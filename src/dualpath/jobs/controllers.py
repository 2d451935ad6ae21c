"""Controllers for job queue and worker CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from dualpath.config import Settings
from dualpath.handlers.base import HandlerRegistry
from dualpath.handlers.cli_handler import CliAgentHandler
from dualpath.jobs.delivery import DeliveryChannel, LoggingDeliveryChannel
from dualpath.jobs.models import JobStatus
from dualpath.jobs.repository import JobStore
from dualpath.jobs.stats import render_stats_lines
from dualpath.jobs.worker import BatchResult, WorkerBatchProcessor


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for manual job enqueue."""

    db_path: Path | None
    job_type: str
    message: str | None
    payload_json: str | None
    user_id: str | None
    thread_id: str | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    job_type: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerProcessCommand:
    """CLI input for batch processing."""

    db_path: Path | None
    worker_id: str | None
    types: tuple[str, ...]
    batch_size: int | None
    concurrency: int | None
    loop: bool = False
    max_batches: int | None = None
    max_idle_polls: int = 1


@dataclass(slots=True)
class WorkerRunJobCommand:
    db_path: Path | None
    job_id: str
    worker_id: str | None


@dataclass(slots=True)
class WorkerStatsCommand:
    db_path: Path | None
    cleanup: bool


class JobsCliController:
    """CLI-facing orchestration for the job store and worker."""

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        payload = _parse_payload(payload_json=command.payload_json, message=command.message)
        with open_store(settings) as store:
            job_id = store.enqueue(
                command.job_type,
                payload,
                user_id=command.user_id,
                thread_id=command.thread_id,
            )
        return [f"Enqueued job: {job_id}", f"Type: {command.job_type}"]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        status_filter = JobStatus(command.status.lower()) if command.status else None
        with open_store(settings) as store:
            jobs = store.list_jobs(
                status=status_filter,
                job_type=command.job_type,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type} status={job.status.value} "
                f"attempt={job.attempt} created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with open_store(settings) as store:
            details = store.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type}",
            f"Status: {job.status.value}",
            f"Attempt: {job.attempt}",
            f"Thread: {job.thread_id or '-'}",
            f"Worker: {job.worker_id or '-'}",
            f"Error: {f'[{job.error_code}] {job.error_message}' if job.error_message else '-'}",
            f"Output: {job.output_content or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def process(self, command: WorkerProcessCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        batch_size = command.batch_size or settings.queue.batch_size
        concurrency = command.concurrency or settings.queue.concurrency
        with open_store(settings) as store:
            processor = build_processor(settings=settings, store=store)
            if command.loop:
                result = processor.run_loop(
                    worker_id=command.worker_id,
                    types=command.types or None,
                    batch_size=batch_size,
                    concurrency=concurrency,
                    max_batches=command.max_batches,
                    max_idle_polls=command.max_idle_polls,
                )
            else:
                result = processor.process_batch(
                    worker_id=command.worker_id,
                    types=command.types or None,
                    batch_size=batch_size,
                    concurrency=concurrency,
                )
        return render_batch_lines(result)

    def run_job(self, command: WorkerRunJobCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with open_store(settings) as store:
            processor = build_processor(settings=settings, store=store)
            outcome = processor.process_job_by_id(command.job_id, worker_id=command.worker_id)
        if outcome is None:
            return [f"Job is not pending: {command.job_id}"]
        line = f"Job {outcome.job_id}: {outcome.status.value} in {outcome.duration_ms} ms"
        if outcome.error:
            line += f" error=[{outcome.error_code}] {outcome.error}"
        return [line]

    def stats(self, command: WorkerStatsCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with open_store(settings) as store:
            processor = build_processor(settings=settings, store=store)
            cleaned = processor.cleanup_stale_jobs().total if command.cleanup else None
            stats = processor.get_queue_stats()
        return render_stats_lines(stats=stats, stale_cleaned=cleaned)


def build_handler_registry(settings: Settings) -> HandlerRegistry:
    """Register the handlers this deployment serves."""

    registry = HandlerRegistry()
    registry.register(settings.responder.deep_job_type, build_deep_handler(settings))
    return registry


def build_deep_handler(settings: Settings) -> CliAgentHandler:
    return CliAgentHandler(
        command_template=settings.responder.handler_command_template,
        timeout_seconds=settings.responder.handler_timeout_seconds,
    )


def build_processor(
    *,
    settings: Settings,
    store: JobStore,
    registry: HandlerRegistry | None = None,
    delivery: DeliveryChannel | None = None,
) -> WorkerBatchProcessor:
    return WorkerBatchProcessor(
        store=store,
        registry=registry or build_handler_registry(settings),
        delivery=delivery or LoggingDeliveryChannel(),
        stale_threshold_ms=settings.queue.stale_threshold_seconds * 1000,
        max_attempts=settings.queue.max_attempts,
        cleanup_before_batch=settings.queue.cleanup_before_batch,
        poll_interval_seconds=settings.queue.poll_interval_seconds,
    )


def render_batch_lines(result: BatchResult) -> list[str]:
    lines = [
        f"Worker {result.worker_id}: processed={result.processed} "
        f"succeeded={result.succeeded} failed={result.failed} "
        f"stale_cleaned={result.stale_cleanup.total}",
    ]
    for outcome in result.jobs:
        line = f"  {outcome.job_id} {outcome.status.value} {outcome.duration_ms}ms"
        if outcome.error:
            line += f" [{outcome.error_code}] {outcome.error}"
        lines.append(line)
    return lines


@contextmanager
def open_store(settings: Settings) -> Iterator[JobStore]:
    store = JobStore(settings.db_path, busy_timeout_ms=settings.queue.sqlite_busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_payload(*, payload_json: str | None, message: str | None) -> dict[str, object]:
    payload: dict[str, object] = {}
    if payload_json:
        try:
            parsed = json.loads(payload_json)
        except json.JSONDecodeError as error:
            raise ValueError(f"Invalid payload JSON: {error}") from error
        if not isinstance(parsed, dict):
            raise ValueError("Payload JSON must be an object.")
        payload.update(parsed)
    if message:
        payload["message"] = message
    if not payload:
        raise ValueError("Provide --message or --payload-json.")
    return payload
