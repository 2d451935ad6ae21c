"""Durable job store: enqueue, atomic claim, terminal transitions and stale recovery."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, literal_column
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from dualpath.jobs.models import (
    FastReplyView,
    FastReplyWrite,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    StaleCleanupResult,
)
from dualpath.jobs.stats import QueueStats
from dualpath.storage.alembic_runner import upgrade_head
from dualpath.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from dualpath.storage.sqlmodel_models import FastReply, Job, JobEvent

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"


class JobStore:
    """Job persistence facade backed by SQLModel + SQLite.

    Every state change is a single conditional UPDATE guarded by the expected
    prior status; ``rowcount`` decides whether the caller won. Nothing here
    caches job state between calls.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        user_id: str | None = None,
        thread_id: str | None = None,
        job_id: str | None = None,
    ) -> str:
        """Create a pending job and return its id."""

        now = to_db_datetime(utc_now())
        job_id = job_id or str(uuid4())
        with Session(self.engine) as session:
            session.add(
                Job(
                    job_id=job_id,
                    job_type=job_type,
                    status=JobStatus.PENDING.value,
                    payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
                    user_id=user_id,
                    thread_id=thread_id,
                    attempt=0,
                    created_at=now,
                    updated_at=now,
                ),
            )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"job_type": job_type},
            )
            session.commit()
        logger.info("Enqueued job %s (%s)", job_id, job_type)
        return job_id

    def claim_next(self, types: Sequence[str] | None, worker_id: str) -> JobView | None:
        """Atomically claim the oldest pending job among ``types``.

        ``None`` means any type. A lost race moves on to the next candidate.
        """

        if types is not None and not types:
            return None
        while True:
            with Session(self.engine) as session:
                statement = select(Job).where(Job.status == JobStatus.PENDING.value)
                if types is not None:
                    statement = statement.where(col(Job.job_type).in_(list(types)))
                candidate = session.exec(
                    statement.order_by(
                        col(Job.created_at).asc(),
                        literal_column("jobs.rowid").asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                claimed = self._transition_to_processing(
                    session=session,
                    job_id=candidate.job_id,
                    attempt=candidate.attempt,
                    worker_id=worker_id,
                )
                if claimed is None:
                    continue
                return claimed

    def claim_job(self, job_id: str, worker_id: str) -> JobView | None:
        """Claim one specific job if it is still pending."""

        with Session(self.engine) as session:
            candidate = session.exec(
                select(Job).where(
                    Job.job_id == job_id,
                    Job.status == JobStatus.PENDING.value,
                ),
            ).one_or_none()
            if candidate is None:
                return None
            return self._transition_to_processing(
                session=session,
                job_id=job_id,
                attempt=candidate.attempt,
                worker_id=worker_id,
            )

    def complete_job(  # noqa: PLR0913
        self,
        job_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        *,
        worker_id: str | None = None,
        attempt: int | None = None,
    ) -> bool:
        """Mark a processing job as completed.

        Returns ``False`` when the job is no longer processing, or when
        ``worker_id``/``attempt`` are given and no longer match the row.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*_ownership_guard(job_id=job_id, worker_id=worker_id, attempt=attempt))
                .values(
                    status=JobStatus.COMPLETED.value,
                    output_content=content,
                    output_metadata_json=(
                        json.dumps(metadata, ensure_ascii=False, sort_keys=True)
                        if metadata is not None
                        else None
                    ),
                    error_message=None,
                    error_code=None,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.exec(
                sa_update(FastReply)
                .where(
                    col(FastReply.job_id) == job_id,
                    col(FastReply.has_follow_up).is_(True),
                )
                .values(follow_up_arrived=True),
            )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETED,
                details={"content_chars": len(content)},
            )
            session.commit()
        logger.info("Completed job %s", job_id)
        return True

    def fail_job(  # noqa: PLR0913
        self,
        job_id: str,
        error_message: str,
        error_code: str,
        *,
        worker_id: str | None = None,
        attempt: int | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a processing job as failed; ``details`` extend the audit event."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*_ownership_guard(job_id=job_id, worker_id=worker_id, attempt=attempt))
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=error_message,
                    error_code=error_code,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.FAILED,
                details={
                    **(details or {}),
                    "error_code": error_code,
                    "error_message": error_message,
                },
            )
            session.commit()
        logger.warning("Failed job %s: [%s] %s", job_id, error_code, error_message)
        return True

    def cleanup_stale_jobs(
        self,
        *,
        threshold_ms: int,
        max_attempts: int,
        now: datetime | None = None,
    ) -> StaleCleanupResult:
        """Requeue or fail jobs left in processing longer than ``threshold_ms``.

        A requeue charges the abandoned run (``attempt + 1``); a job already
        at ``max_attempts`` is failed instead.
        """

        if threshold_ms <= 0:
            raise ValueError("threshold_ms must be > 0")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        now_db = to_db_datetime(now or utc_now())
        cutoff = now_db - timedelta(milliseconds=threshold_ms)
        outcome = StaleCleanupResult()
        with Session(self.engine) as session:
            candidates = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.PROCESSING.value,
                    col(Job.started_at) <= cutoff,
                )
                .order_by(col(Job.started_at).asc()),
            ).all()
            observed = [(row.job_id, row.attempt) for row in candidates]

        for job_id, attempt in observed:
            if attempt < max_attempts:
                if self._requeue_stale(job_id=job_id, attempt=attempt, now=now_db):
                    outcome.requeued.append(job_id)
            elif self._fail_stale(
                job_id=job_id,
                attempt=attempt,
                max_attempts=max_attempts,
                now=now_db,
            ):
                outcome.failed.append(job_id)

        if outcome.total:
            logger.info(
                "Stale job cleanup: requeued=%d failed=%d",
                len(outcome.requeued),
                len(outcome.failed),
            )
        return outcome

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and type."""

        with Session(self.engine) as session:
            statement = select(Job)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if job_type is not None:
                statement = statement.where(Job.job_type == job_type)
            rows = session.exec(
                statement.order_by(col(Job.created_at).desc()).limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=_load_json_dict(row.details_json) or {},
            )
            for row in event_rows
        ]
        return JobDetails(job=_to_job_view(job), events=events)

    def get_queue_stats(self) -> QueueStats:
        """Count jobs by status and type."""

        stats = QueueStats()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.job_type, Job.status, func.count())
                .group_by(col(Job.job_type), col(Job.status)),
            ).all()
            oldest = session.exec(
                select(func.min(Job.created_at)).where(Job.status == JobStatus.PENDING.value),
            ).one()
        for job_type, status, count in rows:
            stats.add(job_type=job_type, status=status, count=int(count))
        if oldest is not None:
            stats.oldest_pending_at = to_utc_aware_datetime(oldest)
        return stats

    def record_fast_reply(self, reply: FastReplyWrite) -> FastReplyView:
        """Persist the immediate answer given on the fast path."""

        row = FastReply(
            reply_id=str(uuid4()),
            user_id=reply.user_id,
            thread_id=reply.thread_id,
            job_id=reply.job_id,
            content=reply.content,
            response_type=reply.response_type,
            has_follow_up=reply.has_follow_up,
            follow_up_arrived=False,
            created_at=to_db_datetime(utc_now()),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_fast_reply_view(row)

    def list_fast_replies(self, *, thread_id: str, limit: int = 50) -> list[FastReplyView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(FastReply)
                .where(FastReply.thread_id == thread_id)
                .order_by(col(FastReply.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_fast_reply_view(row) for row in rows]

    def _transition_to_processing(
        self,
        *,
        session: Session,
        job_id: str,
        attempt: int,
        worker_id: str,
    ) -> JobView | None:
        now = to_db_datetime(utc_now())
        result = session.exec(
            sa_update(Job)
            .where(
                col(Job.job_id) == job_id,
                col(Job.status) == JobStatus.PENDING.value,
            )
            .values(
                status=JobStatus.PROCESSING.value,
                attempt=attempt + 1,
                started_at=now,
                completed_at=None,
                worker_id=worker_id,
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return None

        claimed = session.exec(select(Job).where(Job.job_id == job_id)).one()
        self._add_event(
            session=session,
            job_id=job_id,
            event_type="claimed",
            status_from=JobStatus.PENDING,
            status_to=JobStatus.PROCESSING,
            details={"worker_id": worker_id, "attempt": claimed.attempt},
        )
        session.commit()
        logger.info("Worker %s claimed job %s (attempt %d)", worker_id, job_id, claimed.attempt)
        return _to_job_view(claimed)

    def _requeue_stale(self, *, job_id: str, attempt: int, now: datetime) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.attempt) == attempt,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempt=attempt + 1,
                    started_at=None,
                    worker_id=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="stale_requeued",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={"attempt": attempt + 1},
            )
            session.commit()
        logger.warning("Requeued stale job %s (attempt %d)", job_id, attempt + 1)
        return True

    def _fail_stale(self, *, job_id: str, attempt: int, max_attempts: int, now: datetime) -> bool:
        message = f"Max attempts exceeded ({attempt}/{max_attempts}): job abandoned in processing"
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.attempt) == attempt,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=message,
                    error_code=MAX_ATTEMPTS_EXCEEDED,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="stale_failed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.FAILED,
                details={"attempt": attempt, "max_attempts": max_attempts},
            )
            session.commit()
        logger.warning("Failed stale job %s after %d attempts", job_id, attempt)
        return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _ownership_guard(*, job_id: str, worker_id: str | None, attempt: int | None) -> list[Any]:
    clauses: list[Any] = [
        col(Job.job_id) == job_id,
        col(Job.status) == JobStatus.PROCESSING.value,
    ]
    if worker_id is not None:
        clauses.append(col(Job.worker_id) == worker_id)
    if attempt is not None:
        clauses.append(col(Job.attempt) == attempt)
    return clauses


def _load_json_dict(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else None


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        job_type=row.job_type,
        status=JobStatus(row.status),
        payload=_load_json_dict(row.payload_json) or {},
        output_content=row.output_content,
        output_metadata=_load_json_dict(row.output_metadata_json),
        error_message=row.error_message,
        error_code=row.error_code,
        user_id=row.user_id,
        thread_id=row.thread_id,
        worker_id=row.worker_id,
        attempt=row.attempt,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_fast_reply_view(row: FastReply) -> FastReplyView:
    return FastReplyView(
        reply_id=row.reply_id,
        user_id=row.user_id,
        thread_id=row.thread_id,
        job_id=row.job_id,
        content=row.content,
        response_type=row.response_type,
        has_follow_up=row.has_follow_up,
        follow_up_arrived=row.follow_up_arrived,
        created_at=to_utc_aware_datetime(row.created_at),
    )
