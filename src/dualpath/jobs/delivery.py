"""Delivery channel contract for terminal job notifications."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from dualpath.jobs.models import JobStatus, JobView
from dualpath.storage.common import utc_now

logger = logging.getLogger(__name__)

JOB_COMPLETED_EVENT = "job.completed"
JOB_FAILED_EVENT = "job.failed"


@dataclass(slots=True)
class DeliveryEvent:
    """Follow-up notification for one job's terminal state."""

    event_type: str
    job_id: str
    job_type: str
    status: JobStatus
    content: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    error_code: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "jobId": self.job_id,
            "jobType": self.job_type,
            "status": self.status.value,
            "content": self.content,
            "metadata": self.metadata,
            "error": self.error_message,
            "errorCode": self.error_code,
            "createdAt": self.created_at.isoformat(),
        }


class DeliveryChannel(Protocol):
    """Notifies the subscriber of ``thread_id``."""

    def publish(self, thread_id: str, event: DeliveryEvent) -> None: ...


def terminal_event(job: JobView) -> DeliveryEvent:
    """Build the notification for a job read back after its terminal write."""

    if job.status is JobStatus.COMPLETED:
        return DeliveryEvent(
            event_type=JOB_COMPLETED_EVENT,
            job_id=job.job_id,
            job_type=job.job_type,
            status=job.status,
            content=job.output_content,
            metadata=dict(job.output_metadata or {}),
        )
    if job.status is JobStatus.FAILED:
        return DeliveryEvent(
            event_type=JOB_FAILED_EVENT,
            job_id=job.job_id,
            job_type=job.job_type,
            status=job.status,
            error_message=job.error_message,
            error_code=job.error_code,
        )
    raise ValueError(f"Job {job.job_id} is not terminal: {job.status.value}")


class InMemoryDeliveryChannel:
    """Per-thread subscriber queues plus a full publish history."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._history: dict[str, list[DeliveryEvent]] = {}
        self._subscribers: dict[str, list[queue.Queue[DeliveryEvent]]] = {}

    def subscribe(self, thread_id: str) -> queue.Queue[DeliveryEvent]:
        subscription: queue.Queue[DeliveryEvent] = queue.Queue()
        with self._lock:
            self._subscribers.setdefault(thread_id, []).append(subscription)
        return subscription

    def publish(self, thread_id: str, event: DeliveryEvent) -> None:
        with self._lock:
            self._history.setdefault(thread_id, []).append(event)
            subscribers = list(self._subscribers.get(thread_id, []))
        for subscription in subscribers:
            subscription.put(event)

    def events_for(self, thread_id: str) -> list[DeliveryEvent]:
        with self._lock:
            return list(self._history.get(thread_id, []))


class LoggingDeliveryChannel:
    """Delivery channel that only records notifications in the log."""

    def publish(self, thread_id: str, event: DeliveryEvent) -> None:
        logger.info(
            "Delivery %s thread=%s job=%s status=%s",
            event.event_type,
            thread_id,
            event.job_id,
            event.status.value,
        )
