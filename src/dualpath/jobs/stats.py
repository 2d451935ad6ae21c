"""Queue depth snapshot and operator-facing rendering."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from dualpath.jobs.models import JobStatus


@dataclass(slots=True)
class QueueStats:
    """Job counts by status and by type, taken in one read."""

    by_status: dict[str, int] = field(
        default_factory=lambda: {status.value: 0 for status in JobStatus},
    )
    by_type: dict[str, dict[str, int]] = field(default_factory=dict)
    oldest_pending_at: datetime | None = None

    @property
    def total(self) -> int:
        return sum(self.by_status.values())

    def add(self, *, job_type: str, status: str, count: int) -> None:
        self.by_status[status] = self.by_status.get(status, 0) + count
        per_type = self.by_type.setdefault(job_type, {})
        per_type[status] = per_type.get(status, 0) + count

    def to_dict(self) -> dict[str, object]:
        return {
            **self.by_status,
            "byType": {job_type: dict(counts) for job_type, counts in self.by_type.items()},
            "oldestPendingAt": (
                self.oldest_pending_at.isoformat() if self.oldest_pending_at is not None else None
            ),
        }


def render_stats_lines(*, stats: QueueStats, stale_cleaned: int | None = None) -> list[str]:
    """Render stats for CLI output."""

    totals = (f"{status.value}={stats.by_status.get(status.value, 0)}" for status in JobStatus)
    lines = ["Queue: " + " ".join(totals)]
    if stats.oldest_pending_at is not None:
        lines.append(f"Oldest pending: {stats.oldest_pending_at.isoformat()}")
    for job_type in sorted(stats.by_type):
        counts = stats.by_type[job_type]
        rendered = " ".join(f"{status}={counts[status]}" for status in sorted(counts))
        lines.append(f"  {job_type}: {rendered}")
    if stale_cleaned is not None:
        lines.append(f"Stale jobs cleaned: {stale_cleaned}")
    return lines
