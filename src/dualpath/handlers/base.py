"""Handler contract: ``handle(payload) -> HandlerResult`` plus a type registry."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class HandlerResult:
    """Outcome reported by a job handler."""

    success: bool
    content: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(cls, content: str, metadata: dict[str, Any] | None = None) -> HandlerResult:
        return cls(success=True, content=content, metadata=dict(metadata or {}))

    @classmethod
    def failure(cls, error: str, *, error_code: str | None = None) -> HandlerResult:
        return cls(success=False, error=error, error_code=error_code)


class JobHandler(Protocol):
    """Callable invoked by the worker for one job payload."""

    def __call__(self, payload: dict[str, Any]) -> HandlerResult: ...


class HandlerError(RuntimeError):
    """Handler failure with an optional explicit error code."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class HandlerRegistry:
    """Map from job type to handler; registration order is preserved."""

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        if not job_type.strip():
            raise ValueError("job_type must be non-empty")
        self._handlers[job_type] = handler

    def get(self, job_type: str) -> JobHandler | None:
        return self._handlers.get(job_type)

    @property
    def job_types(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)
