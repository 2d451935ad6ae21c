"""Runtime configuration for the fast path, job queue and worker surfaces."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

from dualpath.jobs.models import DEEP_PROCESSING_JOB_TYPE

DEVELOPMENT_ENVIRONMENT = "development"
DEFAULT_HANDLER_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m dualpath.handlers.echo_agent "
    "--prompt {prompt} --agent {agent} --user-name {user_name}"
)


@dataclass(slots=True)
class QueueSettings:
    """Job store and worker batch settings."""

    sqlite_busy_timeout_ms: int = 5_000
    stale_threshold_seconds: int = 300
    max_attempts: int = 3
    batch_size: int = 10
    concurrency: int = 3
    poll_interval_seconds: float = 2.0
    cleanup_before_batch: bool = True


@dataclass(slots=True)
class RoutingSettings:
    """Routing decision engine settings."""

    bypass_confidence_threshold: float = 0.9
    ambiguity_threshold: float = 0.7
    min_model_confidence: float = 0.7
    model_timeout_seconds: float = 1.0
    model_command_template: str = ""


@dataclass(slots=True)
class ResponderSettings:
    """Fast responder and deep-processing handler settings."""

    deep_job_type: str = DEEP_PROCESSING_JOB_TYPE
    handler_command_template: str = DEFAULT_HANDLER_COMMAND_TEMPLATE
    handler_timeout_seconds: float = 240.0


@dataclass(slots=True)
class ApiSettings:
    """HTTP surface settings."""

    environment: str = DEVELOPMENT_ENVIRONMENT
    cron_secret: str = ""
    internal_api_key: str = ""
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == DEVELOPMENT_ENVIRONMENT


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".dualpath.db")
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    responder: ResponderSettings = field(default_factory=ResponderSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("DUALPATH_DB_PATH", ".dualpath.db")),
            log_level=os.getenv("DUALPATH_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                sqlite_busy_timeout_ms=int(os.getenv("DUALPATH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                stale_threshold_seconds=int(
                    os.getenv("DUALPATH_STALE_THRESHOLD_SECONDS", "300"),
                ),
                max_attempts=int(os.getenv("DUALPATH_MAX_ATTEMPTS", "3")),
                batch_size=int(os.getenv("DUALPATH_BATCH_SIZE", "10")),
                concurrency=int(os.getenv("DUALPATH_CONCURRENCY", "3")),
                poll_interval_seconds=float(os.getenv("DUALPATH_POLL_INTERVAL_SECONDS", "2.0")),
                cleanup_before_batch=_env_bool("DUALPATH_CLEANUP_BEFORE_BATCH", default=True),
            ),
            routing=RoutingSettings(
                bypass_confidence_threshold=float(
                    os.getenv("DUALPATH_BYPASS_CONFIDENCE_THRESHOLD", "0.9"),
                ),
                ambiguity_threshold=float(os.getenv("DUALPATH_AMBIGUITY_THRESHOLD", "0.7")),
                min_model_confidence=float(os.getenv("DUALPATH_MIN_MODEL_CONFIDENCE", "0.7")),
                model_timeout_seconds=float(os.getenv("DUALPATH_MODEL_TIMEOUT_SECONDS", "1.0")),
                model_command_template=os.getenv("DUALPATH_MODEL_COMMAND_TEMPLATE", ""),
            ),
            responder=ResponderSettings(
                deep_job_type=os.getenv("DUALPATH_DEEP_JOB_TYPE", DEEP_PROCESSING_JOB_TYPE),
                handler_command_template=os.getenv(
                    "DUALPATH_HANDLER_COMMAND_TEMPLATE",
                    DEFAULT_HANDLER_COMMAND_TEMPLATE,
                ),
                handler_timeout_seconds=float(
                    os.getenv("DUALPATH_HANDLER_TIMEOUT_SECONDS", "240"),
                ),
            ),
            api=ApiSettings(
                environment=os.getenv("DUALPATH_ENV", DEVELOPMENT_ENVIRONMENT),
                cron_secret=os.getenv("DUALPATH_CRON_SECRET", ""),
                internal_api_key=os.getenv("DUALPATH_INTERNAL_API_KEY", ""),
                host=os.getenv("DUALPATH_API_HOST", "127.0.0.1"),
                port=int(os.getenv("DUALPATH_API_PORT", "8000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        queue = self.queue
        if queue.sqlite_busy_timeout_ms <= 0:
            raise ValueError("DUALPATH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if queue.stale_threshold_seconds <= 0:
            raise ValueError("DUALPATH_STALE_THRESHOLD_SECONDS must be > 0.")
        if queue.max_attempts < 1:
            raise ValueError("DUALPATH_MAX_ATTEMPTS must be >= 1.")
        if queue.batch_size <= 0:
            raise ValueError("DUALPATH_BATCH_SIZE must be > 0.")
        if queue.concurrency <= 0:
            raise ValueError("DUALPATH_CONCURRENCY must be > 0.")
        if queue.poll_interval_seconds <= 0:
            raise ValueError("DUALPATH_POLL_INTERVAL_SECONDS must be > 0.")

        for env_name, value in (
            ("DUALPATH_BYPASS_CONFIDENCE_THRESHOLD", self.routing.bypass_confidence_threshold),
            ("DUALPATH_AMBIGUITY_THRESHOLD", self.routing.ambiguity_threshold),
            ("DUALPATH_MIN_MODEL_CONFIDENCE", self.routing.min_model_confidence),
        ):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{env_name} must be within [0, 1].")
        if self.routing.model_timeout_seconds <= 0:
            raise ValueError("DUALPATH_MODEL_TIMEOUT_SECONDS must be > 0.")

        if not self.responder.deep_job_type.strip():
            raise ValueError("DUALPATH_DEEP_JOB_TYPE must be non-empty.")
        if self.responder.handler_timeout_seconds <= 0:
            raise ValueError("DUALPATH_HANDLER_TIMEOUT_SECONDS must be > 0.")
        if self.responder.handler_timeout_seconds >= queue.stale_threshold_seconds:
            raise ValueError(
                "DUALPATH_HANDLER_TIMEOUT_SECONDS must be below "
                "DUALPATH_STALE_THRESHOLD_SECONDS.",
            )

        if not self.api.is_development and not (
            self.api.cron_secret.strip() or self.api.internal_api_key.strip()
        ):
            raise ValueError(
                "DUALPATH_CRON_SECRET or DUALPATH_INTERNAL_API_KEY is required "
                f"when DUALPATH_ENV={self.api.environment!r}.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
