"""CLI entrypoint for dualpath."""

import logging
import os
from pathlib import Path

import rich_click as click

from dualpath import __version__
from dualpath.assistant.controllers import ChatCliController, ChatCommand
from dualpath.assistant.responder import FastPathError
from dualpath.assistant.routing import AGENT_IDS
from dualpath.jobs.controllers import (
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    JobsCliController,
    WorkerProcessCommand,
    WorkerRunJobCommand,
    WorkerStatsCommand,
)
from dualpath.jobs.models import DEEP_PROCESSING_JOB_TYPE, JobStatus

click.rich_click.USE_MARKDOWN = True
CHAT_CONTROLLER = ChatCliController()
JOBS_CONTROLLER = JobsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="dualpath")
def dualpath() -> None:
    """Dual-path assistant: instant replies, durable background jobs."""

    logging.basicConfig(
        level=os.getenv("DUALPATH_LOG_LEVEL", "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dualpath.command("chat")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--message", "-m", required=True, help="User message.")
@click.option("--user-id", default="local-user", show_default=True, help="User id.")
@click.option("--thread-id", default=None, help="Existing thread id.")
@click.option("--user-name", default=None, help="Name used to personalise replies.")
@click.option(
    "--agent",
    "force_agent",
    type=click.Choice(sorted(AGENT_IDS)),
    default=None,
    help="Force routing to this agent.",
)
@click.option(
    "--skip-fast-talker",
    is_flag=True,
    default=False,
    help="Process synchronously instead of enqueueing a follow-up job.",
)
def chat(  # noqa: PLR0913
    db_path: Path | None,
    message: str,
    user_id: str,
    thread_id: str | None,
    user_name: str | None,
    force_agent: str | None,
    skip_fast_talker: bool,
) -> None:
    """Send one message through the fast path."""

    _emit_lines(
        _run(
            CHAT_CONTROLLER.chat,
            ChatCommand(
                db_path=db_path,
                message=message,
                user_id=user_id,
                thread_id=thread_id,
                user_name=user_name,
                force_agent=force_agent,
                skip_fast_talker=skip_fast_talker,
            ),
        ),
    )


@dualpath.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-type", default=DEEP_PROCESSING_JOB_TYPE, show_default=True, help="Job type.")
@click.option("--message", "-m", default=None, help="Message stored in the payload.")
@click.option("--payload-json", default=None, help="Full payload as a JSON object.")
@click.option("--user-id", default=None, help="Owner user id.")
@click.option("--thread-id", default=None, help="Thread notified on completion.")
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    message: str | None,
    payload_json: str | None,
    user_id: str | None,
    thread_id: str | None,
) -> None:
    """Enqueue one pending job."""

    _emit_lines(
        _run(
            JOBS_CONTROLLER.enqueue,
            JobEnqueueCommand(
                db_path=db_path,
                job_type=job_type,
                message=message,
                payload_json=payload_json,
                user_id=user_id,
                thread_id=thread_id,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--job-type", default=None, help="Optional job type filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, job_type: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        _run(
            JOBS_CONTROLLER.list_jobs,
            JobListCommand(db_path=db_path, status=status, job_type=job_type, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    _emit_lines(
        _run(JOBS_CONTROLLER.inspect_job, JobInspectCommand(db_path=db_path, job_id=job_id)),
    )


@dualpath.group()
def worker() -> None:
    """Worker commands."""


@worker.command("process")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--worker-id", default=None, help="Worker id recorded on claimed jobs.")
@click.option("--type", "types", multiple=True, help="Job type to claim. Can be repeated.")
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Max jobs to claim.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Max handlers running at once.",
)
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one batch or loop until idle.",
)
@click.option(
    "--max-batches",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for batches in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty batches before loop mode exits.",
)
def worker_process(  # noqa: PLR0913
    db_path: Path | None,
    worker_id: str | None,
    types: tuple[str, ...],
    batch_size: int | None,
    concurrency: int | None,
    once: bool,
    max_batches: int | None,
    max_idle_polls: int,
) -> None:
    """Claim and process pending jobs."""

    _emit_lines(
        _run(
            JOBS_CONTROLLER.process,
            WorkerProcessCommand(
                db_path=db_path,
                worker_id=worker_id,
                types=types,
                batch_size=batch_size,
                concurrency=concurrency,
                loop=not once,
                max_batches=max_batches,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@worker.command("run-job")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Pending job id.")
@click.option("--worker-id", default=None, help="Worker id recorded on the job.")
def worker_run_job(db_path: Path | None, job_id: str, worker_id: str | None) -> None:
    """Claim and process one specific pending job."""

    _emit_lines(
        _run(
            JOBS_CONTROLLER.run_job,
            WorkerRunJobCommand(db_path=db_path, job_id=job_id, worker_id=worker_id),
        ),
    )


@worker.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--cleanup/--no-cleanup",
    default=True,
    show_default=True,
    help="Run stale job recovery before counting.",
)
def worker_stats(db_path: Path | None, cleanup: bool) -> None:
    """Show queue depth by status and type."""

    _emit_lines(_run(JOBS_CONTROLLER.stats, WorkerStatsCommand(db_path=db_path, cleanup=cleanup)))


@dualpath.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default=None, help="Bind host (defaults to DUALPATH_API_HOST).")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Serve the HTTP API with uvicorn."""

    import uvicorn

    from dualpath.api import create_app
    from dualpath.config import Settings

    settings = Settings.from_env(db_path=db_path)
    try:
        app = create_app(settings)
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    uvicorn.run(
        app,
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_level=settings.log_level.lower(),
    )


def _run(action, command):
    try:
        return action(command)
    except (ValueError, FastPathError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    dualpath()
