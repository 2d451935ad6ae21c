"""HTTP surface: fast-path request entry, worker trigger and job retrieval."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from dualpath.assistant.controllers import build_responder
from dualpath.assistant.responder import (
    FastPathError,
    FastRequest,
    FastResponder,
    ResponseType,
    UserProfile,
    capabilities_overview,
)
from dualpath.config import Settings
from dualpath.handlers.base import HandlerRegistry
from dualpath.jobs.controllers import build_processor
from dualpath.jobs.delivery import DeliveryChannel
from dualpath.jobs.models import JobView
from dualpath.jobs.repository import JobStore
from dualpath.jobs.worker import WorkerBatchProcessor

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
MAX_CONCURRENCY = 20


class WorkerTriggerError(Exception):
    """The worker trigger could not finish against the job store."""


class UserProfileBody(BaseModel):
    name: str | None = None
    timezone: str | None = None
    communication_style: str | None = Field(default=None, alias="communicationStyle")

    model_config = ConfigDict(populate_by_name=True)


class FastChatBody(BaseModel):
    """Request entry payload."""

    message: str = Field(min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    thread_id: str | None = Field(default=None, alias="threadId")
    user_profile: UserProfileBody | None = Field(default=None, alias="userProfile")
    force_agent: str | None = Field(default=None, alias="forceAgent")
    skip_fast_talker: bool = Field(default=False, alias="skipFastTalker")

    model_config = ConfigDict(populate_by_name=True)


class WorkerTriggerBody(BaseModel):
    """Worker trigger payload; omitted fields fall back to queue settings."""

    types: list[str] | None = None
    batch_size: int | None = Field(default=None, alias="batchSize", ge=1, le=MAX_BATCH_SIZE)
    concurrency: int | None = Field(default=None, ge=1, le=MAX_CONCURRENCY)
    worker_id: str | None = Field(default=None, alias="workerId")

    model_config = ConfigDict(populate_by_name=True)


@dataclass(slots=True)
class AppServices:
    settings: Settings
    store: JobStore
    responder: FastResponder
    processor: WorkerBatchProcessor


def create_app(
    settings: Settings | None = None,
    *,
    registry: HandlerRegistry | None = None,
    delivery: DeliveryChannel | None = None,
) -> FastAPI:
    """Build the FastAPI application bound to one job store."""

    settings = settings or Settings.from_env()
    settings.validate()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        store = JobStore(settings.db_path, busy_timeout_ms=settings.queue.sqlite_busy_timeout_ms)
        store.init_schema()
        app.state.services = AppServices(
            settings=settings,
            store=store,
            responder=build_responder(settings=settings, store=store),
            processor=build_processor(
                settings=settings,
                store=store,
                registry=registry,
                delivery=delivery,
            ),
        )
        try:
            yield
        finally:
            store.close()

    app = FastAPI(title="dualpath", lifespan=lifespan)
    app.add_exception_handler(FastPathError, _fast_path_error_handler)
    app.add_exception_handler(WorkerTriggerError, _worker_trigger_error_handler)

    @app.post("/chat/fast")
    def chat_fast(
        body: FastChatBody,
        services: AppServices = Depends(get_services),
    ) -> dict[str, Any]:
        profile = body.user_profile
        request = FastRequest(
            message=body.message,
            user_id=body.user_id,
            thread_id=body.thread_id,
            user_profile=(
                UserProfile(
                    name=profile.name,
                    timezone=profile.timezone,
                    communication_style=profile.communication_style,
                )
                if profile is not None
                else None
            ),
            force_agent=body.force_agent,
            skip_fast_talker=body.skip_fast_talker,
        )
        try:
            response = services.responder.respond(request)
        except ValueError as error:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(error),
            ) from error
        return response.to_dict()

    @app.get("/chat/fast")
    def chat_fast_capabilities() -> dict[str, Any]:
        return {
            "status": "ok",
            "agents": capabilities_overview(),
            "responseTypes": [response_type.value for response_type in ResponseType],
        }

    @app.post("/worker/process", dependencies=[Depends(require_worker_auth)])
    def worker_process(
        body: WorkerTriggerBody | None = None,
        services: AppServices = Depends(get_services),
    ) -> dict[str, Any]:
        body = body or WorkerTriggerBody()
        queue = services.settings.queue
        try:
            result = services.processor.process_batch(
                worker_id=body.worker_id,
                types=body.types,
                batch_size=body.batch_size or queue.batch_size,
                concurrency=body.concurrency or queue.concurrency,
            )
        except (SQLAlchemyError, RuntimeError) as error:
            raise WorkerTriggerError(f"Processing failed: {error}") from error
        return result.to_dict()

    @app.get("/worker/process", dependencies=[Depends(require_worker_auth)])
    def worker_stats(services: AppServices = Depends(get_services)) -> dict[str, Any]:
        try:
            cleaned = services.processor.cleanup_stale_jobs()
            stats = services.processor.get_queue_stats()
        except (SQLAlchemyError, RuntimeError) as error:
            raise WorkerTriggerError(f"Failed to get stats: {error}") from error
        return {
            "success": True,
            "stats": stats.to_dict(),
            "staleJobsCleaned": cleaned.total,
        }

    @app.get("/jobs/{job_id}")
    def job_result(job_id: str, services: AppServices = Depends(get_services)) -> dict[str, Any]:
        job = services.store.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
        return job_to_dict(job)

    return app


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def require_worker_auth(
    services: AppServices = Depends(get_services),
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> None:
    """Require the cron secret or internal API key outside development."""

    api = services.settings.api
    if api.is_development:
        return
    if api.cron_secret and authorization and authorization.startswith("Bearer "):
        token = authorization.removeprefix("Bearer ")
        if secrets.compare_digest(token.encode(), api.cron_secret.encode()):
            return
    if api.internal_api_key and x_api_key:
        if secrets.compare_digest(x_api_key.encode(), api.internal_api_key.encode()):
            return
    logger.warning("Rejected unauthenticated worker request")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def job_to_dict(job: JobView) -> dict[str, Any]:
    return {
        "jobId": job.job_id,
        "type": job.job_type,
        "status": job.status.value,
        "threadId": job.thread_id,
        "attempt": job.attempt,
        "output": job.output_content,
        "metadata": job.output_metadata,
        "error": job.error_message,
        "errorCode": job.error_code,
        "createdAt": job.created_at.isoformat(),
        "startedAt": job.started_at.isoformat() if job.started_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


async def _fast_path_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Fast path failure on %s: %s", request.url.path, exc, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Failed to process message"},
    )


async def _worker_trigger_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Worker trigger failure on %s: %s", request.url.path, exc, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": str(exc)},
    )
