"""Controllers for fast-path CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from dualpath.assistant.model_router import CliModelRouter
from dualpath.assistant.responder import FastRequest, FastResponder, UserProfile
from dualpath.assistant.routing import RoutingEngine
from dualpath.config import Settings
from dualpath.jobs.controllers import build_deep_handler, open_store
from dualpath.jobs.repository import JobStore


@dataclass(slots=True)
class ChatCommand:
    """CLI input for one request entry."""

    db_path: Path | None
    message: str
    user_id: str
    thread_id: str | None
    user_name: str | None
    force_agent: str | None
    skip_fast_talker: bool


class ChatCliController:
    def chat(self, command: ChatCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with open_store(settings) as store:
            response = build_responder(settings=settings, store=store).respond(
                FastRequest(
                    message=command.message,
                    user_id=command.user_id,
                    thread_id=command.thread_id,
                    user_profile=UserProfile(name=command.user_name) if command.user_name else None,
                    force_agent=command.force_agent,
                    skip_fast_talker=command.skip_fast_talker,
                ),
            )

        routing = response.routing
        return [
            response.content,
            "",
            f"Type: {response.response_type.value}",
            f"Agent: {routing.agent} ({routing.confidence:.2f}, {routing.source.value})",
            f"Rationale: {routing.rationale}",
            f"Thread: {response.thread_id}",
            f"Follow-up job: {response.job_id or '-'}",
            f"Latency: {response.latency_ms} ms",
        ]


def build_routing_engine(settings: Settings) -> RoutingEngine:
    template = settings.routing.model_command_template.strip()
    return RoutingEngine(
        settings=settings.routing,
        model_router=CliModelRouter(command_template=template) if template else None,
    )


def build_responder(*, settings: Settings, store: JobStore) -> FastResponder:
    return FastResponder(
        store=store,
        routing_engine=build_routing_engine(settings),
        direct_handler=build_deep_handler(settings),
        settings=settings.responder,
    )
