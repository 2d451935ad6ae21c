"""Fast responder: instant template answers plus a deep-processing job when needed."""

from __future__ import annotations

import logging
import re
import time
import zlib
from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from dualpath.assistant.routing import (
    AGENT_CAPABILITIES,
    RoutingContext,
    RoutingDecision,
    RoutingEngine,
)
from dualpath.handlers.base import HandlerResult, JobHandler
from dualpath.jobs.models import DEEP_PROCESSING_JOB_TYPE, FastReplyWrite
from dualpath.jobs.repository import JobStore

if TYPE_CHECKING:
    from dualpath.config import ResponderSettings

logger = logging.getLogger(__name__)

CLARIFICATION_MAX_WORDS = 2
CLARIFICATION_MAX_CONFIDENCE = 0.5


class ResponseType(str, Enum):
    """Kind of immediate answer."""

    ACKNOWLEDGMENT = "acknowledgment"
    CLARIFICATION = "clarification"
    PREVIEW = "preview"
    ACTION_PREVIEW = "action_preview"
    DIRECT = "direct"


class FastPathError(RuntimeError):
    """The synchronous path could not produce an answer."""


@dataclass(slots=True)
class UserProfile:
    name: str | None = None
    timezone: str | None = None
    communication_style: str | None = None


@dataclass(slots=True)
class FastRequest:
    """Request entry for the fast path."""

    message: str
    user_id: str
    thread_id: str | None = None
    user_profile: UserProfile | None = None
    force_agent: str | None = None
    skip_fast_talker: bool = False


@dataclass(slots=True)
class FastResponse:
    """Immediate answer, with the follow-up ticket when a job was enqueued."""

    content: str
    agent: str
    thread_id: str
    has_follow_up: bool
    job_id: str | None
    response_type: ResponseType
    routing: RoutingDecision
    latency_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "agent": self.agent,
            "threadId": self.thread_id,
            "hasFollowUp": self.has_follow_up,
            "jobId": self.job_id,
            "responseType": self.response_type.value,
            "routing": self.routing.to_dict(),
            "latencyMs": self.latency_ms,
        }


@dataclass(slots=True)
class MessageClassification:
    kind: str
    needs_deep_processing: bool
    response_type: ResponseType
    confidence: float
    action_preview: str | None = None


_QUICK_PATTERNS: dict[str, re.Pattern[str]] = {
    "greeting": re.compile(r"^(hi|hello|hey|good\s*(morning|afternoon|evening)|what'?s\s*up)\b"),
    "command": re.compile(
        r"^(turn|set|activate|enable|disable|start|stop|create|delete|send|schedule)\b",
    ),
    "research": re.compile(r"^(search|find|look\s*up|research|tell\s*me\s*about|explain)\b"),
    "code": re.compile(
        r"^(write|implement|fix|debug|review|refactor"
        r"|create\s*(a|the)?\s*(function|class|component))\b",
    ),
}
_ACTION_VERBS: tuple[tuple[str, str], ...] = (
    ("turn on", "turning on"),
    ("turn off", "turning off"),
    ("set", "setting"),
    ("send", "sending"),
    ("create", "creating"),
    ("schedule", "scheduling"),
)
_GREETING_TEMPLATES: tuple[str, ...] = (
    "Hey{name}! How can I help you today?",
    "Hi{name}! What can I do for you?",
    "Hello{name}! I'm here to help.",
)
_ACTION_TEMPLATES: dict[str, str] = {
    "home": "{prefix}On it! I'm {action} now...",
    "coder": "{prefix}Got it. {Action} that for you...",
    "secretary": "{prefix}Working on {action} that now...",
    "finance": "{prefix}Checking the numbers. {Action}...",
    "researcher": "{prefix}Searching for that information...",
    "personality": "{prefix}Let me help with that...",
}
_ACKNOWLEDGMENT_TEMPLATES: dict[str, tuple[str, ...]] = {
    "home": (
        "{prefix}Checking your smart home...",
        "{prefix}Let me see what I can do with your devices...",
    ),
    "coder": (
        "{prefix}Looking at the code now...",
        "{prefix}Analyzing that for you...",
        "{prefix}Let me dig into this...",
    ),
    "secretary": (
        "{prefix}Checking your calendar and emails...",
        "{prefix}Let me look that up in your workspace...",
    ),
    "finance": (
        "{prefix}Analyzing your finances...",
        "{prefix}Let me crunch those numbers...",
    ),
    "researcher": (
        "{prefix}Searching the web for you...",
        "{prefix}Let me find the latest information...",
        "{prefix}Researching that now...",
    ),
    "personality": (
        "{prefix}Let me think about that...",
        "{prefix}Great question! Looking into it...",
    ),
}
_DEFAULT_ACKNOWLEDGMENT = ("{prefix}Processing your request...",)


def classify_message(message: str) -> MessageClassification:
    """Pattern-based classification of how the fast path should answer."""

    lowered = message.lower().strip()
    if _QUICK_PATTERNS["greeting"].match(lowered):
        return MessageClassification(
            kind="greeting",
            needs_deep_processing=False,
            response_type=ResponseType.ACKNOWLEDGMENT,
            confidence=0.95,
        )
    if _QUICK_PATTERNS["command"].match(lowered):
        return MessageClassification(
            kind="command",
            needs_deep_processing=True,
            response_type=ResponseType.ACTION_PREVIEW,
            confidence=0.85,
            action_preview=extract_action_preview(lowered),
        )
    for kind in ("research", "code"):
        if _QUICK_PATTERNS[kind].match(lowered):
            return MessageClassification(
                kind=kind,
                needs_deep_processing=True,
                response_type=ResponseType.ACKNOWLEDGMENT,
                confidence=0.80,
            )
    return MessageClassification(
        kind="general",
        needs_deep_processing=True,
        response_type=ResponseType.PREVIEW,
        confidence=0.60,
    )


def extract_action_preview(message: str) -> str:
    lowered = message.lower()
    for verb, preview in _ACTION_VERBS:
        if verb in lowered:
            return preview
    return "working on"


class FastResponder:
    """Synchronous entry point of the assistant."""

    def __init__(
        self,
        *,
        store: JobStore,
        routing_engine: RoutingEngine,
        direct_handler: JobHandler,
        settings: ResponderSettings | None = None,
    ) -> None:
        self.store = store
        self.routing_engine = routing_engine
        self.direct_handler = direct_handler
        self.deep_job_type = settings.deep_job_type if settings else DEEP_PROCESSING_JOB_TYPE

    def respond(self, request: FastRequest) -> FastResponse:
        """Route, then either answer directly (bypass) or run the fast path."""

        started = time.monotonic()
        _require_message(request)
        routing = self.routing_engine.route(
            request.message,
            RoutingContext(force_agent=request.force_agent),
        )
        if self.routing_engine.should_bypass(
            request.message,
            routing,
            skip_requested=request.skip_fast_talker,
        ):
            return self._respond_directly(request, routing=routing, started=started)
        return self.fast_talk(request, routing=routing, started=started)

    def fast_talk(
        self,
        request: FastRequest,
        *,
        routing: RoutingDecision | None = None,
        started: float | None = None,
    ) -> FastResponse:
        """Answer from templates and enqueue deep processing when warranted."""

        started = started if started is not None else time.monotonic()
        _require_message(request)
        if routing is None:
            routing = self.routing_engine.route(
                request.message,
                RoutingContext(force_agent=request.force_agent),
            )
        thread_id = request.thread_id or str(uuid4())
        classification = classify_message(request.message)
        user_name = request.user_profile.name if request.user_profile else None

        if _needs_clarification(request.message, routing, classification):
            response_type = ResponseType.CLARIFICATION
            content = _clarification_question(request.message, user_name)
            has_follow_up = False
        else:
            response_type = classification.response_type
            content = _render_fast_content(request.message, classification, routing, user_name)
            has_follow_up = classification.needs_deep_processing

        try:
            job_id = (
                self.store.enqueue(
                    self.deep_job_type,
                    _job_payload(request, routing=routing, thread_id=thread_id),
                    user_id=request.user_id,
                    thread_id=thread_id,
                )
                if has_follow_up
                else None
            )
            self.store.record_fast_reply(
                FastReplyWrite(
                    user_id=request.user_id,
                    thread_id=thread_id,
                    job_id=job_id,
                    content=content,
                    response_type=response_type.value,
                    has_follow_up=has_follow_up,
                ),
            )
        except SQLAlchemyError as error:
            raise FastPathError(f"Failed to queue background job: {error}") from error

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Fast reply %s for thread %s in %d ms (agent=%s job=%s)",
            response_type.value,
            thread_id,
            latency_ms,
            routing.agent,
            job_id,
        )
        return FastResponse(
            content=content,
            agent=routing.agent,
            thread_id=thread_id,
            has_follow_up=has_follow_up,
            job_id=job_id,
            response_type=response_type,
            routing=routing,
            latency_ms=latency_ms,
        )

    def _respond_directly(
        self,
        request: FastRequest,
        *,
        routing: RoutingDecision,
        started: float,
    ) -> FastResponse:
        thread_id = request.thread_id or str(uuid4())
        payload = _job_payload(request, routing=routing, thread_id=thread_id)
        try:
            result = self.direct_handler(payload)
        except Exception as error:  # noqa: BLE001
            raise FastPathError(f"Direct processing failed: {error}") from error
        if not isinstance(result, HandlerResult) or not result.success:
            reason = result.error if isinstance(result, HandlerResult) else "invalid handler result"
            raise FastPathError(f"Direct processing failed: {reason}")

        try:
            self.store.record_fast_reply(
                FastReplyWrite(
                    user_id=request.user_id,
                    thread_id=thread_id,
                    job_id=None,
                    content=result.content,
                    response_type=ResponseType.DIRECT.value,
                    has_follow_up=False,
                ),
            )
        except SQLAlchemyError as error:
            raise FastPathError(f"Failed to record direct reply: {error}") from error

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info("Direct reply for thread %s in %d ms", thread_id, latency_ms)
        return FastResponse(
            content=result.content,
            agent=routing.agent,
            thread_id=thread_id,
            has_follow_up=False,
            job_id=None,
            response_type=ResponseType.DIRECT,
            routing=routing,
            latency_ms=latency_ms,
        )


def capabilities_overview() -> list[dict[str, Any]]:
    """Agents and response types advertised by the fast path."""

    return [
        {
            "agent": capability.agent,
            "name": capability.name,
            "description": capability.description,
            "tools": list(capability.tools),
        }
        for capability in AGENT_CAPABILITIES
    ]


def _require_message(request: FastRequest) -> None:
    if not request.message or not request.message.strip():
        raise ValueError("message must be non-empty")
    if not request.user_id or not request.user_id.strip():
        raise ValueError("user_id must be non-empty")


def _job_payload(
    request: FastRequest,
    *,
    routing: RoutingDecision,
    thread_id: str,
) -> dict[str, Any]:
    return {
        "message": request.message,
        "user_id": request.user_id,
        "thread_id": thread_id,
        "routing": routing.to_dict(),
        "user_profile": asdict(request.user_profile) if request.user_profile else None,
    }


def _needs_clarification(
    message: str,
    routing: RoutingDecision,
    classification: MessageClassification,
) -> bool:
    return (
        classification.kind == "general"
        and not routing.trivial
        and routing.confidence <= CLARIFICATION_MAX_CONFIDENCE
        and len(message.split()) <= CLARIFICATION_MAX_WORDS
    )


def _clarification_question(message: str, user_name: str | None) -> str:
    prefix = f"{user_name}, " if user_name else ""
    return f'{prefix}Could you tell me a bit more about what you need with "{message.strip()}"?'


def _render_fast_content(
    message: str,
    classification: MessageClassification,
    routing: RoutingDecision,
    user_name: str | None,
) -> str:
    prefix = f"{user_name}, " if user_name else ""
    if not classification.needs_deep_processing:
        name = f" {user_name}" if user_name else ""
        return _pick(message, _GREETING_TEMPLATES).format(name=name)

    action = classification.action_preview
    if classification.response_type is ResponseType.ACTION_PREVIEW and action:
        template = _ACTION_TEMPLATES.get(routing.agent, "{prefix}Working on it...")
        return template.format(prefix=prefix, action=action, Action=action[:1].upper() + action[1:])

    templates = _ACKNOWLEDGMENT_TEMPLATES.get(routing.agent, _DEFAULT_ACKNOWLEDGMENT)
    return _pick(message, templates).format(prefix=prefix)


def _pick(message: str, templates: tuple[str, ...]) -> str:
    return templates[zlib.crc32(message.encode("utf-8")) % len(templates)]
