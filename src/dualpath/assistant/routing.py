"""Routing decision engine: keyword heuristics first, optional model router when ambiguous."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dualpath.assistant.model_router import ModelRouter
    from dualpath.config import RoutingSettings

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "personality"
MODEL_AGREEMENT_BOOST = 0.15
MODEL_FLOOR_CONFIDENCE = 0.5
TRIVIAL_CONFIDENCE = 0.95


class RoutingSource(str, Enum):
    """Where a routing decision came from."""

    HEURISTIC = "heuristic"
    MODEL = "model"


@dataclass(slots=True)
class RoutingDecision:
    """Target agent with confidence and rationale."""

    agent: str
    confidence: float
    rationale: str
    source: RoutingSource = RoutingSource.HEURISTIC
    fallback_agent: str | None = None
    tool_plan: list[str] = field(default_factory=list)
    trivial: bool = False
    fell_back: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "confidence": round(self.confidence, 4),
            "rationale": self.rationale,
            "source": self.source.value,
        }


@dataclass(frozen=True, slots=True)
class AgentCapability:
    """Keyword profile for one agent."""

    agent: str
    name: str
    description: str
    keywords: tuple[str, ...]
    tools: tuple[str, ...] = ()


@dataclass(slots=True)
class RoutingContext:
    """Caller-supplied routing hints."""

    force_agent: str | None = None


AGENT_CAPABILITIES: tuple[AgentCapability, ...] = (
    AgentCapability(
        agent="coder",
        name="DevBot",
        description="Software engineering: code, debugging and repository operations",
        keywords=(
            "code", "bug", "debug", "github", "pr", "pull request", "implement",
            "function", "class", "error", "exception", "sql", "database", "query",
            "api", "endpoint", "refactor", "review", "commit", "merge", "branch",
        ),
        tools=("github_search_code", "github_get_pr", "database_query"),
    ),
    AgentCapability(
        agent="researcher",
        name="ResearchBot",
        description="Web search, fact checking and research",
        keywords=(
            "search", "find", "research", "what is", "tell me about", "news",
            "latest", "current", "how does", "explain", "define", "compare",
            "article", "source", "reference", "look up", "information",
        ),
        tools=("web_search",),
    ),
    AgentCapability(
        agent="secretary",
        name="SecretaryBot",
        description="Email, calendar and document productivity",
        keywords=(
            "calendar", "schedule", "email", "meeting", "appointment", "gmail",
            "drive", "remind", "task", "event", "invite", "reschedule", "cancel",
            "book", "agenda", "availability", "send email", "check email",
        ),
        tools=("mail_send", "mail_search", "calendar_create", "calendar_list"),
    ),
    AgentCapability(
        agent="home",
        name="HomeBot",
        description="Smart home control: lights, climate, locks and scenes",
        keywords=(
            "light", "lamp", "thermostat", "temperature", "turn on", "turn off",
            "lock", "door", "blinds", "fan", "hvac", "scene", "automation",
            "smart home", "device", "sensor", "climate", "brightness", "dim",
        ),
        tools=("control_device", "set_climate", "get_devices", "activate_scene"),
    ),
    AgentCapability(
        agent="finance",
        name="FinanceAdvisor",
        description="Personal finance: balances, spending, bills and projections",
        keywords=(
            "money", "finance", "budget", "spending", "expense", "income", "save",
            "savings", "invest", "investment", "stock", "portfolio", "net worth",
            "account", "balance", "transaction", "bill", "payment", "subscription",
            "afford", "cost", "price", "bank", "credit", "debt", "loan", "wealth",
        ),
        tools=("get_balance_sheet", "get_spending_summary", "get_upcoming_bills"),
    ),
    AgentCapability(
        agent=DEFAULT_AGENT,
        name="Companion",
        description="General conversation and assistance",
        keywords=(
            "hello", "hi", "hey", "thanks", "thank you", "how are you", "joke",
            "story", "chat", "talk", "help", "advice", "opinion", "think",
            "feel", "recommend", "suggest", "idea", "creative", "write",
        ),
    ),
)
AGENT_IDS: frozenset[str] = frozenset(capability.agent for capability in AGENT_CAPABILITIES)

# Queries that a direct answer settles completely.
TRIVIAL_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "greeting",
        re.compile(r"^(hi|hello|hey|good\s*(morning|afternoon|evening)|what'?s\s*up)\b[\s!.,?]*$"),
    ),
    (
        "thanks",
        re.compile(r"^(thanks|thank\s+you|thx|cheers)(\s+(a\s+lot|so\s+much|again))?[\s!.]*$"),
    ),
    (
        "arithmetic",
        re.compile(
            r"^(?:what'?s|what\s+is|calculate|compute)?\s*"
            r"[-(\d.\s]*\d\s*[-+*/x×÷^%]\s*[-(\d.\s+*/x×÷^%)]*\s*[?=]?\s*$",
        ),
    ),
    (
        "time_or_date",
        re.compile(
            r"^what(?:'s|\s+is)?\s+(?:the\s+)?(?:time|date|day)"
            r"(?:\s+is\s+it)?(?:\s+today|\s+now)?\s*\??$",
        ),
    ),
)


def match_trivial_pattern(message: str) -> str | None:
    """Return the name of the trivial-query pattern ``message`` matches."""

    normalized = " ".join(message.lower().split())
    for name, pattern in TRIVIAL_PATTERNS:
        if pattern.match(normalized):
            return name
    return None


def heuristic_route(message: str) -> RoutingDecision:
    """Score every agent by keyword hits and pick the best normalized score."""

    lowered = message.lower()
    words = set(re.findall(r"[a-z0-9']+", lowered))

    best: AgentCapability | None = None
    best_score = 0.0
    for capability in AGENT_CAPABILITIES:
        score = 0
        for keyword in capability.keywords:
            if " " in keyword:
                if keyword in lowered:
                    score += 2
            elif keyword in words:
                score += 1
        normalized = score / math.sqrt(len(capability.keywords))
        if best is None or normalized > best_score:
            best = capability
            best_score = normalized

    if best is None or best_score < MODEL_FLOOR_CONFIDENCE:
        return RoutingDecision(
            agent=DEFAULT_AGENT,
            confidence=0.5,
            rationale="No specific domain detected, using general assistant",
        )

    return RoutingDecision(
        agent=best.agent,
        confidence=min(0.95, 0.5 + best_score * 0.15),
        rationale=f"Matched {best.name}: {best.description}",
        fallback_agent=DEFAULT_AGENT,
        tool_plan=list(best.tools[:3]),
    )


def should_bypass_fast_talker(
    message: str,
    routing: RoutingDecision,
    *,
    skip_requested: bool = False,
    confidence_threshold: float = 0.9,
) -> bool:
    """Return ``True`` when the two-phase flow should be skipped."""

    if skip_requested:
        return True
    if (routing.trivial or routing.agent == "home") and routing.confidence > confidence_threshold:
        return True
    return match_trivial_pattern(message) is not None


class RoutingEngine:
    """Resolve a message to an agent within the fast path's latency budget."""

    def __init__(self, *, settings: RoutingSettings, model_router: ModelRouter | None = None):
        self.settings = settings
        self.model_router = model_router

    def route(self, message: str, context: RoutingContext | None = None) -> RoutingDecision:
        context = context or RoutingContext()
        if context.force_agent:
            if context.force_agent not in AGENT_IDS:
                raise ValueError(f"Unknown agent: {context.force_agent}")
            return RoutingDecision(
                agent=context.force_agent,
                confidence=1.0,
                rationale="Agent selected by caller",
            )

        trivial = match_trivial_pattern(message)
        if trivial is not None:
            return RoutingDecision(
                agent=DEFAULT_AGENT,
                confidence=TRIVIAL_CONFIDENCE,
                rationale=f"Trivial query ({trivial}), answering directly",
                trivial=True,
            )

        heuristic = heuristic_route(message)
        if self.model_router is None or heuristic.confidence >= self.settings.ambiguity_threshold:
            return heuristic
        return self._route_with_model(message, heuristic=heuristic)

    def should_bypass(
        self,
        message: str,
        routing: RoutingDecision,
        *,
        skip_requested: bool,
    ) -> bool:
        return should_bypass_fast_talker(
            message,
            routing,
            skip_requested=skip_requested,
            confidence_threshold=self.settings.bypass_confidence_threshold,
        )

    def _route_with_model(self, message: str, *, heuristic: RoutingDecision) -> RoutingDecision:
        assert self.model_router is not None
        try:
            decision = self.model_router.route(
                message,
                timeout_seconds=self.settings.model_timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "Model routing timed out after %.2fs, using heuristic",
                self.settings.model_timeout_seconds,
            )
            return _fallback(heuristic, reason="Model routing timed out")
        except (RuntimeError, ValueError) as error:
            logger.warning("Model routing failed, using heuristic: %s", error)
            return _fallback(heuristic, reason="Model routing failed")

        if decision.confidence >= self.settings.min_model_confidence:
            return decision
        if heuristic.agent == decision.agent:
            decision.confidence = min(1.0, decision.confidence + MODEL_AGREEMENT_BOOST)
            decision.rationale = f"{decision.rationale} (confirmed by heuristic)"
            return decision
        if decision.confidence < MODEL_FLOOR_CONFIDENCE:
            return _fallback(
                heuristic,
                reason=f"Model confidence too low ({decision.confidence:.2f})",
            )
        return decision


def _fallback(heuristic: RoutingDecision, *, reason: str) -> RoutingDecision:
    heuristic.fell_back = True
    heuristic.rationale = f"{reason}, using heuristic: {heuristic.rationale}"
    return heuristic
