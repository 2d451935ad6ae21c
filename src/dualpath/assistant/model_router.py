"""Model-backed routing through a CLI command that prints a JSON decision."""

from __future__ import annotations

import json
import logging
from typing import Protocol

from dualpath.assistant.routing import AGENT_CAPABILITIES, AGENT_IDS, RoutingDecision, RoutingSource
from dualpath.handlers.base import HandlerError
from dualpath.handlers.cli_handler import build_run_args, run_cli_command

logger = logging.getLogger(__name__)


class ModelRouter(Protocol):
    """Protocol implemented by model-backed routers."""

    def route(self, message: str, *, timeout_seconds: float) -> RoutingDecision:
        """Return a decision or raise ``TimeoutError``/``RuntimeError``/``ValueError``."""


class CliModelRouter:
    """Ask a CLI model for ``{"agent", "confidence", "rationale"}``."""

    def __init__(self, *, command_template: str) -> None:
        self.command_template = command_template

    def route(self, message: str, *, timeout_seconds: float) -> RoutingDecision:
        try:
            argv = build_run_args(
                command_template=self.command_template,
                values={"prompt": message, "agents": ",".join(sorted(AGENT_IDS))},
            )
            result = run_cli_command(argv=argv, timeout_seconds=timeout_seconds)
        except HandlerError as error:
            raise RuntimeError(str(error)) from error
        if result.timed_out:
            raise TimeoutError(f"Model router timed out after {timeout_seconds:g}s")
        if result.exit_code != 0:
            raise RuntimeError(f"Model router exited with code {result.exit_code}")
        logger.debug("Model router answered in %d ms", result.duration_ms)
        return parse_model_decision(result.stdout)


def parse_model_decision(raw: str) -> RoutingDecision:
    """Validate model output against the known agent table."""

    try:
        parsed = json.loads(raw.strip())
    except json.JSONDecodeError as error:
        raise ValueError(f"Model router returned invalid JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("Model router output must be a JSON object")

    agent = parsed.get("agent")
    if agent not in AGENT_IDS:
        raise ValueError(f"Invalid agent: {agent}")
    try:
        confidence = float(parsed.get("confidence", 0.0))
    except (TypeError, ValueError) as error:
        raise ValueError("Model router confidence must be a number") from error

    tools = next(
        (capability.tools for capability in AGENT_CAPABILITIES if capability.agent == agent),
        (),
    )
    fallback_agent = parsed.get("fallback_agent")
    return RoutingDecision(
        agent=agent,
        confidence=min(1.0, max(0.0, confidence)),
        rationale=str(parsed.get("rationale") or "Selected by model router"),
        source=RoutingSource.MODEL,
        fallback_agent=fallback_agent if fallback_agent in AGENT_IDS else None,
        tool_plan=list(tools[:3]),
    )
