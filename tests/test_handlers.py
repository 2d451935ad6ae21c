from __future__ import annotations

import sys

import allure
import pytest

from dualpath.handlers.base import HandlerError, HandlerRegistry, HandlerResult
from dualpath.handlers.cli_handler import CliAgentHandler, build_run_args

pytestmark = [
    allure.epic("Handlers"),
    allure.feature("CLI Agent Handler"),
]

_ECHO_AGENT = (
    f"{sys.executable} -m dualpath.handlers.echo_agent "
    "--prompt {prompt} --agent {agent} --user-name {user_name}"
)


def test_build_run_args_quotes_placeholder_values() -> None:
    argv = build_run_args(
        command_template="agent --prompt {prompt} --agent {agent}",
        values={"prompt": "it's a 'quoted' prompt; rm -rf /", "agent": "coder"},
    )

    assert argv == ["agent", "--prompt", "it's a 'quoted' prompt; rm -rf /", "--agent", "coder"]


def test_build_run_args_requires_prompt_placeholder() -> None:
    with pytest.raises(HandlerError, match=r"\{prompt\}") as error_info:
        build_run_args(command_template="agent --agent {agent}", values={"agent": "coder"})
    assert error_info.value.code == "VALIDATION_ERROR"


def test_build_run_args_rejects_unknown_placeholder() -> None:
    with pytest.raises(HandlerError, match="Unsupported command template placeholder"):
        build_run_args(command_template="agent {prompt} {model}", values={"prompt": "x"})


def test_cli_handler_returns_agent_output() -> None:
    handler = CliAgentHandler(command_template=_ECHO_AGENT, timeout_seconds=30)

    result = handler(
        {
            "message": "Summarize my inbox",
            "routing": {"agent": "secretary"},
            "user_profile": {"name": "Ada"},
        },
    )

    assert result.success is True
    assert result.content == "Ada, [secretary] Summarize my inbox"
    assert result.metadata["backend"] == "echo_agent"
    assert result.metadata["agent"] == "secretary"
    assert result.metadata["duration_ms"] >= 0


def test_cli_handler_reports_non_zero_exit_as_failure() -> None:
    handler = CliAgentHandler(command_template=f"{_ECHO_AGENT} --exit-code 3", timeout_seconds=30)

    result = handler({"message": "explode"})

    assert result.success is False
    assert "echo agent failure for: explode" in (result.error or "")


def test_cli_handler_timeout_raises_coded_error() -> None:
    handler = CliAgentHandler(command_template=f"{_ECHO_AGENT} --sleep 5", timeout_seconds=0.3)

    with pytest.raises(HandlerError) as error_info:
        handler({"message": "slow"})
    assert error_info.value.code == "TIMEOUT"


def test_cli_handler_missing_binary_raises_not_found() -> None:
    handler = CliAgentHandler(
        command_template="definitely-not-a-real-agent-binary {prompt}",
        timeout_seconds=5,
    )

    with pytest.raises(HandlerError) as error_info:
        handler({"message": "hello"})
    assert error_info.value.code == "NOT_FOUND"


def test_cli_handler_rejects_payload_without_message() -> None:
    handler = CliAgentHandler(command_template=_ECHO_AGENT, timeout_seconds=5)

    result = handler({"routing": {"agent": "coder"}})

    assert result.success is False
    assert result.error_code == "VALIDATION_ERROR"


def test_registry_preserves_registration_order() -> None:
    registry = HandlerRegistry()
    registry.register("beta", lambda payload: HandlerResult.ok("b"))
    registry.register("alpha", lambda payload: HandlerResult.ok("a"))

    assert registry.job_types == ["beta", "alpha"]
    assert "alpha" in registry
    assert len(registry) == 2
    assert registry.get("gamma") is None
    with pytest.raises(ValueError, match="job_type"):
        registry.register("  ", lambda payload: HandlerResult.ok(""))
