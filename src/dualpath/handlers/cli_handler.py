"""Subprocess-based deep-processing handler backed by a CLI agent."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Any

from dualpath.handlers.base import HandlerError, HandlerResult

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 500


@dataclass(slots=True)
class CliRunResult:
    """Execution outcome of one CLI agent invocation."""

    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str
    duration_ms: int


def build_run_args(*, command_template: str, values: dict[str, str]) -> list[str]:
    """Render a command template into argv, shell-quoting every placeholder value."""

    stripped = command_template.strip()
    if not stripped:
        raise HandlerError("CLI command template is empty.", code="VALIDATION_ERROR")
    if "{prompt}" not in stripped:
        raise HandlerError(
            "CLI command template must include {prompt}.",
            code="VALIDATION_ERROR",
        )
    try:
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except KeyError as error:
        raise HandlerError(
            f"Unsupported command template placeholder: {error}",
            code="VALIDATION_ERROR",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise HandlerError("CLI command template rendered empty command.", code="VALIDATION_ERROR")
    return argv


def run_cli_command(
    *,
    argv: list[str],
    timeout_seconds: float,
    env: dict[str, str] | None = None,
) -> CliRunResult:
    """Run ``argv`` to completion or until ``timeout_seconds`` elapse."""

    started = time.monotonic()
    try:
        process = subprocess.Popen(  # noqa: S603
            argv,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError as error:
        raise HandlerError(f"CLI command not found: {argv[0]}", code="NOT_FOUND") from error
    except OSError as error:
        raise HandlerError(f"CLI command failed to start: {error}") from error

    try:
        stdout, stderr = process.communicate(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        _terminate_process(process)
        return CliRunResult(
            exit_code=124,
            timed_out=True,
            stdout="",
            stderr="",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
    return CliRunResult(
        exit_code=process.returncode,
        timed_out=False,
        stdout=stdout,
        stderr=stderr,
        duration_ms=int((time.monotonic() - started) * 1000),
    )


class CliAgentHandler:
    """Run the configured CLI agent for a deep-processing payload.

    The agent prints either plain text or a JSON object with ``content`` and
    optional ``metadata``. A non-zero exit is a handler-reported failure; a
    timeout raises so the worker classifies it as transient.
    """

    def __init__(self, *, command_template: str, timeout_seconds: float) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def __call__(self, payload: dict[str, Any]) -> HandlerResult:
        message = str(payload.get("message") or "").strip()
        if not message:
            return HandlerResult.failure("Payload has no message", error_code="VALIDATION_ERROR")

        routing = payload.get("routing") or {}
        agent = str(routing.get("agent") or "personality")
        argv = build_run_args(
            command_template=self.command_template,
            values={
                "prompt": message,
                "agent": agent,
                "user_name": _user_name(payload),
            },
        )
        env = os.environ.copy()
        env["DUALPATH_AGENT"] = agent

        result = run_cli_command(argv=argv, timeout_seconds=self.timeout_seconds, env=env)
        if result.timed_out:
            raise HandlerError(
                f"CLI agent timed out after {self.timeout_seconds:g}s",
                code="TIMEOUT",
            )
        if result.exit_code != 0:
            stderr_tail = result.stderr.strip()[-_STDERR_TAIL_CHARS:]
            logger.warning("CLI agent exited with %d: %s", result.exit_code, stderr_tail)
            return HandlerResult.failure(
                stderr_tail or f"CLI agent exited with code {result.exit_code}",
            )

        content, metadata = _parse_agent_output(result.stdout)
        metadata.setdefault("agent", agent)
        metadata["duration_ms"] = result.duration_ms
        return HandlerResult.ok(content, metadata)


def _user_name(payload: dict[str, Any]) -> str:
    profile = payload.get("user_profile") or {}
    return str(profile.get("name") or "")


def _parse_agent_output(stdout: str) -> tuple[str, dict[str, Any]]:
    text = stdout.strip()
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return text, {}
        if isinstance(parsed, dict) and isinstance(parsed.get("content"), str):
            metadata = parsed.get("metadata")
            return parsed["content"], dict(metadata) if isinstance(metadata, dict) else {}
    return text, {}


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.communicate(timeout=2)
