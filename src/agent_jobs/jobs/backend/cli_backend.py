"""Subprocess launch and stream-json parsing for the assistant CLI."""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from agent_jobs.config import AgentSettings
from agent_jobs.jobs.models import CollaboratorMetrics

# Single stream-json events can carry whole file contents.
STREAM_LINE_LIMIT = 16 * 1024 * 1024


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class AgentEventKind(str, Enum):
    """Fragments the worker distinguishes in the agent's output stream."""

    TEXT = "text"
    TOOL = "tool"
    RATE_LIMIT = "rate_limit"
    RESULT = "result"
    RAW = "raw"


@dataclass(slots=True)
class AgentEvent:
    """One parsed fragment of agent output."""

    kind: AgentEventKind
    text: str = ""
    success: bool = True
    error: str | None = None
    result: str | None = None
    metrics: CollaboratorMetrics | None = None


def build_agent_argv(
    agent: AgentSettings,
    *,
    prompt: str,
    model: str | None,
    allowed_tools: list[str] | None,
) -> list[str]:
    """Render the non-interactive CLI invocation for one job."""

    argv = [
        *agent.command,
        "--no-session-persistence",
        "--dangerously-skip-permissions",
        "--print",
        "--output-format",
        agent.output_format,
    ]
    if agent.output_format == "stream-json":
        argv.append("--verbose")
    if model:
        argv.extend(["--model", model])
    if allowed_tools:
        argv.extend(["--allowed-tools", ",".join(allowed_tools)])
    argv.extend(["--", prompt])
    return argv


def agent_env() -> dict[str, str]:
    env = os.environ.copy()
    env["CI"] = "true"
    env["FORCE_COLOR"] = "0"
    return env


async def launch_agent(argv: list[str], *, cwd: str) -> asyncio.subprocess.Process:
    """Start the agent with piped stdout/stderr and no stdin."""

    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd or None,
            env=agent_env(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LINE_LIMIT,
        )
    except FileNotFoundError as error:
        missing = error.filename or argv[0]
        raise BackendRunError(
            f"Failed to start agent: command or cwd not found: {missing}",
            transient=False,
        ) from error
    except OSError as error:
        raise BackendRunError(f"Failed to start agent: {error}", transient=True) from error


def parse_stream_line(line: str) -> list[AgentEvent]:
    """Translate one stream-json line into worker events.

    Lines that are not JSON objects come back as a single RAW event.
    """

    stripped = line.strip()
    if not stripped:
        return []
    try:
        message = json.loads(stripped)
    except json.JSONDecodeError:
        return [AgentEvent(kind=AgentEventKind.RAW, text=line)]
    if not isinstance(message, dict):
        return [AgentEvent(kind=AgentEventKind.RAW, text=line)]

    message_type = message.get("type")
    if message_type == "assistant":
        return _assistant_events(message)
    if message_type == "result":
        return [_result_event(message)]
    return []


def _assistant_events(message: dict[str, Any]) -> list[AgentEvent]:
    events: list[AgentEvent] = []
    if message.get("error") == "rate_limit":
        events.append(AgentEvent(kind=AgentEventKind.RATE_LIMIT))

    body = message.get("message")
    content = body.get("content") if isinstance(body, dict) else None
    if not isinstance(content, list):
        return events
    for block in content:
        if not isinstance(block, dict):
            continue
        if isinstance(block.get("text"), str):
            events.append(AgentEvent(kind=AgentEventKind.TEXT, text=block["text"]))
        elif isinstance(block.get("name"), str):
            events.append(AgentEvent(kind=AgentEventKind.TOOL, text=block["name"]))
    return events


def _result_event(message: dict[str, Any]) -> AgentEvent:
    subtype = str(message.get("subtype") or "unknown")
    is_error = bool(message.get("is_error", False))
    success = subtype == "success" and not is_error
    result = message.get("result") if isinstance(message.get("result"), str) else None

    error: str | None = None
    if not success:
        errors = message.get("errors")
        if isinstance(errors, list) and errors:
            error = "; ".join(str(item) for item in errors)
        elif is_error and result:
            error = result
        else:
            error = subtype

    usage = message.get("usage") if isinstance(message.get("usage"), dict) else {}
    return AgentEvent(
        kind=AgentEventKind.RESULT,
        success=success,
        error=error,
        result=result,
        metrics=CollaboratorMetrics(
            cost_usd=_as_float(message.get("total_cost_usd")),
            duration_ms=_as_int(message.get("duration_ms")),
            num_turns=_as_int(message.get("num_turns")),
            input_tokens=_as_int(usage.get("input_tokens")),
            output_tokens=_as_int(usage.get("output_tokens")),
        ),
    )


def _as_int(value: object) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_float(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None
