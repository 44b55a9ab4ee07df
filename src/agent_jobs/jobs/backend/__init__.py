"""Assistant CLI backend for job workers."""

from agent_jobs.jobs.backend.cli_backend import (
    AgentEvent,
    AgentEventKind,
    BackendRunError,
    build_agent_argv,
    launch_agent,
    parse_stream_line,
)

__all__ = [
    "AgentEvent",
    "AgentEventKind",
    "BackendRunError",
    "build_agent_argv",
    "launch_agent",
    "parse_stream_line",
]
