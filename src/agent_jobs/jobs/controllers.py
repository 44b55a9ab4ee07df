"""Controllers for job CLI commands."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_jobs.config import Settings
from agent_jobs.jobs.services import DEFAULT_LOG_TAIL, JobService, StartJob
from agent_jobs.jobs.store import JobStore
from agent_jobs.jobs.supervisor import ProcessSupervisor


@dataclass(slots=True)
class StartJobCommand:
    """CLI input for launching a job."""

    jobs_root: Path | None
    job_id: str
    prompt: str
    cwd: Path | None
    model: str | None
    allowed_tools: tuple[str, ...]


@dataclass(slots=True)
class JobRefCommand:
    """CLI input for commands addressing one job."""

    jobs_root: Path | None
    job_id: str


@dataclass(slots=True)
class JobLogsCommand:
    """CLI input for output log tailing."""

    jobs_root: Path | None
    job_id: str
    tail: int = DEFAULT_LOG_TAIL


@dataclass(slots=True)
class JobListCommand:
    jobs_root: Path | None


class JobsCliController:
    """Coordinates job lifecycle CLI operations and renders JSON payloads."""

    def start(self, command: StartJobCommand) -> dict[str, Any]:
        settings = Settings.from_env(jobs_root=command.jobs_root)
        cwd = command.cwd if command.cwd is not None else Path(os.getcwd())
        started = _service(settings).start(
            StartJob(
                job_id=command.job_id,
                prompt=command.prompt,
                cwd=str(cwd.resolve()),
                model=command.model or settings.agent.default_model,
                allowed_tools=command.allowed_tools or None,
            ),
        )
        return started.to_payload()

    def status(self, command: JobRefCommand) -> dict[str, Any]:
        settings = Settings.from_env(jobs_root=command.jobs_root)
        return _service(settings).status(command.job_id).to_payload()

    def result(self, command: JobRefCommand) -> dict[str, Any]:
        settings = Settings.from_env(jobs_root=command.jobs_root)
        return _service(settings).result(command.job_id)

    def logs(self, command: JobLogsCommand) -> dict[str, Any]:
        settings = Settings.from_env(jobs_root=command.jobs_root)
        return _service(settings).logs(command.job_id, tail=command.tail).to_payload()

    def list_jobs(self, command: JobListCommand) -> list[dict[str, Any]]:
        settings = Settings.from_env(jobs_root=command.jobs_root)
        return [view.to_payload() for view in _service(settings).list()]

    def kill(self, command: JobRefCommand) -> dict[str, Any]:
        settings = Settings.from_env(jobs_root=command.jobs_root)
        return _service(settings).kill(command.job_id).to_payload()


def _service(settings: Settings) -> JobService:
    return JobService(
        store=JobStore(settings.jobs_root),
        supervisor=ProcessSupervisor(settings),
    )
