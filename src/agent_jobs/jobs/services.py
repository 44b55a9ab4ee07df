"""Use-case services for job lifecycle control."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from agent_jobs.jobs.models import (
    JobOptions,
    JobRecord,
    JobStatus,
    isoformat,
)
from agent_jobs.jobs.store import JobNotFoundError, JobStore
from agent_jobs.jobs.supervisor import ProcessSupervisor, TerminateOutcome, WorkerLaunchError

logger = logging.getLogger(__name__)

PROCESS_EXITED_UNEXPECTEDLY = "Process exited unexpectedly"
DEFAULT_LOG_TAIL = 50


@dataclass(slots=True)
class StartJob:
    """High-level command to start one job."""

    job_id: str
    prompt: str
    cwd: str
    model: str | None = None
    allowed_tools: tuple[str, ...] | None = None


@dataclass(slots=True)
class StartedJob:
    job_id: str
    pid: int
    status: JobStatus

    def to_payload(self) -> dict[str, Any]:
        return {"jobId": self.job_id, "pid": self.pid, "status": self.status.value}


@dataclass(slots=True)
class JobStatusView:
    """Readable status snapshot for CLI output."""

    job_id: str
    status: JobStatus
    pid: int | None = None
    started_at: str | None = None
    ended_at: str | None = None
    error: str | None = None
    rate_limited: bool = False

    @classmethod
    def from_record(cls, record: JobRecord) -> JobStatusView:
        return cls(
            job_id=record.job_id,
            status=record.status,
            pid=record.pid,
            started_at=isoformat(record.started_at),
            ended_at=isoformat(record.ended_at),
            error=record.error,
            rate_limited=record.rate_limited,
        )

    def to_payload(self) -> dict[str, Any]:
        if self.status is JobStatus.NOT_FOUND:
            return {"jobId": self.job_id, "status": self.status.value}
        return {
            "jobId": self.job_id,
            "pid": self.pid,
            "status": self.status.value,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "error": self.error,
            "rateLimited": self.rate_limited,
        }


@dataclass(slots=True)
class JobLogsView:
    job_id: str
    lines: int
    tail: str

    def to_payload(self) -> dict[str, Any]:
        return {"jobId": self.job_id, "lines": self.lines, "tail": self.tail}


@dataclass(slots=True)
class KillOutcome:
    job_id: str
    killed: bool
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jobId": self.job_id, "killed": self.killed}
        if self.error is not None:
            payload["error"] = self.error
        return payload


class JobService:
    """Translates lifecycle operations into store and supervisor calls.

    The service never talks to a running worker. Apart from creation, the only
    record writes it performs are the liveness reconciliation in ``status`` and
    the kill mark in ``kill``; both re-read the record right before writing and
    commit only while it is still non-terminal.
    """

    def __init__(self, *, store: JobStore, supervisor: ProcessSupervisor) -> None:
        self.store = store
        self.supervisor = supervisor

    def start(self, command: StartJob) -> StartedJob:
        self.store.create_job(
            command.job_id,
            command.prompt,
            command.cwd,
            JobOptions(model=command.model, allowed_tools=command.allowed_tools),
        )
        try:
            spawned = self.supervisor.spawn_worker(command.job_id)
        except WorkerLaunchError as error:
            record = self.store.read_job(command.job_id)
            if record.finish(JobStatus.FAILED, error=str(error)):
                self.store.write_job(command.job_id, record)
            raise

        record = self.store.read_job(command.job_id)
        if not record.is_terminal and (record.pid is None or record.status is JobStatus.STARTING):
            record.mark_running(pid=spawned.pid, pid_create_time=spawned.create_time)
            self.store.write_job(command.job_id, record)
        return StartedJob(job_id=command.job_id, pid=spawned.pid, status=JobStatus.RUNNING)

    def status(self, job_id: str) -> JobStatusView:
        try:
            record = self.store.read_job(job_id)
        except JobNotFoundError:
            return JobStatusView(job_id=job_id, status=JobStatus.NOT_FOUND)

        if record.status is JobStatus.RUNNING and record.pid is not None:
            if not self.supervisor.is_alive(record.pid, record.pid_create_time):
                record = self._reconcile_dead_worker(job_id)
        return JobStatusView.from_record(record)

    def result(self, job_id: str) -> dict[str, Any]:
        try:
            return self.store.read_result(job_id).to_payload()
        except JobNotFoundError:
            current = self.status(job_id)
            return {"jobId": job_id, "status": current.status.value, "result": None}

    def logs(self, job_id: str, tail: int = DEFAULT_LOG_TAIL) -> JobLogsView:
        output = self.store.tail_output(job_id, tail)
        return JobLogsView(job_id=job_id, lines=output.total_lines, tail=output.tail)

    def list(self) -> list[JobStatusView]:
        return [self.status(job_id) for job_id in self.store.list_job_ids()]

    def kill(self, job_id: str) -> KillOutcome:
        try:
            record = self.store.read_job(job_id)
        except JobNotFoundError:
            return KillOutcome(job_id=job_id, killed=False, error="Job not found")

        if record.pid is None:
            return KillOutcome(job_id=job_id, killed=False, error="No PID recorded")
        if not self.supervisor.is_alive(record.pid, record.pid_create_time):
            return KillOutcome(job_id=job_id, killed=False, error="Process already dead")

        outcome = self.supervisor.terminate(record.pid)
        if outcome is TerminateOutcome.ALREADY_GONE:
            return KillOutcome(job_id=job_id, killed=False, error="Process already dead")
        if outcome is TerminateOutcome.DENIED:
            return KillOutcome(
                job_id=job_id,
                killed=False,
                error=f"Permission denied to signal pid {record.pid}",
            )

        latest = self.store.read_job(job_id)
        if latest.finish(JobStatus.KILLED):
            self.store.write_job(job_id, latest)
        elif latest.status is not JobStatus.KILLED:
            logger.info(
                "Job %s reached %s before the kill mark; keeping it",
                job_id,
                latest.status.value,
            )
            return KillOutcome(
                job_id=job_id,
                killed=False,
                error=f"Job already {latest.status.value}",
            )
        return KillOutcome(job_id=job_id, killed=True)

    def _reconcile_dead_worker(self, job_id: str) -> JobRecord:
        latest = self.store.read_job(job_id)
        if latest.status is JobStatus.RUNNING and latest.finish(
            JobStatus.FAILED,
            error=PROCESS_EXITED_UNEXPECTEDLY,
        ):
            logger.warning("Worker for job %s (pid %s) is gone", job_id, latest.pid)
            self.store.write_job(job_id, latest)
        return latest
