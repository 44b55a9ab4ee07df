"""Domain models for background agent jobs and their on-disk records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

JOB_RECORD_SCHEMA_VERSION = 1
RESULT_RECORD_SCHEMA_VERSION = 1


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"
    NOT_FOUND = "not_found"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.KILLED})

_FORWARD_ORDER = {
    JobStatus.STARTING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
    JobStatus.KILLED: 2,
}


class FailureClass(str, Enum):
    """Normalized failure classes stored with failed results."""

    CONFIGURATION_MISSING = "configuration_missing"
    LAUNCH_FAILURE = "launch_failure"
    RATE_LIMITED = "rate_limited"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    EXECUTION_FAILURE = "execution_failure"
    UNHANDLED_FAULT = "unhandled_fault"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def parse_datetime(value: object) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"Expected ISO-8601 string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return True when ``target`` moves the lifecycle strictly forward."""

    if current.is_terminal:
        return False
    if target is JobStatus.NOT_FOUND or current is JobStatus.NOT_FOUND:
        return False
    return _FORWARD_ORDER[target] > _FORWARD_ORDER[current]


@dataclass(slots=True)
class JobOptions:
    """Optional inputs captured when a job is created."""

    model: str | None = None
    allowed_tools: tuple[str, ...] | None = None


@dataclass(slots=True)
class JobRecord:
    """Persisted job metadata (``meta.json``)."""

    job_id: str
    status: JobStatus
    prompt: str
    cwd: str
    started_at: datetime
    pid: int | None = None
    pid_create_time: float | None = None
    model: str | None = None
    allowed_tools: list[str] | None = None
    ended_at: datetime | None = None
    error: str | None = None
    rate_limited: bool = False
    schema_version: int = JOB_RECORD_SCHEMA_VERSION

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark_running(self, *, pid: int, pid_create_time: float | None) -> None:
        """Record the worker pid and move into ``running``.

        The pid is assigned only once; a second caller keeps the first value.
        """

        if self.pid is None:
            self.pid = pid
            self.pid_create_time = pid_create_time
        if can_transition(self.status, JobStatus.RUNNING):
            self.status = JobStatus.RUNNING

    def finish(self, status: JobStatus, *, error: str | None = None) -> bool:
        """Apply a terminal transition; return False if the record is already terminal."""

        if not status.is_terminal:
            raise ValueError(f"Not a terminal status: {status.value}")
        if not can_transition(self.status, status):
            return False
        self.status = status
        self.ended_at = utc_now()
        self.error = error if status is JobStatus.FAILED else None
        return True

    def to_payload(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "jobId": self.job_id,
            "pid": self.pid,
            "pidCreateTime": self.pid_create_time,
            "status": self.status.value,
            "prompt": self.prompt,
            "cwd": self.cwd,
            "model": self.model,
            "allowedTools": list(self.allowed_tools) if self.allowed_tools is not None else None,
            "startedAt": isoformat(self.started_at),
            "endedAt": isoformat(self.ended_at),
            "error": self.error,
            "rateLimited": self.rate_limited,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> JobRecord:
        job_id = raw.get("jobId")
        if not isinstance(job_id, str) or not job_id:
            raise ValueError("meta.jobId must be a non-empty string")
        prompt = raw.get("prompt")
        if not isinstance(prompt, str):
            raise TypeError("meta.prompt must be a string")
        started_at = parse_datetime(raw.get("startedAt"))
        if started_at is None:
            raise ValueError("meta.startedAt is required")
        allowed_tools = raw.get("allowedTools")
        if allowed_tools is not None and not isinstance(allowed_tools, list):
            raise TypeError("meta.allowedTools must be an array")
        pid = raw.get("pid")
        pid_create_time = raw.get("pidCreateTime")
        return cls(
            schema_version=int(raw.get("schemaVersion", JOB_RECORD_SCHEMA_VERSION)),
            job_id=job_id,
            pid=int(pid) if pid is not None else None,
            pid_create_time=float(pid_create_time) if pid_create_time is not None else None,
            status=JobStatus(raw.get("status", JobStatus.STARTING.value)),
            prompt=prompt,
            cwd=str(raw.get("cwd", "")),
            model=raw.get("model"),
            allowed_tools=[str(tool) for tool in allowed_tools]
            if allowed_tools is not None
            else None,
            started_at=started_at,
            ended_at=parse_datetime(raw.get("endedAt")),
            error=raw.get("error"),
            rate_limited=bool(raw.get("rateLimited", False)),
        )


@dataclass(slots=True)
class ResultRecord:
    """Terminal result (``result.json``) written once by the worker."""

    job_id: str
    status: JobStatus
    result: str | None = None
    error: str | None = None
    exit_code: int | None = None
    failure_class: FailureClass | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    schema_version: int = RESULT_RECORD_SCHEMA_VERSION

    def to_payload(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "jobId": self.job_id,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "exitCode": self.exit_code,
            "failureClass": self.failure_class.value if self.failure_class else None,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "num_turns": self.num_turns,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> ResultRecord:
        job_id = raw.get("jobId")
        if not isinstance(job_id, str) or not job_id:
            raise ValueError("result.jobId must be a non-empty string")
        failure_class = raw.get("failureClass")
        return cls(
            schema_version=int(raw.get("schemaVersion", RESULT_RECORD_SCHEMA_VERSION)),
            job_id=job_id,
            status=JobStatus(raw["status"]),
            result=raw.get("result"),
            error=raw.get("error"),
            exit_code=raw.get("exitCode"),
            failure_class=FailureClass(failure_class) if failure_class else None,
            cost_usd=raw.get("cost_usd"),
            duration_ms=raw.get("duration_ms"),
            num_turns=raw.get("num_turns"),
            input_tokens=raw.get("input_tokens"),
            output_tokens=raw.get("output_tokens"),
        )


@dataclass(slots=True)
class OutputTail:
    """Line count and tail of a job output log."""

    total_lines: int
    tail: str


@dataclass(slots=True)
class CollaboratorMetrics:
    """Usage metrics reported by the collaborator's terminal event."""

    cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
