"""Detached worker process launch, liveness probing, and termination."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import psutil

from agent_jobs.config import Settings

logger = logging.getLogger(__name__)

WORKER_MODULE = "agent_jobs.jobs.worker"
_CREATE_TIME_TOLERANCE_SECONDS = 1.0


class WorkerLaunchError(RuntimeError):
    """The OS refused to start the worker process."""


class TerminateOutcome(str, Enum):
    """Result of a termination request."""

    SENT = "sent"
    ALREADY_GONE = "already_gone"
    DENIED = "denied"


@dataclass(slots=True)
class SpawnedProcess:
    """Identity of a freshly launched process."""

    pid: int
    create_time: float | None


class ProcessHandle(Protocol):
    """OS process operations used by the supervisor."""

    def spawn(self, argv: list[str], *, cwd: Path, env: dict[str, str]) -> SpawnedProcess:
        """Start a detached process and return without waiting for it."""

    def is_alive(self, pid: int, create_time: float | None = None) -> bool:
        """Non-destructive liveness check."""

    def terminate(self, pid: int) -> TerminateOutcome:
        """Send a graceful termination signal."""


def process_create_time(pid: int) -> float | None:
    """Return the OS start timestamp of ``pid`` or None if unavailable."""

    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


class OsProcessHandle:
    """ProcessHandle backed by the real operating system."""

    def spawn(self, argv: list[str], *, cwd: Path, env: dict[str, str]) -> SpawnedProcess:
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as error:
            raise WorkerLaunchError(f"Failed to start worker: {error}") from error
        return SpawnedProcess(pid=process.pid, create_time=process_create_time(process.pid))

    def is_alive(self, pid: int, create_time: float | None = None) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, but owned by someone else; still subject to the checks below.
            logger.debug("No permission to signal pid %d", pid)

        try:
            process = psutil.Process(pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                return False
            if create_time is not None:
                drift = abs(process.create_time() - create_time)
                if drift > _CREATE_TIME_TOLERANCE_SECONDS:
                    logger.info("pid %d was reused (start time drift %.1fs)", pid, drift)
                    return False
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True
        return True

    def terminate(self, pid: int) -> TerminateOutcome:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.info("Terminate skipped, pid %d is already gone", pid)
            return TerminateOutcome.ALREADY_GONE
        except PermissionError:
            logger.warning("Terminate denied for pid %d", pid)
            return TerminateOutcome.DENIED
        return TerminateOutcome.SENT


class ProcessSupervisor:
    """Launches detached job workers and checks them by pid."""

    def __init__(self, settings: Settings, handle: ProcessHandle | None = None) -> None:
        self.settings = settings
        self.handle = handle or OsProcessHandle()

    def worker_argv(self, job_id: str) -> list[str]:
        return [sys.executable, "-m", WORKER_MODULE, job_id]

    def spawn_worker(self, job_id: str) -> SpawnedProcess:
        env = os.environ.copy()
        env["AGENT_JOBS_ROOT"] = str(self.settings.jobs_root)
        self.settings.jobs_root.mkdir(parents=True, exist_ok=True)
        spawned = self.handle.spawn(
            self.worker_argv(job_id),
            cwd=self.settings.jobs_root,
            env=env,
        )
        logger.info("Spawned worker for job %s with pid %d", job_id, spawned.pid)
        return spawned

    def is_alive(self, pid: int, create_time: float | None = None) -> bool:
        return self.handle.is_alive(pid, create_time)

    def terminate(self, pid: int) -> TerminateOutcome:
        return self.handle.terminate(pid)
