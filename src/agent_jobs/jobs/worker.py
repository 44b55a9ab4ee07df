"""Detached worker that runs one job's agent and finalizes its record."""

from __future__ import annotations

import argparse
import asyncio
import codecs
import logging
import os
import signal
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from agent_jobs.config import Settings
from agent_jobs.jobs.backend import (
    AgentEvent,
    AgentEventKind,
    BackendRunError,
    build_agent_argv,
    launch_agent,
    parse_stream_line,
)
from agent_jobs.jobs.failure_classifier import (
    JOB_FAILURE_CLASSIFIER_VERSION,
    classify_failure,
    is_rate_limited,
)
from agent_jobs.jobs.models import (
    CollaboratorMetrics,
    FailureClass,
    JobRecord,
    JobStatus,
    ResultRecord,
)
from agent_jobs.jobs.store import JobStore
from agent_jobs.jobs.supervisor import process_create_time

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 8_000
_TEXT_CHUNK_BYTES = 4_096


class ConfigurationMissingError(RuntimeError):
    """A credential or setting the agent needs is absent."""


@dataclass(slots=True)
class ExecutionOutcome:
    """What the agent run produced before finalization."""

    status: JobStatus
    result_text: str | None
    error: str | None = None
    exit_code: int | None = None
    failure_class: FailureClass | None = None
    metrics: CollaboratorMetrics = field(default_factory=CollaboratorMetrics)


class JobWorker:
    """Owns one job from launch to a terminal state.

    The worker is a small state machine (``starting -> running -> completed |
    failed | killed``) driven by the agent's output stream and by a stop
    event set from SIGTERM/SIGINT. Terminal writes re-read the record and
    never overwrite an already terminal one, so whichever terminal state is
    written first wins.
    """

    def __init__(self, *, job_id: str, store: JobStore, settings: Settings) -> None:
        self.job_id = job_id
        self.store = store
        self.settings = settings
        self._stop_event = asyncio.Event()
        self._stop_signal_name: str | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._result_parts: list[str] = []
        self._stderr_tail = ""
        self._terminal_event: AgentEvent | None = None
        self._rate_limited = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> int:
        """Execute the job and return the process exit code."""

        with self._signal_handlers():
            try:
                return await self._run()
            except Exception as error:  # noqa: BLE001
                logger.exception("Unhandled worker error for job %s", self.job_id)
                await self._fail_unhandled(error)
                return 1

    async def _run(self) -> int:
        record = await asyncio.to_thread(self.store.read_job, self.job_id)
        if record.is_terminal:
            logger.info("Job %s already %s, nothing to do", self.job_id, record.status.value)
            return 0

        try:
            self._check_configuration()
        except ConfigurationMissingError as error:
            await self._log(f"[worker] ERROR: {error}\n")
            await self._finish_failed(
                error=str(error),
                failure_class=FailureClass.CONFIGURATION_MISSING,
            )
            return 1

        pid = os.getpid()
        create_time = process_create_time(pid)
        record = await self._update_record(
            lambda current: _apply_running(current, pid=pid, create_time=create_time),
        )
        if record.is_terminal:
            return 0

        await self._log(f"[worker] Starting job {self.job_id}\n")
        await self._log(f"[worker] Prompt: {record.prompt}\n")
        await self._log(f"[worker] CWD: {record.cwd}\n")

        try:
            outcome = await self._execute(record)
        except BackendRunError as error:
            logger.warning(
                "Agent launch for job %s failed (transient=%s): %s",
                self.job_id,
                error.transient,
                error,
            )
            if self.stop_requested:
                await self._finish_killed()
                return 0
            await self._log(f"[worker] ERROR: {error}\n")
            await self._finish_failed(
                error=str(error),
                failure_class=FailureClass.LAUNCH_FAILURE,
            )
            return 1

        if outcome is None or self.stop_requested:
            await self._finish_killed()
            return 0

        await self._finalize(outcome)
        return 0

    def _check_configuration(self) -> None:
        if self.settings.credential_missing():
            raise ConfigurationMissingError(
                f"{self.settings.agent.credential_env} environment variable is not set",
            )

    async def _execute(self, record: JobRecord) -> ExecutionOutcome | None:
        if self.stop_requested:
            return None

        argv = build_agent_argv(
            self.settings.agent,
            prompt=record.prompt,
            model=record.model,
            allowed_tools=record.allowed_tools,
        )
        await self._log(f"[worker] Cmd: {' '.join(argv[:-1])} <prompt>\n")
        self._process = await launch_agent(argv, cwd=record.cwd)
        process = self._process
        logger.info("Agent for job %s started with pid %d", self.job_id, process.pid)
        if self.stop_requested:
            _terminate(process)
            return None

        if self.settings.agent.output_format == "stream-json":
            stdout_reader = self._consume_stream_json(process)
        else:
            stdout_reader = self._consume_text(process)
        readers = [
            asyncio.ensure_future(stdout_reader),
            asyncio.ensure_future(self._consume_stderr(process)),
            asyncio.ensure_future(process.wait()),
        ]
        completion = asyncio.gather(*readers)
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({completion, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if self.stop_requested:
                return None
            _, _, exit_code = completion.result()
        finally:
            stop_waiter.cancel()
            for reader in readers:
                reader.cancel()
            if not completion.done():
                completion.cancel()
            self._stop_agent()

        await self._log(f"\n[worker] Agent exited with code {exit_code}\n")
        return self._outcome(exit_code)

    async def _consume_stream_json(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while True:
            line = await process.stdout.readline()
            if not line:
                return
            if self.stop_requested:
                continue
            for event in parse_stream_line(line.decode("utf-8", errors="replace")):
                await self._handle_event(event)

    async def _consume_text(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await process.stdout.read(_TEXT_CHUNK_BYTES)
            text = decoder.decode(chunk, final=not chunk)
            if text and not self.stop_requested:
                self._result_parts.append(text)
                await self._log(text)
            if not chunk:
                return

    async def _consume_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace")
            self._stderr_tail = (self._stderr_tail + text)[-_STDERR_TAIL_CHARS:]
            if not self.stop_requested:
                await self._log(f"[stderr] {text}")

    async def _handle_event(self, event: AgentEvent) -> None:
        if event.kind is AgentEventKind.TEXT:
            await self._log(f"{event.text}\n")
            self._result_parts.append(f"{event.text}\n")
        elif event.kind is AgentEventKind.TOOL:
            await self._log(f"[tool] {event.text}\n")
        elif event.kind is AgentEventKind.RATE_LIMIT:
            await self._mark_rate_limited()
            await self._log("[worker] Rate limited, agent will retry...\n")
        elif event.kind is AgentEventKind.RESULT:
            self._terminal_event = event
        else:
            await self._log(event.text if event.text.endswith("\n") else f"{event.text}\n")

    def _outcome(self, exit_code: int) -> ExecutionOutcome:
        accumulated = "".join(self._result_parts)
        event = self._terminal_event
        if event is not None:
            metrics = event.metrics or CollaboratorMetrics()
            if event.success:
                return ExecutionOutcome(
                    status=JobStatus.COMPLETED,
                    result_text=event.result or accumulated,
                    exit_code=exit_code,
                    metrics=metrics,
                )
            return self._failed_outcome(
                error=event.error or "unknown error",
                accumulated=accumulated,
                exit_code=exit_code,
                metrics=metrics,
            )

        if exit_code == 0:
            return ExecutionOutcome(
                status=JobStatus.COMPLETED,
                result_text=accumulated,
                exit_code=exit_code,
            )
        return self._failed_outcome(
            error=f"Agent exited with code {exit_code}",
            accumulated=accumulated,
            exit_code=exit_code,
            metrics=CollaboratorMetrics(),
        )

    def _failed_outcome(
        self,
        *,
        error: str,
        accumulated: str,
        exit_code: int,
        metrics: CollaboratorMetrics,
    ) -> ExecutionOutcome:
        classification = classify_failure(error=error, stderr=self._stderr_tail)
        logger.info(
            "Job %s failure classified as %s (classifier v%d, rule=%s, pattern=%r)",
            self.job_id,
            classification.failure_class.value,
            JOB_FAILURE_CLASSIFIER_VERSION,
            classification.matched_rule,
            classification.matched_pattern,
        )
        if classification.rate_limited:
            self._rate_limited = True
        return ExecutionOutcome(
            status=JobStatus.FAILED,
            result_text=accumulated or None,
            error=error,
            exit_code=exit_code,
            failure_class=classification.failure_class,
            metrics=metrics,
        )

    async def _finalize(self, outcome: ExecutionOutcome) -> None:
        current = await asyncio.to_thread(self.store.read_job, self.job_id)
        if current.is_terminal:
            logger.info(
                "Job %s became %s before finalization, dropping %s outcome",
                self.job_id,
                current.status.value,
                outcome.status.value,
            )
            return
        if outcome.status is JobStatus.COMPLETED:
            await self._log("[worker] Completed successfully\n")
        else:
            await self._log(f"[worker] Error: {outcome.error}\n")

        metrics = outcome.metrics
        result = ResultRecord(
            job_id=self.job_id,
            status=outcome.status,
            result=outcome.result_text,
            error=outcome.error,
            exit_code=outcome.exit_code,
            failure_class=outcome.failure_class,
            cost_usd=metrics.cost_usd,
            duration_ms=metrics.duration_ms,
            num_turns=metrics.num_turns,
            input_tokens=metrics.input_tokens,
            output_tokens=metrics.output_tokens,
        )
        await asyncio.to_thread(self.store.write_result, self.job_id, result)
        await self._update_record(
            lambda current: self._apply_finish(current, outcome.status, error=outcome.error),
        )

    async def _finish_failed(self, *, error: str, failure_class: FailureClass) -> None:
        result = ResultRecord(
            job_id=self.job_id,
            status=JobStatus.FAILED,
            result="".join(self._result_parts) or None,
            error=error,
            failure_class=failure_class,
        )
        await asyncio.to_thread(self.store.write_result, self.job_id, result)
        await self._update_record(
            lambda current: self._apply_finish(current, JobStatus.FAILED, error=error),
        )

    async def _finish_killed(self) -> None:
        signal_name = self._stop_signal_name or "stop request"
        await self._log(f"\n[worker] Received {signal_name}, shutting down gracefully...\n")
        self._stop_agent()
        await self._update_record(
            lambda current: self._apply_finish(current, JobStatus.KILLED),
        )
        logger.info("Job %s killed by %s", self.job_id, signal_name)

    async def _fail_unhandled(self, error: Exception) -> None:
        self._stop_agent()
        message = str(error) or type(error).__name__
        if is_rate_limited(message):
            self._rate_limited = True
        try:
            await self._log(f"[worker] Unhandled error: {message}\n")
            if self.stop_requested:
                await self._finish_killed()
                return
            await self._finish_failed(error=message, failure_class=FailureClass.UNHANDLED_FAULT)
        except (OSError, ValueError, TypeError, LookupError):
            logger.exception("Could not record failure for job %s", self.job_id)

    def _apply_finish(
        self,
        record: JobRecord,
        status: JobStatus,
        *,
        error: str | None = None,
    ) -> bool:
        changed = record.finish(status, error=error)
        if changed and self._rate_limited:
            record.rate_limited = True
        return changed

    async def _mark_rate_limited(self) -> None:
        self._rate_limited = True
        await self._update_record(_apply_rate_limited)

    async def _update_record(self, mutate: Callable[[JobRecord], bool]) -> JobRecord:
        """Re-read the record, apply ``mutate``, and persist it if it changed."""

        record = await asyncio.to_thread(self.store.read_job, self.job_id)
        if record.is_terminal:
            return record
        if mutate(record):
            await asyncio.to_thread(self.store.write_job, self.job_id, record)
        return record

    async def _log(self, text: str) -> None:
        await self.store.append_output(self.job_id, text)

    def request_stop(self, signal_name: str = "SIGTERM") -> None:
        """Cooperative shutdown: stop forwarding output and ask the agent to exit."""

        if self.stop_requested:
            return
        self._stop_signal_name = signal_name
        self._stop_event.set()
        logger.info("Job %s received %s", self.job_id, signal_name)
        self._stop_agent()

    def _stop_agent(self) -> None:
        if self._process is not None and self._process.returncode is None:
            _terminate(self._process)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, self.request_stop, signum.name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not in the main thread, or the platform lacks Unix signals.
                continue
            installed.append(signum)
        try:
            yield
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)


def _apply_running(record: JobRecord, *, pid: int, create_time: float | None) -> bool:
    before = (record.pid, record.status)
    record.mark_running(pid=pid, pid_create_time=create_time)
    return (record.pid, record.status) != before


def _apply_rate_limited(record: JobRecord) -> bool:
    if record.rate_limited:
        return False
    record.rate_limited = True
    return True


def _terminate(process: asyncio.subprocess.Process) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``python -m agent_jobs.jobs.worker <job_id>``."""

    parser = argparse.ArgumentParser(prog="agent_jobs.jobs.worker")
    parser.add_argument("job_id")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    worker = JobWorker(job_id=args.job_id, store=JobStore(settings.jobs_root), settings=settings)
    return asyncio.run(worker.run())


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
