from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import replace
from pathlib import Path

import allure
import psutil

from agent_jobs.config import AgentSettings, Settings
from agent_jobs.jobs import worker as worker_module
from agent_jobs.jobs.backend import BackendRunError
from agent_jobs.jobs.models import JobOptions, JobStatus
from agent_jobs.jobs.store import JobStore
from agent_jobs.jobs.worker import JobWorker, main

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Worker Runtime"),
]


def _stream_settings(settings: Settings) -> Settings:
    return replace(settings, agent=replace(settings.agent, output_format="stream-json"))


def _run_job(
    store: JobStore,
    settings: Settings,
    prompt: str,
    *,
    cwd: Path,
    job_id: str = "job-1",
    options: JobOptions | None = None,
) -> int:
    store.create_job(job_id, prompt, str(cwd), options)
    worker = JobWorker(job_id=job_id, store=store, settings=settings)
    return asyncio.run(worker.run())


def _log(store: JobStore, job_id: str = "job-1") -> str:
    return store.output_path(job_id).read_text("utf-8")


def test_text_mode_completes_with_agent_output(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
) -> None:
    exit_code = _run_job(store, echo_settings, "world", cwd=tmp_path)

    assert exit_code == 0
    record = store.read_job("job-1")
    assert record.status is JobStatus.COMPLETED
    assert record.pid == os.getpid()
    assert record.ended_at is not None
    result = store.read_result("job-1")
    assert result.result == "world"
    assert result.exit_code == 0
    assert result.error is None
    assert result.failure_class is None
    log = _log(store)
    assert "[worker] Starting job job-1" in log
    assert "[worker] Prompt: world" in log
    assert f"[worker] CWD: {tmp_path}" in log
    assert "[worker] Agent exited with code 0" in log
    assert "[worker] Completed successfully" in log


def test_stream_json_mode_completes_with_metrics(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
) -> None:
    exit_code = _run_job(
        store,
        _stream_settings(echo_settings),
        "sleep:0:world",
        cwd=tmp_path,
        options=JobOptions(model="sonnet", allowed_tools=("Bash",)),
    )

    assert exit_code == 0
    result = store.read_result("job-1")
    assert result.status is JobStatus.COMPLETED
    assert result.result == "world"
    assert result.exit_code == 0
    assert result.duration_ms == 5
    assert result.num_turns == 1
    assert result.cost_usd == 0.0
    assert result.input_tokens == 1
    log = _log(store)
    assert "[tool] Bash" in log
    assert "world\n" in log
    assert "--model sonnet" in log
    assert "--allowed-tools Bash" in log


def test_stream_json_failure_result(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
) -> None:
    exit_code = _run_job(store, _stream_settings(echo_settings), "fail:tool crashed", cwd=tmp_path)

    assert exit_code == 0
    record = store.read_job("job-1")
    assert record.status is JobStatus.FAILED
    assert record.error == "tool crashed"
    result = store.read_result("job-1")
    assert result.error == "tool crashed"
    assert result.exit_code == 1
    assert result.failure_class is not None
    assert result.failure_class.value == "execution_failure"
    log = _log(store)
    assert "[stderr] tool crashed" in log
    assert "[worker] Error: tool crashed" in log


def test_non_zero_exit_without_result_event(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
) -> None:
    _run_job(store, echo_settings, "exit:3", cwd=tmp_path)

    record = store.read_job("job-1")
    assert record.status is JobStatus.FAILED
    assert record.error == "Agent exited with code 3"
    assert store.read_result("job-1").exit_code == 3


def test_rate_limited_failure_sets_sticky_flag(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
) -> None:
    _run_job(store, echo_settings, "fail:API Error: 429 Too Many Requests", cwd=tmp_path)

    record = store.read_job("job-1")
    assert record.status is JobStatus.FAILED
    assert record.rate_limited is True
    result = store.read_result("job-1")
    assert result.failure_class is not None
    assert result.failure_class.value == "rate_limited"


def test_rate_limit_notice_in_stream_is_recorded(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
) -> None:
    _run_job(store, _stream_settings(echo_settings), "rate-limit", cwd=tmp_path)

    record = store.read_job("job-1")
    assert record.status is JobStatus.COMPLETED
    assert record.rate_limited is True
    assert "[worker] Rate limited, agent will retry..." in _log(store)


def test_missing_credential_fails_fast(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
    monkeypatch,
) -> None:
    monkeypatch.delenv("AGENT_JOBS_TEST_KEY", raising=False)
    settings = replace(
        echo_settings,
        agent=replace(
            echo_settings.agent,
            credential_env="AGENT_JOBS_TEST_KEY",
            require_credential=True,
        ),
    )

    exit_code = _run_job(store, settings, "world", cwd=tmp_path)

    assert exit_code == 1
    record = store.read_job("job-1")
    assert record.status is JobStatus.FAILED
    assert "AGENT_JOBS_TEST_KEY" in (record.error or "")
    result = store.read_result("job-1")
    assert result.failure_class is not None
    assert result.failure_class.value == "configuration_missing"
    assert "[worker] ERROR:" in _log(store)


def test_launch_failure_is_recorded(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
    caplog,
) -> None:
    caplog.set_level(logging.WARNING, logger="agent_jobs.jobs.worker")
    settings = replace(
        echo_settings,
        agent=AgentSettings(command=(str(tmp_path / "no-such-agent"),), require_credential=False),
    )

    exit_code = _run_job(store, settings, "world", cwd=tmp_path)

    assert exit_code == 1
    record = store.read_job("job-1")
    assert record.status is JobStatus.FAILED
    assert (record.error or "").startswith("Failed to start agent")
    result = store.read_result("job-1")
    assert result.failure_class is not None
    assert result.failure_class.value == "launch_failure"
    assert "transient=False" in caplog.text


def test_stop_request_marks_job_killed(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
) -> None:
    store.create_job("job-1", "sleep:30:too late", str(tmp_path))
    worker = JobWorker(job_id="job-1", store=store, settings=echo_settings)

    async def _run_and_stop() -> int:
        asyncio.get_running_loop().call_later(1.0, worker.request_stop, "SIGTERM")
        return await worker.run()

    exit_code = asyncio.run(_run_and_stop())

    assert exit_code == 0
    record = store.read_job("job-1")
    assert record.status is JobStatus.KILLED
    assert record.ended_at is not None
    assert record.error is None
    assert not store.result_path("job-1").exists()
    log = _log(store)
    assert "[worker] Received SIGTERM, shutting down gracefully..." in log
    assert "too late" not in log.split("[worker] Received SIGTERM")[-1]


def test_worker_leaves_terminal_record_alone(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
) -> None:
    record = store.create_job("job-1", "world", str(tmp_path))
    record.finish(JobStatus.KILLED)
    store.write_job("job-1", record)
    worker = JobWorker(job_id="job-1", store=store, settings=echo_settings)

    assert asyncio.run(worker.run()) == 0
    assert store.read_job("job-1") == record
    assert _log(store) == ""


def test_worker_entrypoint_reads_settings_from_env(
    echo_env: Path,
    tmp_path: Path,
) -> None:
    store = JobStore(echo_env)
    store.create_job("job-1", "from env", str(tmp_path))

    assert main(["job-1"]) == 0
    assert store.read_result("job-1").result == "from env"


def test_unknown_job_is_an_unhandled_fault(echo_settings: Settings, store: JobStore) -> None:
    worker = JobWorker(job_id="ghost", store=store, settings=echo_settings)

    assert asyncio.run(worker.run()) == 1
    assert not store.job_dir("ghost").exists()


def test_fault_while_streaming_stops_agent(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
    monkeypatch,
) -> None:
    async def _broken_handler(self, event) -> None:
        raise RuntimeError("event handler crashed")

    monkeypatch.setattr(JobWorker, "_handle_event", _broken_handler)
    store.create_job("job-1", "sleep:30:too late", str(tmp_path))
    worker = JobWorker(job_id="job-1", store=store, settings=_stream_settings(echo_settings))
    started = time.monotonic()

    assert asyncio.run(worker.run()) == 1

    assert time.monotonic() - started < 20
    record = store.read_job("job-1")
    assert record.status is JobStatus.FAILED
    assert record.error == "event handler crashed"
    result = store.read_result("job-1")
    assert result.failure_class is not None
    assert result.failure_class.value == "unhandled_fault"
    assert worker._process is not None
    _assert_exits(worker._process.pid)


def test_stop_during_launch_failure_is_a_kill(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
    monkeypatch,
) -> None:
    store.create_job("job-1", "world", str(tmp_path))
    worker = JobWorker(job_id="job-1", store=store, settings=echo_settings)

    async def _launch_interrupted(argv, *, cwd):
        worker.request_stop("SIGTERM")
        raise BackendRunError("Failed to start agent: interrupted", transient=True)

    monkeypatch.setattr(worker_module, "launch_agent", _launch_interrupted)

    assert asyncio.run(worker.run()) == 0

    record = store.read_job("job-1")
    assert record.status is JobStatus.KILLED
    assert record.error is None
    assert not store.result_path("job-1").exists()
    assert "[worker] Received SIGTERM, shutting down gracefully..." in _log(store)


def test_failure_classification_is_logged(
    store: JobStore,
    echo_settings: Settings,
    tmp_path: Path,
    caplog,
) -> None:
    caplog.set_level(logging.INFO, logger="agent_jobs.jobs.worker")

    _run_job(store, echo_settings, "fail:Credit balance is too low", cwd=tmp_path)

    assert "classified as billing_or_quota" in caplog.text
    assert "rule=billing_or_quota" in caplog.text
    assert "pattern='credit balance'" in caplog.text


def _assert_exits(pid: int, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while True:
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                return
        except psutil.NoSuchProcess:
            return
        if time.monotonic() > deadline:
            raise AssertionError(f"agent pid {pid} still running")
        time.sleep(0.05)
