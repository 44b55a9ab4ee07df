"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path

import pytest

from agent_jobs.config import AgentSettings, Settings
from agent_jobs.jobs.store import JobStore

ECHO_AGENT_COMMAND: tuple[str, ...] = (sys.executable, "-m", "agent_jobs.jobs.backend.echo_agent")
_SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def importable_src(monkeypatch):
    """Let spawned workers and echo agents import the package from the source tree."""
    existing = os.environ.get("PYTHONPATH")
    paths = [str(_SRC_DIR), existing] if existing else [str(_SRC_DIR)]
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(paths))


@pytest.fixture()
def jobs_root(tmp_path: Path) -> Path:
    return tmp_path / "jobs"


@pytest.fixture()
def store(jobs_root: Path) -> JobStore:
    return JobStore(jobs_root)


@pytest.fixture()
def echo_settings(jobs_root: Path) -> Settings:
    """Settings that run the deterministic echo agent in text mode."""
    return Settings(
        jobs_root=jobs_root,
        agent=AgentSettings(
            command=ECHO_AGENT_COMMAND,
            output_format="text",
            require_credential=False,
        ),
    )


@pytest.fixture()
def echo_env(monkeypatch, jobs_root: Path) -> Path:
    """Point Settings.from_env at a temporary root and the echo agent."""
    monkeypatch.setenv("AGENT_JOBS_ROOT", str(jobs_root))
    monkeypatch.setenv("AGENT_JOBS_AGENT_COMMAND", shlex.join(ECHO_AGENT_COMMAND))
    monkeypatch.setenv("AGENT_JOBS_OUTPUT_FORMAT", "text")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    for name in ("AGENT_JOBS_MODEL", "AGENT_JOBS_CREDENTIAL_ENV", "AGENT_JOBS_REQUIRE_CREDENTIAL"):
        monkeypatch.delenv(name, raising=False)
    return jobs_root
