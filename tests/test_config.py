from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_jobs.config import AgentSettings, Settings

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "AGENT_JOBS_ROOT",
    "AGENT_JOBS_AGENT_COMMAND",
    "AGENT_JOBS_OUTPUT_FORMAT",
    "AGENT_JOBS_MODEL",
    "AGENT_JOBS_CREDENTIAL_ENV",
    "AGENT_JOBS_REQUIRE_CREDENTIAL",
    "AGENT_JOBS_LOG_LEVEL",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env, tmp_path: Path) -> None:
    clean_env.chdir(tmp_path)

    settings = Settings.from_env()

    assert settings.jobs_root == (tmp_path / "jobs").resolve()
    assert settings.agent == AgentSettings()
    assert settings.log_level == "INFO"


def test_env_overrides(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("AGENT_JOBS_ROOT", str(tmp_path / "custom"))
    clean_env.setenv("AGENT_JOBS_AGENT_COMMAND", "npx -y 'claude code'")
    clean_env.setenv("AGENT_JOBS_OUTPUT_FORMAT", "TEXT")
    clean_env.setenv("AGENT_JOBS_MODEL", "sonnet")
    clean_env.setenv("AGENT_JOBS_REQUIRE_CREDENTIAL", "no")
    clean_env.setenv("AGENT_JOBS_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.jobs_root == (tmp_path / "custom").resolve()
    assert settings.agent.command == ("npx", "-y", "claude code")
    assert settings.agent.output_format == "text"
    assert settings.agent.default_model == "sonnet"
    assert settings.agent.require_credential is False
    assert settings.log_level == "DEBUG"
    assert not settings.credential_missing()


def test_explicit_root_wins_over_env(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("AGENT_JOBS_ROOT", str(tmp_path / "from-env"))

    settings = Settings.from_env(jobs_root=tmp_path / "explicit")

    assert settings.jobs_root == (tmp_path / "explicit").resolve()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AGENT_JOBS_OUTPUT_FORMAT", "xml", "Invalid AGENT_JOBS_OUTPUT_FORMAT"),
        ("AGENT_JOBS_LOG_LEVEL", "chatty", "Invalid AGENT_JOBS_LOG_LEVEL"),
        ("AGENT_JOBS_REQUIRE_CREDENTIAL", "maybe", "Invalid boolean value"),
        ("AGENT_JOBS_AGENT_COMMAND", "   ", "must not be empty"),
    ],
)
def test_invalid_values_raise(clean_env, name: str, value: str, message: str) -> None:
    clean_env.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_credential_missing_follows_configured_env(clean_env) -> None:
    clean_env.setenv("AGENT_JOBS_CREDENTIAL_ENV", "AGENT_JOBS_TEST_KEY")
    clean_env.delenv("AGENT_JOBS_TEST_KEY", raising=False)

    settings = Settings.from_env()
    assert settings.credential_missing()

    clean_env.setenv("AGENT_JOBS_TEST_KEY", "secret")
    assert not settings.credential_missing()
