"""CLI entrypoint for agent-jobs."""

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from agent_jobs import __version__
from agent_jobs.jobs.controllers import (
    JobListCommand,
    JobLogsCommand,
    JobRefCommand,
    JobsCliController,
    StartJobCommand,
)
from agent_jobs.jobs.services import DEFAULT_LOG_TAIL
from agent_jobs.jobs.store import JobAlreadyExistsError
from agent_jobs.jobs.supervisor import WorkerLaunchError

JOBS_CONTROLLER = JobsCliController()
COMMAND_NAMES = ("start", "status", "result", "logs", "list", "kill")


class JsonErrorGroup(click.RichGroup):
    """Command group that reports every CLI error as ``{"error": ...}`` on stdout."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        kwargs["standalone_mode"] = False
        try:
            return super().main(*args, **kwargs)
        except click.ClickException as error:
            _emit_json({"error": error.format_message()})
            sys.exit(1)
        except click.Abort:
            _emit_json({"error": "Aborted"})
            sys.exit(1)


def _jobs_root_option(function: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--jobs-root",
        type=click.Path(path_type=Path),
        default=None,
        help="Jobs root directory (defaults to AGENT_JOBS_ROOT or ./jobs).",
    )(function)


def _job_id_option(function: Callable[..., Any]) -> Callable[..., Any]:
    return click.option("--job-id", required=True, help="Caller-assigned job id.")(function)


@click.group(cls=JsonErrorGroup, invoke_without_command=True)
@click.version_option(version=__version__, prog_name="agent-jobs")
@click.pass_context
def agent_jobs(ctx: click.Context) -> None:
    """Run assistant CLI jobs in the background and inspect them."""

    if ctx.invoked_subcommand is None:
        raise click.UsageError(
            f"Unknown command: (none). Available: {', '.join(COMMAND_NAMES)}",
        )


@agent_jobs.command("start")
@_jobs_root_option
@_job_id_option
@click.option("--prompt", required=True, help="Prompt passed to the assistant.")
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory for the assistant (defaults to the current one).",
)
@click.option("--model", default=None, help="Model override (defaults to AGENT_JOBS_MODEL).")
@click.option(
    "--allowed-tool",
    "allowed_tools",
    multiple=True,
    help="Tool the assistant may use. Can be repeated.",
)
def start(
    jobs_root: Path | None,
    job_id: str,
    prompt: str,
    cwd: Path | None,
    model: str | None,
    allowed_tools: tuple[str, ...],
) -> None:
    """Create a job record and launch its detached worker."""

    _emit_json(
        _run(
            lambda: JOBS_CONTROLLER.start(
                StartJobCommand(
                    jobs_root=jobs_root,
                    job_id=job_id,
                    prompt=prompt,
                    cwd=cwd,
                    model=model,
                    allowed_tools=allowed_tools,
                ),
            ),
        ),
    )


@agent_jobs.command("status")
@_jobs_root_option
@_job_id_option
def status(jobs_root: Path | None, job_id: str) -> None:
    """Show job status, reconciling workers that died silently."""

    command = JobRefCommand(jobs_root=jobs_root, job_id=job_id)
    _emit_json(_run(lambda: JOBS_CONTROLLER.status(command)))


@agent_jobs.command("result")
@_jobs_root_option
@_job_id_option
def result(jobs_root: Path | None, job_id: str) -> None:
    """Show the final result, or the current status when not finished."""

    command = JobRefCommand(jobs_root=jobs_root, job_id=job_id)
    _emit_json(_run(lambda: JOBS_CONTROLLER.result(command)))


@agent_jobs.command("logs")
@_jobs_root_option
@_job_id_option
@click.option(
    "--tail",
    type=click.IntRange(min=0),
    default=DEFAULT_LOG_TAIL,
    show_default=True,
    help="How many trailing output lines to show.",
)
def logs(jobs_root: Path | None, job_id: str, tail: int) -> None:
    """Show the tail of a job's output log."""

    _emit_json(
        _run(
            lambda: JOBS_CONTROLLER.logs(
                JobLogsCommand(jobs_root=jobs_root, job_id=job_id, tail=tail),
            ),
        ),
    )


@agent_jobs.command("list")
@_jobs_root_option
def list_jobs(jobs_root: Path | None) -> None:
    """Show status for every job under the jobs root."""

    _emit_json(_run(lambda: JOBS_CONTROLLER.list_jobs(JobListCommand(jobs_root=jobs_root))))


@agent_jobs.command("kill")
@_jobs_root_option
@_job_id_option
def kill(jobs_root: Path | None, job_id: str) -> None:
    """Send SIGTERM to a job's worker and mark it killed."""

    command = JobRefCommand(jobs_root=jobs_root, job_id=job_id)
    _emit_json(_run(lambda: JOBS_CONTROLLER.kill(command)))


def _run(action: Callable[[], Any]) -> Any:
    try:
        return action()
    except (JobAlreadyExistsError, WorkerLaunchError, ValueError, TypeError, OSError) as error:
        raise click.ClickException(str(error)) from error


def _emit_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


if __name__ == "__main__":  # pragma: no cover
    agent_jobs()
