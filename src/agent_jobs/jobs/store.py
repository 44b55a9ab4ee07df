"""File-backed job store: one directory per job under the jobs root."""

from __future__ import annotations

import json
import os
import uuid
from pathlib import Path
from typing import Any

import aiofiles

from agent_jobs.jobs.models import (
    JobOptions,
    JobRecord,
    JobStatus,
    OutputTail,
    ResultRecord,
    utc_now,
)

META_FILENAME = "meta.json"
OUTPUT_FILENAME = "output.log"
RESULT_FILENAME = "result.json"


class JobNotFoundError(LookupError):
    """No record (or result) exists for the requested job."""

    def __init__(self, job_id: str, what: str = "job") -> None:
        super().__init__(f"{what} not found: {job_id}")
        self.job_id = job_id


class JobAlreadyExistsError(RuntimeError):
    """A record already exists for the job id passed to create_job."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job already exists: {job_id}")
        self.job_id = job_id


def write_json(path: Path, payload: Any) -> None:
    """Replace ``path`` with pretty-printed JSON via a temp file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", "utf-8")
    os.replace(tmp_path, path)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def validate_job_id(job_id: str) -> str:
    if not job_id or job_id in {".", ".."}:
        raise ValueError(f"Invalid job id: {job_id!r}")
    if "/" in job_id or "\\" in job_id or os.sep in job_id:
        raise ValueError(f"Job id must not contain path separators: {job_id!r}")
    return job_id


class JobStore:
    """Reads and writes job metadata, output logs, and results on disk."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def job_dir(self, job_id: str) -> Path:
        return self.root_dir / validate_job_id(job_id)

    def meta_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / META_FILENAME

    def output_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / OUTPUT_FILENAME

    def result_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / RESULT_FILENAME

    def job_exists(self, job_id: str) -> bool:
        return self.meta_path(job_id).is_file()

    def create_job(
        self,
        job_id: str,
        prompt: str,
        cwd: str,
        options: JobOptions | None = None,
    ) -> JobRecord:
        options = options or JobOptions()
        meta_path = self.meta_path(job_id)
        if meta_path.exists():
            raise JobAlreadyExistsError(job_id)

        record = JobRecord(
            job_id=job_id,
            status=JobStatus.STARTING,
            prompt=prompt,
            cwd=cwd,
            started_at=utc_now(),
            model=options.model,
            allowed_tools=list(options.allowed_tools) if options.allowed_tools else None,
        )
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        write_json(meta_path, record.to_payload())
        self.output_path(job_id).write_text("", "utf-8")
        return record

    def read_job(self, job_id: str) -> JobRecord:
        try:
            raw = load_json(self.meta_path(job_id))
        except FileNotFoundError as error:
            raise JobNotFoundError(job_id) from error
        return JobRecord.from_payload(raw)

    def write_job(self, job_id: str, record: JobRecord) -> None:
        if record.job_id != job_id:
            raise ValueError(f"Record for {record.job_id!r} cannot be written as {job_id!r}")
        write_json(self.meta_path(job_id), record.to_payload())

    async def append_output(self, job_id: str, text: str) -> None:
        """Append to the output log; the file is never truncated."""

        async with aiofiles.open(self.output_path(job_id), "a", encoding="utf-8") as handle:
            await handle.write(text)

    def tail_output(self, job_id: str, n: int) -> OutputTail:
        try:
            content = self.output_path(job_id).read_text("utf-8", errors="replace")
        except FileNotFoundError:
            return OutputTail(total_lines=0, tail="")
        lines = content.split("\n")
        tail = "\n".join(lines[-n:]) if n > 0 else ""
        return OutputTail(total_lines=len(lines), tail=tail)

    def write_result(self, job_id: str, record: ResultRecord) -> None:
        if record.job_id != job_id:
            raise ValueError(f"Result for {record.job_id!r} cannot be written as {job_id!r}")
        write_json(self.result_path(job_id), record.to_payload())

    def read_result(self, job_id: str) -> ResultRecord:
        try:
            raw = load_json(self.result_path(job_id))
        except FileNotFoundError as error:
            raise JobNotFoundError(job_id, what="result") from error
        return ResultRecord.from_payload(raw)

    def list_job_ids(self) -> list[str]:
        if not self.root_dir.is_dir():
            return []
        return sorted(entry.name for entry in self.root_dir.iterdir() if entry.is_dir())
