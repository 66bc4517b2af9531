# service.py
"""Operations exposed to the HTTP API and the CLI."""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from errors import ExecutionError, InvalidTransitionError, NotFoundError, ValidationError
from models import Job, JobStatus, StatusEvent, check_transition, utc_now

logger = logging.getLogger(__name__)


class JobService:
    """Mutates the store and wakes the runner; never executes anything itself."""

    def __init__(self, storage, settings, runner=None, notifier=None, clock=utc_now) -> None:
        self.db = storage
        self.settings = settings
        self.runner = runner
        self.notifier = notifier
        self.clock = clock

    def _wake(self) -> None:
        if self.runner is not None:
            self.runner.wake()

    # ── Submit / cancel / reset ──────────────────────────────────────

    def submit(self, name: str, command: str, output: Optional[str] = None) -> Job:
        """Queue a new Pending job and signal the runner that work exists."""
        if not name or not name.strip():
            raise ValidationError("name is required")
        if not command or not command.strip():
            raise ValidationError("command is required")
        if "\0" in name or "\0" in command or (output and "\0" in output):
            raise ValidationError("name, command and output must not contain NUL bytes")
        job = self.db.insert(name.strip(), command.strip(), output or None)
        logger.info("Job %s submitted: %s (%s)", job.id, job.name, job.command)
        self._wake()
        return job

    def cancel(self, job_id: int) -> bool:
        """Delete the job whatever its status; True if a row was removed."""
        removed = self.db.delete_by_id(job_id)
        if removed:
            logger.info("Job %s cancelled", job_id)
        return removed

    def reset(self, job_id: int) -> Job:
        """Move a Failed job created today (UTC) back to Pending.

        The job keeps its ``created_at`` and therefore its place in the
        queue and its log/artifact paths.
        """
        job = self.get(job_id)
        now = self.clock()
        check_transition(job.status, JobStatus.pending)
        if not job.created_on(now.date()):
            raise InvalidTransitionError(
                f"Job {job_id} was created on {job.created_at.date()} and can only be retried on the same day"
            )
        updated = self.db.update_status(job_id, JobStatus.pending, now, expected=JobStatus.failed)
        logger.info("Job %s reset to Pending", job_id)
        if self.notifier is not None:
            self.notifier.publish(StatusEvent(job_id, JobStatus.pending))
        self._wake()
        return updated

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, job_id: int) -> Job:
        job = self.db.find_by_id(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def list(self, page: int, page_size: Optional[int] = None) -> Tuple[List[Job], int]:
        """Jobs newest first for a 1-indexed ``page``, plus the total page count."""
        page_size = page_size or self.settings.page_size
        if page < 1:
            raise ValidationError("Page number must be greater than 0")
        if page_size < 1:
            raise ValidationError("Page size must be greater than 0")
        return self.db.find_page(page_size, page - 1)

    def available_recipes(self) -> Iterator[str]:
        """Recipes reported by the command runner's ``--list`` output."""
        argv = [*self.settings.runner_argv, "--list"]
        try:
            result = subprocess.run(argv, cwd=self.settings.work_dir, capture_output=True, text=True)
        except OSError as e:
            raise ExecutionError(f"Failed to start {argv[0]}: {e}") from e
        if result.returncode != 0:
            raise ExecutionError(result.stderr.strip() or f"{argv[0]} --list exited with {result.returncode}")
        lines = result.stdout.splitlines()[1:]  # skip "Available recipes:"
        return (line.strip() for line in lines)

    # ── Files ────────────────────────────────────────────────────────

    def log_file(self, job_id: int) -> Path:
        job = self.get(job_id)
        path = job.log_path(self.settings.log_root)
        if not path.is_file():
            raise NotFoundError(f"No log for job {job_id}")
        return path

    def artifact_file(self, job_id: int) -> Path:
        job = self.get(job_id)
        if not job.output or job.status is not JobStatus.success:
            raise NotFoundError(f"Job {job_id} has no artifact")
        root = Path(self.settings.output_root).resolve()
        path = (root / job.output).resolve()
        if root not in path.parents or not path.is_file():
            raise NotFoundError(f"Artifact {job.output} of job {job_id} not found")
        return path
