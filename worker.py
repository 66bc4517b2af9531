# worker.py
import logging
import subprocess
import threading
import time
import uuid
from datetime import timedelta
from pathlib import Path

from errors import ExecutionError, StoreError
from models import JobStatus, StatusEvent, check_transition

logger = logging.getLogger(__name__)


class Runner:
    """Single background worker that executes Pending jobs one at a time.

    ``keep_running`` and ``has_work`` are owned here; whatever submits work
    calls ``wake()`` instead of touching shared globals.
    """

    def __init__(self, storage, notifier, settings):
        self.db = storage
        self.notifier = notifier
        self.work_dir = Path(settings.work_dir)
        self.output_dir = Path(settings.output_root)
        self.log_dir = Path(settings.log_root)
        self.runner_argv = settings.runner_argv
        self.poll_interval = settings.poll_interval
        self.rescan_interval = settings.rescan_interval
        self.lease_seconds = settings.lease_seconds
        self.runner_id = f"runner-{uuid.uuid4().hex[:8]}"

        self.keep_running = threading.Event()
        self.keep_running.set()
        # Set at startup so jobs submitted before the process started get picked up
        self.has_work = threading.Event()
        self.has_work.set()

        self.current_job_id = None
        self._last_poll = float("-inf")
        self._thread = None

    # ---------------- Lifecycle ----------------
    def wake(self):
        self.has_work.set()

    def start(self):
        try:
            self.recover_interrupted()
        except StoreError as e:
            logger.error("Failed to recover interrupted jobs: %s", e)
        self.keep_running.set()
        self._thread = threading.Thread(target=self.run, name="buildq-runner", daemon=True)
        self._thread.start()
        logger.info("Runner started (work_dir=%s, poll=%ss)", self.work_dir, self.poll_interval)
        return self._thread

    def stop(self, timeout=None):
        """Clear keep-running and wait for the worker thread to exit."""
        self.keep_running.clear()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Runner still busy with job %s after %ss", self.current_job_id, timeout)
            else:
                logger.info("Runner stopped")

    def run(self):
        while self.keep_running.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Runner iteration failed")
            time.sleep(self.poll_interval)

    # ---------------- Polling ----------------
    def _should_poll(self):
        if self.has_work.is_set():
            return True
        if self.rescan_interval is None:
            return False
        return time.monotonic() - self._last_poll >= self.rescan_interval

    def run_once(self):
        """One poll iteration. Returns the number of jobs that ran to a terminal status."""
        if not self._should_poll():
            return 0

        # Cleared before the query: a wake() racing with it survives and
        # causes another poll on the next tick.
        self.has_work.clear()
        self._last_poll = time.monotonic()
        try:
            jobs = self.db.find_pending()
        except StoreError as e:
            logger.error("Failed to fetch pending jobs: %s", e)
            self.has_work.set()
            return 0

        done = 0
        for job in jobs:
            if not self.keep_running.is_set():
                # Untouched jobs stay Pending for the next start
                self.has_work.set()
                break
            try:
                if self.process(job):
                    done += 1
            except StoreError as e:
                logger.error("Failed to run jobs: %s", e)
                self.has_work.set()
                break
        return done

    # ---------------- Transitions ----------------
    def _log_transition(self, job_id, old_state, new_state, extra=""):
        logger.info("Job %s: %s → %s %s", job_id, old_state.value, new_state.value, extra)

    def _announce(self, job_id, old_state, new_state, extra=""):
        self._log_transition(job_id, old_state, new_state, extra)
        self.notifier.publish(StatusEvent(job_id, new_state))

    def _lease_until(self):
        return self.db.clock() + timedelta(seconds=self.lease_seconds)

    def process(self, job):
        """Claim, execute and finalize a single Pending job.

        Claim and final write are conditional on the stored row, so a job
        another runner already took, or one cancelled meanwhile, is skipped.
        """
        check_transition(job.status, JobStatus.running)
        running = self.db.claim(job.id, self.runner_id, self._lease_until())
        if running is None:
            logger.info("Job %s is no longer pending, skipping", job.id)
            return False
        self._announce(job.id, JobStatus.pending, JobStatus.running, f"(claimed by {self.runner_id})")

        self.current_job_id = job.id
        try:
            status, detail = self.execute(running)
        finally:
            self.current_job_id = None
        if status is JobStatus.failed:
            logger.warning("Job %s failed: %s", job.id, detail)

        check_transition(JobStatus.running, status)
        if self.db.finish(job.id, self.runner_id, status) is None:
            logger.info("Job %s was cancelled while running", job.id)
            return False
        self._announce(job.id, JobStatus.running, status, f"({detail})" if detail else "")
        return True

    def recover_interrupted(self):
        """Fail Running jobs whose runner stopped renewing its lease; they cannot be resumed."""
        recovered = 0
        for job in self.db.find_expired_running():
            if self.db.expire(job.id) is None:
                continue
            self._append_log(job, "Job interrupted before completion (runner gone)")
            self._announce(job.id, JobStatus.running, JobStatus.failed, "(interrupted)")
            recovered += 1
        return recovered

    # ---------------- Execution ----------------
    def _append_log(self, job, message):
        log_file = job.log_path(self.log_dir)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(log_file, "a", encoding="utf-8") as log:
                log.write(message + "\n")
        except OSError as e:
            logger.error("Failed to write log %s: %s", log_file, e)

    def _renew_lease(self, job):
        try:
            self.db.renew_lease(job.id, self.runner_id, self._lease_until())
        except StoreError as e:
            logger.error("Failed to renew lease of job %s: %s", job.id, e)

    def execute(self, job):
        """Run ``job`` through the command runner; returns (status, diagnostic)."""
        log_file = job.log_path(self.log_dir)
        if not log_file.parent.is_dir():
            try:
                log_file.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error("Failed to create log directory %s: %s", log_file.parent, e)

        try:
            with open(log_file, "wb") as log:
                try:
                    self._run_command(job, log)
                except ExecutionError as e:
                    log.write(f"{e}\n".encode("utf-8"))
                    return JobStatus.failed, str(e)
        except OSError as e:
            return JobStatus.failed, f"Cannot open log file {log_file}: {e}"
        return JobStatus.success, ""

    def _run_command(self, job, log):
        argv = [*self.runner_argv, *job.tokens()]
        try:
            # stdout and stderr share one descriptor so the log keeps emission order
            proc = subprocess.Popen(argv, cwd=self.work_dir, stdout=log, stderr=subprocess.STDOUT)
        except (OSError, ValueError) as e:
            raise ExecutionError(f"Failed to start {argv[0]}: {e}") from e
        while True:
            try:
                returncode = proc.wait(timeout=self.lease_seconds / 3)
                break
            except subprocess.TimeoutExpired:
                self._renew_lease(job)

        if returncode > 0:
            raise ExecutionError(f"Command failed, return code: {returncode}")
        if returncode < 0:
            raise ExecutionError(f"Command terminated by signal {-returncode}")
        if job.output:
            artifact = self.output_dir / job.output
            if not artifact.is_file():
                raise ExecutionError(f"Command finished, but output file {artifact} does not exist")
