# storage.py
import math
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from errors import InvalidTransitionError, NotFoundError, StoreError
from models import Job, JobStatus, utc_now

JOB_COLUMNS = "id, name, command, output, status, created_at, updated_at"


def _stamp(moment):
    # Fixed width UTC text so lexical order is chronological order
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class Storage:
    """sqlite3-backed job store.

    One connection is shared by the runner thread and request handlers;
    every statement runs under ``self._lock``.
    """

    def __init__(self, db_path="buildq.db", clock=utc_now):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row

            # Readers (CLI, dashboard) don't block the runner's writes
            if db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open job database {db_path}: {e}") from e

        self._init_schema()

    @contextmanager
    def _transaction(self):
        with self._lock:
            try:
                yield self.conn.cursor()
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StoreError(str(e)) from e

    def _init_schema(self):
        with self._transaction() as cur:
            # AUTOINCREMENT so ids of deleted jobs are never handed out again
            cur.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                command TEXT NOT NULL,
                output TEXT,
                status TEXT NOT NULL,
                worker_id TEXT,
                lease_until TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status, created_at)")

            cur.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)

    def close(self):
        with self._lock:
            self.conn.close()

    @staticmethod
    def _row_to_job(row):
        return Job(
            id=row["id"],
            name=row["name"],
            command=row["command"],
            output=row["output"],
            status=JobStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ---------------- Jobs ----------------
    def insert(self, name, command, output=None):
        """Create a Pending job; the store assigns id and timestamps."""
        now = _stamp(self.clock())
        with self._transaction() as cur:
            cur.execute("""
                INSERT INTO jobs (name, command, output, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (name, command, output, JobStatus.pending.value, now, now))
            job_id = cur.lastrowid
        return self.find_by_id(job_id)

    def find_by_id(self, job_id):
        with self._transaction() as cur:
            cur.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id=?", (job_id,))
            row = cur.fetchone()
        return self._row_to_job(row) if row else None

    def update_status(self, job_id, status, updated_at=None, expected=None):
        """Overwrite a job's status. Raises NotFoundError.

        With ``expected`` the write only happens while the stored status
        still equals it; otherwise InvalidTransitionError is raised.
        """
        updated_at = _stamp(updated_at or self.clock())
        sql = "UPDATE jobs SET status=?, lease_until=NULL, updated_at=MAX(created_at, ?) WHERE id=?"
        params = [JobStatus(status).value, updated_at, job_id]
        if expected is not None:
            sql += " AND status=?"
            params.append(JobStatus(expected).value)
        with self._transaction() as cur:
            # MAX() keeps created_at <= updated_at even with a skewed clock
            cur.execute(sql, params)
            updated = cur.rowcount
        if updated != 1:
            current = self.find_by_id(job_id)
            if current is None:
                raise NotFoundError(f"Job {job_id} not found")
            raise InvalidTransitionError(f"Job {job_id} is {current.status.value}, not {JobStatus(expected).value}")
        return self.find_by_id(job_id)

    # ---------------- Runner ownership ----------------
    def claim(self, job_id, worker_id, lease_until):
        """Pending -> Running for ``worker_id``; None if the job is no longer Pending."""
        with self._transaction() as cur:
            cur.execute("""
                UPDATE jobs
                SET status=?, worker_id=?, lease_until=?, updated_at=MAX(created_at, ?)
                WHERE id=? AND status=?
            """, (JobStatus.running.value, worker_id, _stamp(lease_until), _stamp(self.clock()),
                  job_id, JobStatus.pending.value))
            claimed = cur.rowcount
        return self.find_by_id(job_id) if claimed == 1 else None

    def renew_lease(self, job_id, worker_id, lease_until):
        with self._transaction() as cur:
            cur.execute("""
                UPDATE jobs SET lease_until=?
                WHERE id=? AND status=? AND worker_id=?
            """, (_stamp(lease_until), job_id, JobStatus.running.value, worker_id))
            return cur.rowcount == 1

    def finish(self, job_id, worker_id, status):
        """Running -> ``status`` if ``worker_id`` still owns the job; None otherwise."""
        with self._transaction() as cur:
            cur.execute("""
                UPDATE jobs SET status=?, lease_until=NULL, updated_at=MAX(created_at, ?)
                WHERE id=? AND status=? AND worker_id=?
            """, (JobStatus(status).value, _stamp(self.clock()), job_id, JobStatus.running.value, worker_id))
            finished = cur.rowcount
        return self.find_by_id(job_id) if finished == 1 else None

    def find_expired_running(self):
        """Running jobs whose owner stopped renewing its lease."""
        now = _stamp(self.clock())
        with self._transaction() as cur:
            cur.execute(f"""
                SELECT {JOB_COLUMNS} FROM jobs
                WHERE status=? AND (lease_until IS NULL OR lease_until <= ?)
                ORDER BY created_at ASC, id ASC
            """, (JobStatus.running.value, now))
            rows = cur.fetchall()
        return [self._row_to_job(r) for r in rows]

    def expire(self, job_id):
        """Running -> Failed, only while the lease is still expired."""
        now = _stamp(self.clock())
        with self._transaction() as cur:
            cur.execute("""
                UPDATE jobs SET status=?, lease_until=NULL, updated_at=MAX(created_at, ?)
                WHERE id=? AND status=? AND (lease_until IS NULL OR lease_until <= ?)
            """, (JobStatus.failed.value, now, job_id, JobStatus.running.value, now))
            expired = cur.rowcount
        return self.find_by_id(job_id) if expired == 1 else None

    def delete_by_id(self, job_id):
        with self._transaction() as cur:
            cur.execute("DELETE FROM jobs WHERE id=?", (job_id,))
            return cur.rowcount == 1

    def find_by_status(self, status):
        """Jobs in ``status``, oldest submission first (ties broken by id)."""
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE status=? ORDER BY created_at ASC, id ASC",
                (JobStatus(status).value,),
            )
            rows = cur.fetchall()
        return [self._row_to_job(r) for r in rows]

    def find_pending(self):
        return self.find_by_status(JobStatus.pending)

    def find_page(self, page_size, page_index):
        """Return (jobs, total_pages) for a 0-indexed page, newest id first."""
        with self._transaction() as cur:
            cur.execute("SELECT COUNT(*) AS c FROM jobs")
            total = cur.fetchone()["c"]
            cur.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs ORDER BY id DESC LIMIT ? OFFSET ?",
                (page_size, page_size * page_index),
            )
            rows = cur.fetchall()
        return [self._row_to_job(r) for r in rows], math.ceil(total / page_size)

    def count_by_status(self):
        with self._transaction() as cur:
            cur.execute("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status")
            rows = cur.fetchall()
        return {JobStatus(r["status"]): r["count"] for r in rows}

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._transaction() as cur:
            cur.execute("SELECT value FROM config WHERE key=?", (key,))
            row = cur.fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = _stamp(self.clock())
        with self._transaction() as cur:
            cur.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))

    def list_config(self):
        with self._transaction() as cur:
            cur.execute("SELECT key, value, updated_at FROM config ORDER BY key")
            return [dict(r) for r in cur.fetchall()]
