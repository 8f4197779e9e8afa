"""SQLite job repository.

Tags:
    jobcontroller, repository, sqlite, jobs

Doc-Types:
    api-reference
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from jobcontroller.core.errors import (
    ConcurrentModificationError,
    ErrorContext,
    JobNotFoundError,
    RepositoryError,
)
from jobcontroller.core.logging import get_logger
from jobcontroller.core.models import Job, JobStatus
from jobcontroller.core.models.jobs import utcnow
from jobcontroller.repositories.base import BaseRepository

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobcontroller_jobs (
    id TEXT PRIMARY KEY,
    source TEXT NOT NULL,
    stores TEXT NOT NULL,
    labels TEXT NOT NULL,
    status TEXT NOT NULL,
    delivery_statuses TEXT NOT NULL,
    external_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    revision INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_jobcontroller_jobs_status ON jobcontroller_jobs (status);
"""


def connect(database_path: str | Path) -> sqlite3.Connection:
    """Open a connection usable from the scheduler and consumer threads."""
    if str(database_path) != ":memory:":
        Path(database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(database_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


class SqliteJobRepository(BaseRepository):
    """Job records in the ``jobcontroller_jobs`` table.

    Delivery statuses, stores, labels and source are stored as JSON columns.
    Calls are serialized on a lock because one connection is shared by the
    reconciler and the tracker.
    """

    TABLE = "jobcontroller_jobs"

    def __init__(self, conn: sqlite3.Connection) -> None:
        super().__init__(conn)
        self._lock = threading.RLock()
        with self._lock:
            self.conn.executescript(SCHEMA)
            self.commit()

    @classmethod
    def from_path(cls, database_path: str | Path) -> SqliteJobRepository:
        return cls(connect(database_path))

    @contextmanager
    def _transaction(self, operation: str, job_id: str | None = None) -> Iterator[None]:
        with self._lock:
            try:
                yield
                self.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise RepositoryError(
                    f"{operation} failed: {e}",
                    context=ErrorContext(job_id=job_id, operation=operation),
                    cause=e,
                ) from e
            except Exception:
                self.conn.rollback()
                raise

    @staticmethod
    def _to_row(job: Job) -> dict[str, Any]:
        data = job.to_dict()
        return {
            "id": job.id,
            "source": json.dumps(data["source"]),
            "stores": json.dumps(data["stores"]),
            "labels": json.dumps(data["labels"]),
            "status": job.status.value,
            "delivery_statuses": json.dumps(data["feature_set_delivery_statuses"]),
            "external_id": job.external_id,
            "created_at": data["created_at"],
            "updated_at": data["updated_at"],
            "revision": job.revision,
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> Job:
        return Job.from_dict(
            {
                "id": row["id"],
                "source": json.loads(row["source"]),
                "stores": json.loads(row["stores"]),
                "labels": json.loads(row["labels"]),
                "status": row["status"],
                "feature_set_delivery_statuses": json.loads(row["delivery_statuses"]),
                "external_id": row["external_id"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
                "revision": row["revision"],
            }
        )

    def add(self, job: Job) -> None:
        with self._lock:
            if self.query_one(f"SELECT id FROM {self.TABLE} WHERE id = {self.ph(1)}", (job.id,)):
                raise RepositoryError(
                    f"Job already exists: {job.id}",
                    context=ErrorContext(job_id=job.id, operation="add"),
                )
            with self._transaction("add", job.id):
                self.insert(self.TABLE, self._to_row(job))

    def find_by_id(self, job_id: str) -> Job | None:
        with self._transaction("find_by_id", job_id):
            row = self.query_one(f"SELECT * FROM {self.TABLE} WHERE id = {self.ph(1)}", (job_id,))
        return self._from_row(row) if row else None

    def find_by_status(self, status: JobStatus) -> list[Job]:
        with self._transaction("find_by_status"):
            rows = self.query(
                f"SELECT * FROM {self.TABLE} WHERE status = {self.ph(1)} ORDER BY created_at ASC",
                (status.value,),
            )
        return [self._from_row(row) for row in rows]

    def find_all(self) -> list[Job]:
        with self._transaction("find_all"):
            rows = self.query(f"SELECT * FROM {self.TABLE} ORDER BY created_at ASC")
        return [self._from_row(row) for row in rows]

    def update(self, job: Job) -> None:
        updated_at = utcnow()
        row = self._to_row(job)
        row["revision"] = job.revision + 1
        row["updated_at"] = updated_at.isoformat()
        del row["id"]
        sets = ", ".join(f"{column} = ?" for column in row)

        with self._transaction("update", job.id):
            cursor = self.execute(
                f"UPDATE {self.TABLE} SET {sets} WHERE id = ? AND revision = ?",
                (*row.values(), job.id, job.revision),
            )
            if cursor.rowcount == 0:
                current = self.query_one(
                    f"SELECT revision FROM {self.TABLE} WHERE id = {self.ph(1)}", (job.id,)
                )
                if current is None:
                    raise JobNotFoundError(job.id)
                raise ConcurrentModificationError(
                    f"Job {job.id} changed (revision {current['revision']}, expected {job.revision})",
                    context=ErrorContext(job_id=job.id, operation="update"),
                )

        job.revision += 1
        job.updated_at = updated_at

    def delete(self, job_id: str) -> bool:
        with self._transaction("delete", job_id):
            cursor = self.execute(f"DELETE FROM {self.TABLE} WHERE id = {self.ph(1)}", (job_id,))
        return cursor.rowcount > 0

    def delete_all(self) -> None:
        with self._transaction("delete_all"):
            self.execute(f"DELETE FROM {self.TABLE}")
