"""SQLite-backed storage for the Crucible example store and job registry.

Provides the durable collections the pipeline reads and writes:
labeled training examples and fine-tuning job records. Writes that
must land together (job insert plus batch consumption) are grouped
with :meth:`CrucibleStorage.transaction`.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from crucible.src.models import (
    ACTIVE_STATUSES,
    FineTuningJob,
    JobStatus,
    TrainingExample,
)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS examples (
    id TEXT PRIMARY KEY,
    prompt TEXT NOT NULL,
    completion TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'user_feedback',
    quality_score REAL NOT NULL DEFAULT 0.5,
    created_at TEXT NOT NULL,
    used_in_training INTEGER NOT NULL DEFAULT 0,
    job_id TEXT,
    claim_id TEXT,
    claimed_at TEXT,
    FOREIGN KEY (job_id) REFERENCES fine_tuning_jobs(id)
);

CREATE TABLE IF NOT EXISTS fine_tuning_jobs (
    id TEXT PRIMARY KEY,
    provider_job_id TEXT NOT NULL UNIQUE,
    model_name TEXT NOT NULL,
    provider TEXT NOT NULL,
    status TEXT NOT NULL,
    examples_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    fine_tuned_model_id TEXT,
    training_loss REAL,
    validation_loss REAL,
    error_message TEXT,
    metadata_json TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_examples_unconsumed
    ON examples(used_in_training, created_at);
CREATE INDEX IF NOT EXISTS idx_examples_claim
    ON examples(claim_id);
CREATE INDEX IF NOT EXISTS idx_examples_job
    ON examples(job_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status
    ON fine_tuning_jobs(status);
"""

# Keeps IN (...) lists under SQLite's bound-parameter limit.
_ID_CHUNK_SIZE = 500


class CrucibleStorageError(Exception):
    """Raised for storage-level errors (duplicates, not found, etc.)."""


class ClaimConflictError(CrucibleStorageError):
    """Raised when a batch claim overlaps examples held or consumed elsewhere."""


class CrucibleStorage:
    """SQLite-backed storage for Crucible examples and jobs.

    Args:
        db_path: Path to SQLite database file, or ':memory:' for in-memory.
        check_same_thread: Passed to sqlite3; set False when the
            connection is shared with a web server thread pool.

    Example::

        with CrucibleStorage("crucible.db") as store:
            store.initialize_schema()
            store.add_example(example)
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        check_same_thread: bool = True,
    ) -> None:
        self._db_path = str(db_path)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=check_same_thread)
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.row_factory = sqlite3.Row
        self._tx_depth = 0

    def __enter__(self) -> CrucibleStorage:
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Close the database connection."""
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def initialize_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[CrucibleStorage]:
        """Group writes into a single commit.

        Nested calls join the outermost transaction. Any exception
        rolls back every write made inside the outermost block.

        Yields:
            This storage instance.
        """
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.rollback()
            raise
        self._tx_depth -= 1
        if self._tx_depth == 0:
            try:
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

    def _commit(self) -> None:
        """Commit unless an enclosing transaction owns the commit."""
        if self._tx_depth == 0:
            self._conn.commit()

    # ---------------------------------------------------------------
    # Examples
    # ---------------------------------------------------------------

    def add_example(self, example: TrainingExample) -> TrainingExample:
        """Insert a new example.

        Args:
            example: Example to insert.

        Returns:
            The inserted example.

        Raises:
            CrucibleStorageError: If an example with the same ID exists.
        """
        try:
            self._conn.execute(
                "INSERT INTO examples "
                "(id, prompt, completion, source, quality_score, created_at, "
                "used_in_training, job_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    example.id,
                    example.prompt,
                    example.completion,
                    example.source,
                    example.quality_score,
                    example.created_at.isoformat(),
                    1 if example.used_in_training else 0,
                    example.job_id,
                ),
            )
            self._commit()
        except sqlite3.IntegrityError as exc:
            raise CrucibleStorageError(f"Example already exists: {example.id}") from exc
        return example

    def get_example(self, example_id: str) -> TrainingExample | None:
        """Fetch an example by ID.

        Args:
            example_id: The example's unique ID.

        Returns:
            TrainingExample or None if not found.
        """
        row = self._conn.execute("SELECT * FROM examples WHERE id = ?", (example_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_example(row)

    def list_examples(self, limit: int = 10, offset: int = 0) -> list[TrainingExample]:
        """Fetch a page of examples, newest first.

        Args:
            limit: Maximum number of examples to return.
            offset: Number of examples to skip.

        Returns:
            List of examples.
        """
        rows = self._conn.execute(
            "SELECT * FROM examples ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        ).fetchall()
        return [self._row_to_example(r) for r in rows]

    def count_examples(self) -> int:
        """Return the total number of stored examples."""
        row = self._conn.execute("SELECT COUNT(*) FROM examples").fetchone()
        return int(row[0])

    def count_unconsumed(self) -> int:
        """Return the number of examples not yet used in training."""
        row = self._conn.execute(
            "SELECT COUNT(*) FROM examples WHERE used_in_training = 0"
        ).fetchone()
        return int(row[0])

    def count_consumed_by_job(self, job_id: str) -> int:
        """Return the number of examples attributed to a job.

        Args:
            job_id: Local job ID.

        Returns:
            Count of consumed examples whose job_id matches.
        """
        row = self._conn.execute(
            "SELECT COUNT(*) FROM examples WHERE used_in_training = 1 AND job_id = ?",
            (job_id,),
        ).fetchone()
        return int(row[0])

    def get_unconsumed_examples(
        self, claim_expiry: datetime | None = None
    ) -> list[TrainingExample]:
        """Fetch every unconsumed, unclaimed example, oldest first.

        Args:
            claim_expiry: Claims taken before this instant are treated
                as abandoned and their examples are included. When None,
                any claimed example is excluded.

        Returns:
            List of examples ordered by created_at ascending.
        """
        if claim_expiry is None:
            rows = self._conn.execute(
                "SELECT * FROM examples "
                "WHERE used_in_training = 0 AND claim_id IS NULL "
                "ORDER BY created_at ASC, id ASC"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM examples "
                "WHERE used_in_training = 0 "
                "AND (claim_id IS NULL OR claimed_at < ?) "
                "ORDER BY created_at ASC, id ASC",
                (claim_expiry.isoformat(),),
            ).fetchall()
        return [self._row_to_example(r) for r in rows]

    # ---------------------------------------------------------------
    # Claims and consumption
    # ---------------------------------------------------------------

    def claim_examples(
        self,
        example_ids: Sequence[str],
        claim_id: str,
        claimed_at: datetime,
        claim_expiry: datetime | None = None,
    ) -> int:
        """Atomically claim an exact set of unconsumed examples.

        The claim succeeds only if every ID is still unconsumed and not
        held by another live claim. Otherwise nothing is claimed.

        Args:
            example_ids: IDs to claim.
            claim_id: Identifier of the claiming submission run.
            claimed_at: Timestamp recorded on the claim.
            claim_expiry: Claims older than this may be taken over.

        Returns:
            Number of examples claimed.

        Raises:
            ClaimConflictError: If any example could not be claimed.
        """
        ids = list(dict.fromkeys(example_ids))
        expiry = claim_expiry.isoformat() if claim_expiry else None
        with self.transaction():
            claimed = 0
            for chunk in _chunks(ids):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = self._conn.execute(
                    "UPDATE examples SET claim_id = ?, claimed_at = ? "
                    f"WHERE id IN ({placeholders}) AND used_in_training = 0 "
                    "AND (claim_id IS NULL OR claimed_at < ?)",
                    (claim_id, claimed_at.isoformat(), *chunk, expiry),
                )
                claimed += cursor.rowcount
            if claimed != len(ids):
                raise ClaimConflictError(
                    f"Claimed {claimed} of {len(ids)} examples for {claim_id}"
                )
        return claimed

    def release_claim(self, claim_id: str) -> int:
        """Release every unconsumed example held by a claim.

        Args:
            claim_id: The claim to release.

        Returns:
            Number of examples released.
        """
        cursor = self._conn.execute(
            "UPDATE examples SET claim_id = NULL, claimed_at = NULL "
            "WHERE claim_id = ? AND used_in_training = 0",
            (claim_id,),
        )
        self._commit()
        return cursor.rowcount

    def mark_examples_consumed(self, example_ids: Sequence[str], job_id: str) -> int:
        """Flip examples to consumed and attribute them to a job.

        Only unconsumed rows are touched, so the flag never reverts and
        an example can never be attributed to two jobs.

        Args:
            example_ids: IDs of the batch members.
            job_id: Local ID of the registered job.

        Returns:
            Number of examples marked.

        Raises:
            CrucibleStorageError: If any example was missing or already
                consumed. No rows are changed in that case.
        """
        ids = list(dict.fromkeys(example_ids))
        with self.transaction():
            marked = 0
            for chunk in _chunks(ids):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = self._conn.execute(
                    "UPDATE examples SET used_in_training = 1, job_id = ?, "
                    "claim_id = NULL, claimed_at = NULL "
                    f"WHERE id IN ({placeholders}) AND used_in_training = 0",
                    (job_id, *chunk),
                )
                marked += cursor.rowcount
            if marked != len(ids):
                raise CrucibleStorageError(
                    f"Marked {marked} of {len(ids)} examples consumed for {job_id}"
                )
        return marked

    # ---------------------------------------------------------------
    # Jobs
    # ---------------------------------------------------------------

    def insert_job(self, job: FineTuningJob) -> FineTuningJob:
        """Insert a new job record.

        Args:
            job: Job to insert.

        Returns:
            The inserted job.

        Raises:
            CrucibleStorageError: If the job or provider job ID already exists.
        """
        try:
            self._conn.execute(
                "INSERT INTO fine_tuning_jobs "
                "(id, provider_job_id, model_name, provider, status, examples_count, "
                "created_at, completed_at, fine_tuned_model_id, training_loss, "
                "validation_loss, error_message, metadata_json) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.provider_job_id,
                    job.model_name,
                    job.provider,
                    job.status.value,
                    job.examples_count,
                    job.created_at.isoformat(),
                    job.completed_at.isoformat() if job.completed_at else None,
                    job.fine_tuned_model_id,
                    job.training_loss,
                    job.validation_loss,
                    job.error_message,
                    json.dumps(job.metadata),
                ),
            )
            self._commit()
        except sqlite3.IntegrityError as exc:
            raise CrucibleStorageError(f"Job already exists: {job.id}") from exc
        return job

    def get_job(self, job_id: str) -> FineTuningJob | None:
        """Fetch a job by local ID.

        Args:
            job_id: The job's unique ID.

        Returns:
            FineTuningJob or None if not found.
        """
        row = self._conn.execute(
            "SELECT * FROM fine_tuning_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_job(row)

    def list_jobs(self, limit: int = 5) -> list[FineTuningJob]:
        """Fetch the most recent jobs, newest first.

        Args:
            limit: Maximum number of jobs to return.

        Returns:
            List of jobs.
        """
        rows = self._conn.execute(
            "SELECT * FROM fine_tuning_jobs ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def get_jobs_by_status(self, statuses: Sequence[JobStatus]) -> list[FineTuningJob]:
        """Fetch every job whose status is in *statuses*, oldest first.

        Args:
            statuses: Statuses to match.

        Returns:
            List of matching jobs.
        """
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        rows = self._conn.execute(
            f"SELECT * FROM fine_tuning_jobs WHERE status IN ({placeholders}) "
            "ORDER BY created_at ASC, id ASC",
            tuple(s.value for s in statuses),
        ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def update_job_progress(self, job: FineTuningJob) -> bool:
        """Persist reconciled fields for a job that is still active.

        The update is conditional on the stored status being
        non-terminal, so a terminal record is never overwritten.

        Args:
            job: Job carrying the new field values.

        Returns:
            True if the row was updated, False if it was missing or
            already terminal.
        """
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        cursor = self._conn.execute(
            "UPDATE fine_tuning_jobs SET status = ?, completed_at = ?, "
            "fine_tuned_model_id = ?, training_loss = ?, validation_loss = ?, "
            "error_message = ? "
            f"WHERE id = ? AND status IN ({placeholders})",
            (
                job.status.value,
                job.completed_at.isoformat() if job.completed_at else None,
                job.fine_tuned_model_id,
                job.training_loss,
                job.validation_loss,
                job.error_message,
                job.id,
                *(s.value for s in ACTIVE_STATUSES),
            ),
        )
        self._commit()
        return cursor.rowcount > 0

    # ---------------------------------------------------------------
    # Row-to-model helpers
    # ---------------------------------------------------------------

    @staticmethod
    def _row_to_example(row: sqlite3.Row) -> TrainingExample:
        """Convert a database row to a TrainingExample."""
        claimed_at = row["claimed_at"]
        return TrainingExample(
            id=row["id"],
            prompt=row["prompt"],
            completion=row["completion"],
            source=row["source"],
            quality_score=row["quality_score"],
            created_at=datetime.fromisoformat(row["created_at"]),
            used_in_training=bool(row["used_in_training"]),
            job_id=row["job_id"],
            claim_id=row["claim_id"],
            claimed_at=datetime.fromisoformat(claimed_at) if claimed_at else None,
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> FineTuningJob:
        """Convert a database row to a FineTuningJob."""
        completed_at = row["completed_at"]
        return FineTuningJob(
            id=row["id"],
            provider_job_id=row["provider_job_id"],
            model_name=row["model_name"],
            provider=row["provider"],
            status=JobStatus(row["status"]),
            examples_count=row["examples_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            fine_tuned_model_id=row["fine_tuned_model_id"],
            training_loss=row["training_loss"],
            validation_loss=row["validation_loss"],
            error_message=row["error_message"],
            metadata=json.loads(row["metadata_json"] or "{}"),
        )


def _chunks(ids: list[str]) -> Iterator[list[str]]:
    """Yield *ids* in slices small enough for one SQL statement."""
    for start in range(0, len(ids), _ID_CHUNK_SIZE):
        yield ids[start : start + _ID_CHUNK_SIZE]
