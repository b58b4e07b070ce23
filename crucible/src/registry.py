"""Job registry: records accepted jobs and consumes their batch.

After the provider accepts a job, the job row and the consumption of
every batch member are written in one transaction. Transient database
errors are retried until the write lands, so a successful submission
always ends with its examples marked consumed.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from crucible.src.models import FineTuningJob, JobStatus
from crucible.src.splitter import SplitRecord, record_ids
from crucible.src.storage import CrucibleStorage, CrucibleStorageError
from crucible.src.submitter import JobSubmission
from shared.hardening import RetriesExhaustedError, RetryConfig, retry_with_backoff

logger = logging.getLogger(__name__)

# SQLITE_BUSY and SQLITE_LOCKED primary result codes.
_TRANSIENT_SQLITE_CODES = (5, 6)


def is_transient_write_error(exc: BaseException) -> bool:
    """Return True for a locked or busy database, the only errors worth waiting out.

    Other OperationalErrors (read-only database, disk I/O error, missing
    table) will not clear on their own.
    """
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None:
        return (code & 0xFF) in _TRANSIENT_SQLITE_CODES
    message = str(exc).lower()
    return "locked" in message or "busy" in message


# Retry until the write lands; only locked/busy errors are retried.
DEFAULT_WRITE_RETRY = RetryConfig(
    max_attempts=None,
    base_delay=0.1,
    max_delay=5.0,
    retryable_exceptions=(sqlite3.OperationalError,),
    should_retry=is_transient_write_error,
)


class ConsumptionWriteFailure(Exception):
    """Raised when a registered job's batch could not be marked consumed.

    Attributes:
        provider_job_id: The provider job whose batch is affected.
    """

    def __init__(self, provider_job_id: str, message: str) -> None:
        self.provider_job_id = provider_job_id
        super().__init__(message)


class JobRegistry:
    """Persists job records and flips consumption flags.

    Args:
        storage: Database holding examples and jobs.
        provider_name: Provider tag stored on each job.
        retry_config: Retry policy for the registration write.
        sleep_func: Injectable sleep used between retries.
        clock: Injectable time source for created_at.
    """

    def __init__(
        self,
        storage: CrucibleStorage,
        provider_name: str = "openai",
        retry_config: RetryConfig | None = None,
        sleep_func: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._storage = storage
        self.provider_name = provider_name
        self._retry_config = retry_config or DEFAULT_WRITE_RETRY
        self._sleep_func = sleep_func
        self._clock = clock

    def record_job(
        self,
        submission: JobSubmission,
        metadata: dict[str, Any],
        examples_count: int,
        job_id: str | None = None,
    ) -> FineTuningJob:
        """Insert a job row in the provider's initial status.

        Args:
            submission: The accepted submission.
            metadata: File IDs and subset counts.
            examples_count: Size of the whole batch.
            job_id: Local ID to use. Generated when None.

        Returns:
            The stored job.

        Raises:
            CrucibleStorageError: If the job already exists.
        """
        job = FineTuningJob(
            id=job_id or FineTuningJob.generate_id(),
            provider_job_id=submission.provider_job_id,
            model_name=submission.model,
            provider=self.provider_name,
            status=_initial_status(submission.status),
            examples_count=examples_count,
            created_at=self._clock(),
            metadata=metadata,
        )
        return self._storage.insert_job(job)

    def mark_examples_consumed(self, example_ids: Sequence[str], job_id: str) -> int:
        """Mark batch members consumed and attribute them to *job_id*.

        Returns:
            Number of examples marked.
        """
        return self._storage.mark_examples_consumed(example_ids, job_id)

    def register_submission(
        self,
        submission: JobSubmission,
        training: Sequence[SplitRecord],
        validation: Sequence[SplitRecord],
    ) -> FineTuningJob:
        """Record the job and consume its batch in one transaction.

        Args:
            submission: The accepted submission.
            training: Training records of the batch.
            validation: Validation records of the batch.

        Returns:
            The stored job.

        Raises:
            ConsumptionWriteFailure: On a non-transient database error.
        """
        example_ids = record_ids(training) + record_ids(validation)
        metadata = {
            "training_file_id": submission.training_file_id,
            "validation_file_id": submission.validation_file_id,
            "training_examples": len(training),
            "validation_examples": len(validation),
            "suffix": submission.suffix,
        }
        job_id = FineTuningJob.generate_id()

        def _write() -> FineTuningJob:
            with self._storage.transaction():
                job = self.record_job(submission, metadata, len(example_ids), job_id=job_id)
                self.mark_examples_consumed(example_ids, job.id)
            return job

        try:
            job = retry_with_backoff(_write, self._retry_config, sleep_func=self._sleep_func)
        except (CrucibleStorageError, RetriesExhaustedError, sqlite3.Error) as exc:
            logger.critical(
                "Provider job %s was created but its %d examples could not be "
                "marked consumed: %s",
                submission.provider_job_id,
                len(example_ids),
                exc,
            )
            raise ConsumptionWriteFailure(
                submission.provider_job_id,
                f"Failed to register provider job {submission.provider_job_id}: {exc}",
            ) from exc

        logger.info(
            "Registered job %s (provider %s) with %d examples",
            job.id,
            job.provider_job_id,
            job.examples_count,
        )
        return job


def _initial_status(raw: str) -> JobStatus:
    """Map the provider's creation status onto JobStatus, defaulting to pending."""
    try:
        return JobStatus(raw)
    except ValueError:
        logger.warning("Unknown initial status %r; recording as pending", raw)
        return JobStatus.PENDING
