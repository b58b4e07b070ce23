"""Status reconciler: mirrors provider job status into the registry.

Each run loads every job whose stored status is non-terminal, polls
the provider for all of them concurrently, then applies the results
one job at a time. Status only moves forward; a terminal record is
never polled or rewritten again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from crucible.src.models import ACTIVE_STATUSES, FineTuningJob, JobStatus
from crucible.src.provider import ProviderError, ProviderJobStatus, TrainingProvider
from crucible.src.storage import CrucibleStorage

logger = logging.getLogger(__name__)


class PollFailure(Exception):
    """Raised when one job's status could not be retrieved or understood.

    Attributes:
        job_id: Local job ID.
        provider_job_id: Provider job ID that was polled.
    """

    def __init__(self, job_id: str, provider_job_id: str, reason: str) -> None:
        self.job_id = job_id
        self.provider_job_id = provider_job_id
        super().__init__(f"Poll failed for {provider_job_id}: {reason}")


class ReconcileAction(str, Enum):
    """What a reconciliation run did for one job."""

    UPDATED = "updated"
    UNCHANGED = "unchanged"
    POLL_FAILED = "poll_failed"
    IGNORED_REGRESSION = "ignored_regression"


@dataclass
class ReconcileOutcome:
    """Result of reconciling a single job.

    Attributes:
        job_id: Local job ID.
        provider_job_id: Provider job ID.
        action: What happened.
        previous_status: Stored status before the run.
        status: Stored status after the run.
        error: Poll failure text, when action is POLL_FAILED.
    """

    job_id: str
    provider_job_id: str
    action: ReconcileAction
    previous_status: JobStatus
    status: JobStatus
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "job_id": self.job_id,
            "provider_job_id": self.provider_job_id,
            "action": self.action.value,
            "previous_status": self.previous_status.value,
            "status": self.status.value,
            "error": self.error,
        }


class StatusReconciler:
    """Polls the provider for active jobs and records what changed.

    Args:
        storage: Registry database.
        provider: Provider backend.
        max_workers: Thread pool size for concurrent polls.
        clock: Injectable time source for completed_at.
    """

    def __init__(
        self,
        storage: CrucibleStorage,
        provider: TrainingProvider,
        max_workers: int = 4,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._storage = storage
        self._provider = provider
        self.max_workers = max_workers
        self._clock = clock

    def reconcile(self) -> list[ReconcileOutcome]:
        """Run one reconciliation pass over every non-terminal job.

        A poll failure for one job is logged and reported in its
        outcome; the other jobs are still reconciled.

        Returns:
            One outcome per job polled, oldest job first.
        """
        jobs = self._storage.get_jobs_by_status(ACTIVE_STATUSES)
        if not jobs:
            logger.info("No active fine-tuning jobs to reconcile")
            return []

        logger.info("Checking %d active fine-tuning jobs", len(jobs))
        workers = min(self.max_workers, len(jobs))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            polled = list(pool.map(self._poll, jobs))

        outcomes = []
        for job, result in zip(jobs, polled):
            if isinstance(result, PollFailure):
                logger.error("Error checking job %s: %s", job.provider_job_id, result)
                outcomes.append(
                    ReconcileOutcome(
                        job_id=job.id,
                        provider_job_id=job.provider_job_id,
                        action=ReconcileAction.POLL_FAILED,
                        previous_status=job.status,
                        status=job.status,
                        error=str(result),
                    )
                )
                continue
            outcomes.append(self._apply(job, result))
        return outcomes

    def _poll(self, job: FineTuningJob) -> ProviderJobStatus | PollFailure:
        """Fetch one job's status; failures are returned, not raised."""
        try:
            remote = self._provider.get_job_status(job.provider_job_id)
        except ProviderError as exc:
            return PollFailure(job.id, job.provider_job_id, str(exc))
        try:
            JobStatus(remote.status)
        except ValueError:
            return PollFailure(
                job.id, job.provider_job_id, f"unknown status {remote.status!r}"
            )
        return remote

    def _apply(self, job: FineTuningJob, remote: ProviderJobStatus) -> ReconcileOutcome:
        """Compute and persist the update for one polled job."""
        new_status = JobStatus(remote.status)
        outcome = ReconcileOutcome(
            job_id=job.id,
            provider_job_id=job.provider_job_id,
            action=ReconcileAction.UNCHANGED,
            previous_status=job.status,
            status=job.status,
        )

        if new_status.rank < job.status.rank:
            logger.warning(
                "Ignoring backwards status for job %s: %s -> %s",
                job.provider_job_id,
                job.status.value,
                new_status.value,
            )
            outcome.action = ReconcileAction.IGNORED_REGRESSION
            return outcome

        updated = self._updated_job(job, new_status, remote)
        if updated == job:
            return outcome

        if not self._storage.update_job_progress(updated):
            # Another writer finished the job between load and write.
            logger.info("Job %s already terminal; skipping update", job.provider_job_id)
            return outcome

        if new_status == JobStatus.SUCCEEDED:
            logger.info(
                "Job %s completed successfully, model ID: %s",
                job.provider_job_id,
                updated.fine_tuned_model_id,
            )
        elif new_status.is_terminal:
            logger.warning(
                "Job %s ended with status %s: %s",
                job.provider_job_id,
                new_status.value,
                updated.error_message,
            )
        else:
            logger.info(
                "Job %s status: %s -> %s",
                job.provider_job_id,
                job.status.value,
                new_status.value,
            )
        outcome.action = ReconcileAction.UPDATED
        outcome.status = updated.status
        return outcome

    def _updated_job(
        self, job: FineTuningJob, new_status: JobStatus, remote: ProviderJobStatus
    ) -> FineTuningJob:
        """Return *job* with the fields the remote status implies."""
        if not new_status.is_terminal:
            return replace(job, status=new_status)

        completed_at = self._clock()
        if new_status == JobStatus.SUCCEEDED:
            return replace(
                job,
                status=new_status,
                completed_at=completed_at,
                fine_tuned_model_id=remote.fine_tuned_model,
                training_loss=(
                    remote.training_loss if remote.training_loss is not None else job.training_loss
                ),
                validation_loss=(
                    remote.validation_loss
                    if remote.validation_loss is not None
                    else job.validation_loss
                ),
            )
        return replace(
            job,
            status=new_status,
            completed_at=completed_at,
            error_message=remote.error_message,
        )
