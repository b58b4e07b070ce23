"""Training submitter: uploads split files and creates a provider job.

Runs the three provider steps in order and stops at the first failure.
Provider failures are returned as :class:`SubmissionFailure` values
naming the failed step, so callers can tell an upload problem from a
job-creation problem without catching exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from crucible.src.provider import FINE_TUNE_PURPOSE, ProviderError, TrainingProvider
from crucible.src.splitter import SplitRecord, to_jsonl

logger = logging.getLogger(__name__)

SUFFIX_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class SubmissionStep(str, Enum):
    """Provider step at which a submission failed."""

    UPLOAD_TRAINING = "upload_training"
    UPLOAD_VALIDATION = "upload_validation"
    CREATE_JOB = "create_job"


@dataclass
class JobSubmission:
    """A job the provider accepted.

    Attributes:
        provider_job_id: Provider-side job ID.
        status: Initial status reported by the provider.
        model: Base model the provider accepted.
        training_file_id: Uploaded training file.
        validation_file_id: Uploaded validation file.
        suffix: Suffix sent with the job request.
    """

    provider_job_id: str
    status: str
    model: str
    training_file_id: str
    validation_file_id: str
    suffix: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "provider_job_id": self.provider_job_id,
            "status": self.status,
            "model": self.model,
            "training_file_id": self.training_file_id,
            "validation_file_id": self.validation_file_id,
            "suffix": self.suffix,
        }


@dataclass
class SubmissionFailure:
    """A submission that stopped at a provider step.

    Attributes:
        step: The step that failed.
        reason: Provider error text.
        orphaned_file_ids: Uploaded files left on the provider.
        cleaned_up_file_ids: Uploaded files that were deleted again.
    """

    step: SubmissionStep
    reason: str
    orphaned_file_ids: list[str] = field(default_factory=list)
    cleaned_up_file_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "step": self.step.value,
            "reason": self.reason,
            "orphaned_file_ids": list(self.orphaned_file_ids),
            "cleaned_up_file_ids": list(self.cleaned_up_file_ids),
        }


class TrainingSubmitter:
    """Uploads a split batch and requests a fine-tuning job.

    Args:
        provider: Provider backend.
        suffix_prefix: Prefix for the model suffix; a timestamp is appended.
        n_epochs: Optional epoch count sent as a hyperparameter.
        clock: Injectable time source for the suffix timestamp.
        cleanup_orphaned_files: Delete already-uploaded files when a
            later step fails.
    """

    def __init__(
        self,
        provider: TrainingProvider,
        suffix_prefix: str = "invoice-generator",
        n_epochs: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
        cleanup_orphaned_files: bool = True,
    ) -> None:
        self._provider = provider
        self.suffix_prefix = suffix_prefix
        self.n_epochs = n_epochs
        self._clock = clock
        self.cleanup_orphaned_files = cleanup_orphaned_files

    def build_suffix(self) -> str:
        """Return the per-submission suffix, e.g. 'invoice-generator-20240101120000'."""
        return f"{self.suffix_prefix}-{self._clock().strftime(SUFFIX_TIMESTAMP_FORMAT)}"

    def hyperparameters(self) -> dict[str, Any] | None:
        """Return the hyperparameters sent with the job, or None for provider defaults."""
        if self.n_epochs is None:
            return None
        return {"n_epochs": self.n_epochs}

    def submit(
        self,
        training: Sequence[SplitRecord],
        validation: Sequence[SplitRecord],
        model_name: str,
    ) -> JobSubmission | SubmissionFailure:
        """Upload both subsets and create the job.

        The validation file is always uploaded, even when the subset is
        empty. No step runs after a failed one.

        Args:
            training: Training records.
            validation: Validation records (may be empty).
            model_name: Base model to fine-tune.

        Returns:
            JobSubmission on success, SubmissionFailure otherwise.
        """
        try:
            training_file_id = self._provider.upload_file(to_jsonl(training), FINE_TUNE_PURPOSE)
        except ProviderError as exc:
            logger.error("Training file upload failed: %s", exc)
            return SubmissionFailure(step=SubmissionStep.UPLOAD_TRAINING, reason=str(exc))
        logger.info("Uploaded training file %s (%d records)", training_file_id, len(training))

        try:
            validation_file_id = self._provider.upload_file(
                to_jsonl(validation), FINE_TUNE_PURPOSE
            )
        except ProviderError as exc:
            logger.error("Validation file upload failed: %s", exc)
            return self._failure(SubmissionStep.UPLOAD_VALIDATION, exc, [training_file_id])
        logger.info(
            "Uploaded validation file %s (%d records)", validation_file_id, len(validation)
        )

        suffix = self.build_suffix()
        try:
            job = self._provider.create_job(
                training_file_id=training_file_id,
                validation_file_id=validation_file_id,
                model=model_name,
                hyperparameters=self.hyperparameters(),
                suffix=suffix,
            )
        except ProviderError as exc:
            logger.error("Fine-tuning job creation failed: %s", exc)
            return self._failure(
                SubmissionStep.CREATE_JOB, exc, [training_file_id, validation_file_id]
            )

        logger.info("Created fine-tuning job %s (status=%s)", job.job_id, job.status)
        return JobSubmission(
            provider_job_id=job.job_id,
            status=job.status,
            model=job.model,
            training_file_id=training_file_id,
            validation_file_id=validation_file_id,
            suffix=suffix,
        )

    def _failure(
        self, step: SubmissionStep, exc: ProviderError, uploaded: list[str]
    ) -> SubmissionFailure:
        """Build a failure and, if enabled, try to delete the uploaded files."""
        failure = SubmissionFailure(step=step, reason=str(exc))
        if not self.cleanup_orphaned_files:
            failure.orphaned_file_ids = list(uploaded)
            return failure

        for file_id in uploaded:
            try:
                self._provider.delete_file(file_id)
            except ProviderError as delete_exc:
                logger.warning("Could not delete orphaned file %s: %s", file_id, delete_exc)
                failure.orphaned_file_ids.append(file_id)
            else:
                failure.cleaned_up_file_ids.append(file_id)
        return failure
