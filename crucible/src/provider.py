"""Training provider interface and implementations.

The pipeline talks to the external fine-tuning service only through
the :class:`TrainingProvider` protocol. :class:`OpenAIProvider` is the
production backend built on the ``openai`` SDK; :class:`MockProvider`
is a scripted in-memory backend for tests and dry runs.
"""

from __future__ import annotations

import base64
import binascii
import csv
import io
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from crucible.src.config import ConfigurationError

logger = logging.getLogger(__name__)

FINE_TUNE_PURPOSE = "fine-tune"


# ===================================================================
# Exceptions
# ===================================================================


class ProviderError(Exception):
    """Raised when a provider call fails (network, auth, validation)."""


# ===================================================================
# Provider data classes
# ===================================================================


@dataclass
class ProviderJob:
    """Provider response to a job creation request.

    Attributes:
        job_id: Provider-side job identifier.
        status: Initial status string reported by the provider.
        model: Base model the provider accepted.
    """

    job_id: str
    status: str
    model: str


@dataclass
class ProviderJobStatus:
    """Provider response to a status poll.

    Attributes:
        job_id: Provider-side job identifier.
        status: Current status string.
        fine_tuned_model: Resulting model name once the job succeeded.
        training_loss: Final training loss, when available.
        validation_loss: Final validation loss, when available.
        error_message: Reason reported for failed or cancelled jobs.
    """

    job_id: str
    status: str
    fine_tuned_model: str | None = None
    training_loss: float | None = None
    validation_loss: float | None = None
    error_message: str | None = None


# ===================================================================
# Protocol
# ===================================================================


@runtime_checkable
class TrainingProvider(Protocol):
    """Protocol for an external fine-tuning service."""

    name: str

    def upload_file(self, content: str, purpose: str = FINE_TUNE_PURPOSE) -> str:
        """Upload JSONL content and return the provider file ID."""
        ...

    def create_job(
        self,
        training_file_id: str,
        validation_file_id: str | None,
        model: str,
        hyperparameters: dict[str, Any] | None,
        suffix: str,
    ) -> ProviderJob:
        """Request a new fine-tuning job."""
        ...

    def get_job_status(self, job_id: str) -> ProviderJobStatus:
        """Return the current status of a job."""
        ...

    def delete_file(self, file_id: str) -> None:
        """Delete a previously uploaded file."""
        ...


# ===================================================================
# OpenAI backend
# ===================================================================


class OpenAIProvider:
    """Fine-tuning provider backed by the OpenAI API.

    Args:
        api_key: OpenAI API key.
        client: Pre-built client (for tests). Skips SDK construction.
        timeout: Per-request timeout in seconds.

    Raises:
        ConfigurationError: If no API key or client is supplied.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        client: Any | None = None,
        timeout: float = 60.0,
    ) -> None:
        import openai

        self._error_type = openai.OpenAIError
        if client is not None:
            self._client = client
            return
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY environment variable not set")
        self._client = openai.OpenAI(api_key=api_key, timeout=timeout)

    def upload_file(self, content: str, purpose: str = FINE_TUNE_PURPOSE) -> str:
        """Upload JSONL content as a file.

        Args:
            content: JSONL text (may be empty).
            purpose: Provider file purpose.

        Returns:
            The uploaded file's ID.

        Raises:
            ProviderError: If the upload fails.
        """
        payload = ("training_data.jsonl", content.encode("utf-8"), "application/jsonl")
        try:
            uploaded = self._client.files.create(file=payload, purpose=purpose)
        except self._error_type as exc:
            raise ProviderError(f"File upload failed: {exc}") from exc
        logger.debug("Uploaded file %s (%d bytes)", uploaded.id, len(payload[1]))
        return uploaded.id

    def create_job(
        self,
        training_file_id: str,
        validation_file_id: str | None,
        model: str,
        hyperparameters: dict[str, Any] | None,
        suffix: str,
    ) -> ProviderJob:
        """Create a fine-tuning job.

        Args:
            training_file_id: Uploaded training file.
            validation_file_id: Uploaded validation file, if any.
            model: Base model to fine-tune.
            hyperparameters: Optional hyperparameters such as n_epochs.
            suffix: Suffix appended to the fine-tuned model name.

        Returns:
            ProviderJob with the new job's ID and status.

        Raises:
            ProviderError: If job creation fails.
        """
        kwargs: dict[str, Any] = {
            "training_file": training_file_id,
            "model": model,
            "suffix": suffix,
        }
        if validation_file_id:
            kwargs["validation_file"] = validation_file_id
        if hyperparameters:
            kwargs["hyperparameters"] = hyperparameters
        try:
            job = self._client.fine_tuning.jobs.create(**kwargs)
        except self._error_type as exc:
            raise ProviderError(f"Job creation failed: {exc}") from exc
        return ProviderJob(job_id=job.id, status=job.status, model=job.model)

    def get_job_status(self, job_id: str) -> ProviderJobStatus:
        """Retrieve a job's status, fine-tuned model, and final losses.

        Losses are read from the job's result file when one exists.

        Args:
            job_id: Provider job ID.

        Returns:
            ProviderJobStatus snapshot.

        Raises:
            ProviderError: If the job cannot be retrieved.
        """
        try:
            job = self._client.fine_tuning.jobs.retrieve(job_id)
        except self._error_type as exc:
            raise ProviderError(f"Status poll failed for {job_id}: {exc}") from exc

        error = getattr(job, "error", None)
        status = ProviderJobStatus(
            job_id=job.id,
            status=job.status,
            fine_tuned_model=job.fine_tuned_model,
            error_message=getattr(error, "message", None) if error else None,
        )
        result_files = getattr(job, "result_files", None) or []
        if job.status == "succeeded" and result_files:
            status.training_loss, status.validation_loss = self._read_losses(result_files[0])
        return status

    def delete_file(self, file_id: str) -> None:
        """Delete an uploaded file.

        Args:
            file_id: Provider file ID.

        Raises:
            ProviderError: If deletion fails.
        """
        try:
            self._client.files.delete(file_id)
        except self._error_type as exc:
            raise ProviderError(f"File deletion failed for {file_id}: {exc}") from exc

    def _read_losses(self, result_file_id: str) -> tuple[float | None, float | None]:
        """Download a result file and extract the final losses.

        A missing or unreadable result file yields (None, None); the
        status poll itself still succeeds.
        """
        try:
            content = self._client.files.content(result_file_id)
        except self._error_type as exc:
            logger.warning("Could not read result file %s: %s", result_file_id, exc)
            return None, None
        return parse_result_metrics(content.text)


def parse_result_metrics(text: str) -> tuple[float | None, float | None]:
    """Extract the last reported training and validation loss.

    Accepts the provider's step-metrics CSV either as plain text or
    base64-encoded.

    Args:
        text: Result file content.

    Returns:
        Tuple of (training_loss, validation_loss); either may be None.
    """
    csv_text = text.strip()
    if csv_text and not csv_text.startswith("step"):
        try:
            csv_text = base64.b64decode(csv_text, validate=True).decode("utf-8").strip()
        except (binascii.Error, UnicodeDecodeError):
            return None, None

    training_loss: float | None = None
    validation_loss: float | None = None
    for row in csv.DictReader(io.StringIO(csv_text)):
        train_value = _parse_float(row.get("train_loss"))
        if train_value is not None:
            training_loss = train_value
        valid_value = _parse_float(row.get("valid_loss"))
        if valid_value is not None:
            validation_loss = valid_value
    return training_loss, validation_loss


def _parse_float(value: str | None) -> float | None:
    """Parse a CSV cell into a float, treating blanks as missing."""
    if value is None or value.strip() == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


# ===================================================================
# Mock backend
# ===================================================================


@dataclass
class _MockJob:
    """Internal record of a job created on the mock provider."""

    status: ProviderJobStatus
    training_file_id: str
    validation_file_id: str | None
    model: str
    hyperparameters: dict[str, Any] | None
    suffix: str


@dataclass
class MockProvider:
    """Scripted in-memory provider for tests and dry runs.

    Failure injection:
        fail_upload_at: 1-based index of the upload call that fails.
        fail_create: Make every job creation fail.
        fail_status_for: Provider job IDs whose status poll fails.
        fail_delete: Make every file deletion fail.

    Example::

        provider = MockProvider(fail_upload_at=1)
        provider.upload_file("...")  # raises ProviderError
    """

    initial_status: str = "validating_files"
    fail_upload_at: int | None = None
    fail_create: bool = False
    fail_status_for: set[str] = field(default_factory=set)
    fail_delete: bool = False
    uploads: dict[str, str] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    jobs: dict[str, _MockJob] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    name: str = "mock"

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._upload_count = 0

    def upload_file(self, content: str, purpose: str = FINE_TUNE_PURPOSE) -> str:
        """Store content and return a new file ID."""
        with self._lock:
            self._upload_count += 1
            self.calls.append(("upload_file", purpose))
            if self.fail_upload_at == self._upload_count:
                raise ProviderError("Simulated network error during upload")
            file_id = f"file-{uuid.uuid4().hex[:12]}"
            self.uploads[file_id] = content
            return file_id

    def create_job(
        self,
        training_file_id: str,
        validation_file_id: str | None,
        model: str,
        hyperparameters: dict[str, Any] | None,
        suffix: str,
    ) -> ProviderJob:
        """Create a job in the initial status."""
        with self._lock:
            self.calls.append(("create_job", suffix))
            if self.fail_create:
                raise ProviderError("Simulated job creation failure")
            job_id = f"ftjob-{uuid.uuid4().hex[:12]}"
            self.jobs[job_id] = _MockJob(
                status=ProviderJobStatus(job_id=job_id, status=self.initial_status),
                training_file_id=training_file_id,
                validation_file_id=validation_file_id,
                model=model,
                hyperparameters=hyperparameters,
                suffix=suffix,
            )
            return ProviderJob(job_id=job_id, status=self.initial_status, model=model)

    def get_job_status(self, job_id: str) -> ProviderJobStatus:
        """Return a copy of the scripted status for *job_id*."""
        with self._lock:
            self.calls.append(("get_job_status", job_id))
            if job_id in self.fail_status_for:
                raise ProviderError(f"Simulated poll failure for {job_id}")
            job = self.jobs.get(job_id)
            if job is None:
                raise ProviderError(f"No such job: {job_id}")
            current = job.status
            return ProviderJobStatus(
                job_id=current.job_id,
                status=current.status,
                fine_tuned_model=current.fine_tuned_model,
                training_loss=current.training_loss,
                validation_loss=current.validation_loss,
                error_message=current.error_message,
            )

    def delete_file(self, file_id: str) -> None:
        """Forget an uploaded file."""
        with self._lock:
            self.calls.append(("delete_file", file_id))
            if self.fail_delete:
                raise ProviderError(f"Simulated delete failure for {file_id}")
            self.uploads.pop(file_id, None)
            self.deleted.append(file_id)

    def add_job(self, job_id: str, status: str, model: str = "gpt-3.5-turbo") -> None:
        """Register a job that was created outside this mock."""
        with self._lock:
            self.jobs[job_id] = _MockJob(
                status=ProviderJobStatus(job_id=job_id, status=status),
                training_file_id="",
                validation_file_id=None,
                model=model,
                hyperparameters=None,
                suffix="",
            )

    def set_job_status(
        self,
        job_id: str,
        status: str,
        fine_tuned_model: str | None = None,
        training_loss: float | None = None,
        validation_loss: float | None = None,
        error_message: str | None = None,
    ) -> None:
        """Script the next status the provider reports for a job."""
        with self._lock:
            self.jobs[job_id].status = ProviderJobStatus(
                job_id=job_id,
                status=status,
                fine_tuned_model=fine_tuned_model,
                training_loss=training_loss,
                validation_loss=validation_loss,
                error_message=error_message,
            )

    def count_calls(self, operation: str) -> int:
        """Return how many times *operation* was invoked."""
        return sum(1 for op, _ in self.calls if op == operation)
