"""Crucible data models for the fine-tuning pipeline.

Defines the two durable records the pipeline works with: labeled
training examples and fine-tuning jobs. Both use dataclasses with
serialization support and prefixed UUID-based ID generation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Lifecycle status of a fine-tuning job, as reported by the provider."""

    PENDING = "pending"
    VALIDATING_FILES = "validating_files"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """True when no further transition can occur."""
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the forward-only lifecycle ordering.

        All terminal statuses share the highest rank.
        """
        return _STATUS_RANK[self]


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}
)

ACTIVE_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.PENDING,
    JobStatus.VALIDATING_FILES,
    JobStatus.QUEUED,
    JobStatus.RUNNING,
)

_STATUS_RANK: dict[JobStatus, int] = {
    JobStatus.PENDING: 0,
    JobStatus.VALIDATING_FILES: 1,
    JobStatus.QUEUED: 2,
    JobStatus.RUNNING: 3,
    JobStatus.SUCCEEDED: 4,
    JobStatus.FAILED: 4,
    JobStatus.CANCELLED: 4,
}


@dataclass
class TrainingExample:
    """One labeled prompt/completion pair eligible for a training batch.

    Attributes:
        id: Unique identifier (prefixed with 'ex_').
        prompt: The user-side text.
        completion: The desired assistant response.
        source: Where the example came from (e.g. 'user_feedback').
        quality_score: Quality estimate between 0.0 and 1.0.
        created_at: Creation timestamp.
        used_in_training: True once consumed by a registered job.
        job_id: ID of the job that consumed this example, if any.
        claim_id: Submission run currently holding this example, if any.
        claimed_at: When the claim was taken.
    """

    id: str
    prompt: str
    completion: str
    source: str = "user_feedback"
    quality_score: float = 0.5
    created_at: datetime = field(default_factory=datetime.now)
    used_in_training: bool = False
    job_id: str | None = None
    claim_id: str | None = None
    claimed_at: datetime | None = None

    @staticmethod
    def generate_id() -> str:
        """Generate a unique example ID."""
        return f"ex_{uuid.uuid4().hex[:12]}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "prompt": self.prompt,
            "completion": self.completion,
            "source": self.source,
            "quality_score": self.quality_score,
            "created_at": self.created_at.isoformat(),
            "used_in_training": self.used_in_training,
            "job_id": self.job_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrainingExample:
        """Deserialize from dictionary."""
        return cls(
            id=data["id"],
            prompt=data["prompt"],
            completion=data["completion"],
            source=data.get("source", "user_feedback"),
            quality_score=data.get("quality_score", 0.5),
            created_at=datetime.fromisoformat(data["created_at"]),
            used_in_training=data.get("used_in_training", False),
            job_id=data.get("job_id"),
        )


@dataclass
class FineTuningJob:
    """A durable record of one submitted training job.

    Attributes:
        id: Local unique identifier (prefixed with 'ftjob_').
        provider_job_id: The provider's identifier, used for polling.
        model_name: Base model the job fine-tunes.
        provider: Provider tag (e.g. 'openai').
        status: Last status mirrored from the provider.
        examples_count: Number of examples consumed by this job.
        created_at: When the job was registered.
        completed_at: When a terminal status was first observed.
        fine_tuned_model_id: Resulting model name once succeeded.
        training_loss: Final training loss, if the provider reports it.
        validation_loss: Final validation loss, if the provider reports it.
        error_message: Provider-reported reason for a failed/cancelled job.
        metadata: File ids and subset counts recorded at submission.
    """

    id: str
    provider_job_id: str
    model_name: str
    provider: str
    status: JobStatus
    examples_count: int
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    fine_tuned_model_id: str | None = None
    training_loss: float | None = None
    validation_loss: float | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def generate_id() -> str:
        """Generate a unique job ID."""
        return f"ftjob_{uuid.uuid4().hex[:12]}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "provider_job_id": self.provider_job_id,
            "model_name": self.model_name,
            "provider": self.provider,
            "status": self.status.value,
            "examples_count": self.examples_count,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "fine_tuned_model_id": self.fine_tuned_model_id,
            "training_loss": self.training_loss,
            "validation_loss": self.validation_loss,
            "error_message": self.error_message,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FineTuningJob:
        """Deserialize from dictionary."""
        completed_at = data.get("completed_at")
        return cls(
            id=data["id"],
            provider_job_id=data["provider_job_id"],
            model_name=data["model_name"],
            provider=data["provider"],
            status=JobStatus(data["status"]),
            examples_count=data["examples_count"],
            created_at=datetime.fromisoformat(data["created_at"]),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            fine_tuned_model_id=data.get("fine_tuned_model_id"),
            training_loss=data.get("training_loss"),
            validation_loss=data.get("validation_loss"),
            error_message=data.get("error_message"),
            metadata=data.get("metadata", {}),
        )
