"""Pipeline orchestration for batch submission and status reconciliation.

:class:`FineTuningPipeline` wires the gate, splitter, submitter,
registry, and reconciler together around one storage connection.
``submit()`` and ``reconcile()`` are the two triggers; both are safe to
call repeatedly and do nothing when there is nothing to do.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from crucible.src.config import PipelineConfig
from crucible.src.gate import NotReady, ThresholdGate
from crucible.src.models import FineTuningJob, TrainingExample
from crucible.src.provider import MockProvider, OpenAIProvider, TrainingProvider
from crucible.src.reconciler import ReconcileAction, ReconcileOutcome, StatusReconciler
from crucible.src.registry import JobRegistry
from crucible.src.splitter import DatasetSplitter
from crucible.src.storage import ClaimConflictError, CrucibleStorage
from crucible.src.submitter import SubmissionFailure, TrainingSubmitter

logger = logging.getLogger(__name__)


class SubmitResult(str, Enum):
    """Overall result of one submission run."""

    SUBMITTED = "submitted"
    NOT_READY = "not_ready"
    CLAIM_CONFLICT = "claim_conflict"
    FAILED = "failed"


@dataclass
class SubmitOutcome:
    """Structured result of :meth:`FineTuningPipeline.submit`.

    Attributes:
        result: What happened.
        job: The registered job, when submitted.
        examples_used: Batch size, when submitted.
        training_count: Training subset size, when submitted.
        validation_count: Validation subset size, when submitted.
        unconsumed_count: Eligible examples seen by the gate.
        required: Minimum batch size in force.
        failure: Provider failure detail, when failed.
        reason: Human-readable summary for non-submitted results.
    """

    result: SubmitResult
    job: FineTuningJob | None = None
    examples_used: int = 0
    training_count: int = 0
    validation_count: int = 0
    unconsumed_count: int = 0
    required: int = 0
    failure: SubmissionFailure | None = None
    reason: str | None = None

    @property
    def success(self) -> bool:
        """True when a job was submitted and registered."""
        return self.result == SubmitResult.SUBMITTED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "result": self.result.value,
            "success": self.success,
            "job": self.job.to_dict() if self.job else None,
            "examples_used": self.examples_used,
            "training_count": self.training_count,
            "validation_count": self.validation_count,
            "unconsumed_count": self.unconsumed_count,
            "required": self.required,
            "failure": self.failure.to_dict() if self.failure else None,
            "reason": self.reason,
        }


@dataclass
class ReconcileSummary:
    """Structured result of :meth:`FineTuningPipeline.reconcile`."""

    outcomes: list[ReconcileOutcome] = field(default_factory=list)

    @property
    def checked(self) -> int:
        """Number of jobs polled."""
        return len(self.outcomes)

    @property
    def updated(self) -> int:
        """Number of jobs whose stored record changed."""
        return sum(1 for o in self.outcomes if o.action == ReconcileAction.UPDATED)

    @property
    def poll_failures(self) -> int:
        """Number of jobs whose poll failed."""
        return sum(1 for o in self.outcomes if o.action == ReconcileAction.POLL_FAILED)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "checked": self.checked,
            "updated": self.updated,
            "poll_failures": self.poll_failures,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class FineTuningPipeline:
    """Runs the submit and reconcile flows over shared storage.

    Args:
        storage: Initialized storage.
        provider: Provider backend.
        config: Pipeline settings.
        clock: Injectable time source shared by every component.
        sleep_func: Injectable sleep for registry write retries.
    """

    def __init__(
        self,
        storage: CrucibleStorage,
        provider: TrainingProvider,
        config: PipelineConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep_func: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or PipelineConfig(provider=provider.name)
        self.storage = storage
        self.provider = provider
        self._clock = clock
        # Serializes all use of the shared connection within this process.
        self._lock = threading.RLock()

        cfg = self.config
        self.gate = ThresholdGate(
            storage,
            min_batch_size=cfg.min_batch_size,
            claim_ttl=timedelta(seconds=cfg.claim_ttl_seconds),
            clock=clock,
        )
        self.splitter = DatasetSplitter(
            train_ratio=cfg.train_ratio,
            seed=cfg.split_seed,
            system_instruction=cfg.system_instruction,
        )
        self.submitter = TrainingSubmitter(
            provider,
            suffix_prefix=cfg.suffix_prefix,
            n_epochs=cfg.n_epochs,
            clock=clock,
            cleanup_orphaned_files=cfg.cleanup_orphaned_files,
        )
        self.registry = JobRegistry(
            storage, provider_name=provider.name, sleep_func=sleep_func, clock=clock
        )
        self.reconciler = StatusReconciler(
            storage, provider, max_workers=cfg.poll_workers, clock=clock
        )

    # ---------------------------------------------------------------
    # Triggers
    # ---------------------------------------------------------------

    def submit(self) -> SubmitOutcome:
        """Submit a batch if enough unconsumed examples exist.

        Returns:
            SubmitOutcome describing what happened.

        Raises:
            ConsumptionWriteFailure: If the provider accepted the job but
                the batch could not be recorded. The claim is kept so
                the batch is not resubmitted before an operator looks.
        """
        with self._lock:
            readiness = self.gate.evaluate_readiness()
            if isinstance(readiness, NotReady):
                return SubmitOutcome(
                    result=SubmitResult.NOT_READY,
                    unconsumed_count=readiness.count,
                    required=readiness.required,
                    reason=(
                        f"Not enough new examples for fine-tuning. "
                        f"Have {readiness.count}, need {readiness.required}."
                    ),
                )

            batch = readiness.examples
            claim_id = f"claim_{uuid.uuid4().hex[:12]}"
            try:
                self.storage.claim_examples(
                    [ex.id for ex in batch],
                    claim_id,
                    self._clock(),
                    claim_expiry=self.gate.claim_expiry(),
                )
            except ClaimConflictError as exc:
                logger.warning("Batch claim conflict: %s", exc)
                return SubmitOutcome(
                    result=SubmitResult.CLAIM_CONFLICT,
                    unconsumed_count=readiness.count,
                    required=readiness.required,
                    reason=str(exc),
                )

        # The claim guards the batch; provider calls run without the lock.
        try:
            training, validation = self.splitter.split(batch)
            logger.info(
                "Split batch into %d training and %d validation examples",
                len(training),
                len(validation),
            )
            result = self.submitter.submit(training, validation, self.config.base_model)
        except Exception:
            self._release_claim(claim_id)
            raise

        if isinstance(result, SubmissionFailure):
            self._release_claim(claim_id)
            return SubmitOutcome(
                result=SubmitResult.FAILED,
                unconsumed_count=readiness.count,
                required=readiness.required,
                failure=result,
                reason=result.reason,
            )

        with self._lock:
            job = self.registry.register_submission(result, training, validation)
        return SubmitOutcome(
            result=SubmitResult.SUBMITTED,
            job=job,
            examples_used=len(batch),
            training_count=len(training),
            validation_count=len(validation),
            unconsumed_count=readiness.count,
            required=readiness.required,
        )

    def _release_claim(self, claim_id: str) -> None:
        with self._lock:
            self.storage.release_claim(claim_id)

    def reconcile(self) -> ReconcileSummary:
        """Mirror provider status into every non-terminal job record."""
        with self._lock:
            return ReconcileSummary(outcomes=self.reconciler.reconcile())

    # ---------------------------------------------------------------
    # Read and ingest helpers
    # ---------------------------------------------------------------

    def add_example(
        self,
        prompt: str,
        completion: str,
        source: str = "user_feedback",
        quality_score: float = 0.5,
    ) -> TrainingExample:
        """Store a new unconsumed example."""
        example = TrainingExample(
            id=TrainingExample.generate_id(),
            prompt=prompt,
            completion=completion,
            source=source,
            quality_score=quality_score,
            created_at=self._clock(),
        )
        with self._lock:
            return self.storage.add_example(example)

    def list_examples(self, page: int = 1, limit: int = 10) -> tuple[list[TrainingExample], int]:
        """Return one page of examples (newest first) and the total count."""
        with self._lock:
            examples = self.storage.list_examples(limit=limit, offset=(page - 1) * limit)
            return examples, self.storage.count_examples()

    def list_jobs(self, limit: int = 5) -> list[FineTuningJob]:
        """Return the most recent jobs, newest first."""
        with self._lock:
            return self.storage.list_jobs(limit=limit)

    def stats(self) -> dict[str, Any]:
        """Return the unconsumed example count against the batch threshold."""
        with self._lock:
            unused = self.storage.count_unconsumed()
        return {
            "unused_examples": unused,
            "min_batch_size": self.gate.min_batch_size,
            "ready": unused >= self.gate.min_batch_size,
        }

    def close(self) -> None:
        """Close the storage connection."""
        with self._lock:
            self.storage.close()


def build_provider(config: PipelineConfig) -> TrainingProvider:
    """Instantiate the provider named by *config*."""
    if config.provider == "mock":
        return MockProvider()
    return OpenAIProvider(api_key=config.api_key)


def build_pipeline(
    config: PipelineConfig,
    provider: TrainingProvider | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> FineTuningPipeline:
    """Validate *config* and assemble a pipeline with its own storage.

    Configuration is checked before any provider or database work.

    Args:
        config: Pipeline settings.
        provider: Provider override (for tests). Built from config when None.
        clock: Injectable time source.

    Returns:
        A ready FineTuningPipeline.

    Raises:
        ConfigurationError: If the configuration is unusable.
    """
    config.validate()
    provider = provider or build_provider(config)
    config.ensure_db_dir()
    storage = CrucibleStorage(config.db_path, check_same_thread=False)
    storage.initialize_schema()
    logger.info(
        "Crucible pipeline ready (provider=%s, db=%s, min_batch_size=%d)",
        provider.name,
        config.db_path,
        config.min_batch_size,
    )
    return FineTuningPipeline(storage, provider, config=config, clock=clock)
