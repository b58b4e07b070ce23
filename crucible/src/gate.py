"""Threshold gate deciding when a new training batch is warranted."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from crucible.src.models import TrainingExample
from crucible.src.storage import CrucibleStorage

logger = logging.getLogger(__name__)


@dataclass
class Ready:
    """Enough unconsumed examples exist; the whole set is the candidate batch.

    Attributes:
        examples: Every eligible example, oldest first.
        required: The minimum batch size that was met.
    """

    examples: list[TrainingExample] = field(default_factory=list)
    required: int = 0

    @property
    def count(self) -> int:
        """Number of examples in the candidate batch."""
        return len(self.examples)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {"ready": True, "count": self.count, "required": self.required}


@dataclass
class NotReady:
    """Too few unconsumed examples; nothing should happen this run.

    Attributes:
        count: Number of eligible examples observed.
        required: The minimum batch size that was not met.
    """

    count: int
    required: int

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {"ready": False, "count": self.count, "required": self.required}


class ThresholdGate:
    """Compares the unconsumed example count against a minimum batch size.

    Args:
        storage: Example store to read from.
        min_batch_size: Minimum number of examples for a batch.
        claim_ttl: Age after which another run's claim is ignored.
            None treats every claim as live.
        clock: Injectable time source.
    """

    def __init__(
        self,
        storage: CrucibleStorage,
        min_batch_size: int = 50,
        claim_ttl: timedelta | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if min_batch_size < 1:
            raise ValueError("min_batch_size must be at least 1")
        self._storage = storage
        self.min_batch_size = min_batch_size
        self._claim_ttl = claim_ttl
        self._clock = clock

    def claim_expiry(self) -> datetime | None:
        """Return the instant before which claims count as abandoned."""
        if self._claim_ttl is None:
            return None
        return self._clock() - self._claim_ttl

    def evaluate_readiness(self) -> Ready | NotReady:
        """Decide whether a batch should be submitted now.

        Has no side effects in either outcome.

        Returns:
            Ready with the full unconsumed set, or NotReady with the count.
        """
        examples = self._storage.get_unconsumed_examples(claim_expiry=self.claim_expiry())
        if len(examples) < self.min_batch_size:
            logger.info(
                "Not enough new examples for fine-tuning. Have %d, need %d.",
                len(examples),
                self.min_batch_size,
            )
            return NotReady(count=len(examples), required=self.min_batch_size)
        logger.info("Found %d unused examples, preparing for fine-tuning", len(examples))
        return Ready(examples=examples, required=self.min_batch_size)
