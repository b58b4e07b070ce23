"""Dataset splitter producing provider-ready chat training records.

Partitions a batch of examples into training and validation subsets
with an injectable random source, and serializes each example into
the system/user/assistant message format the provider expects.
"""

from __future__ import annotations

import json
import math
import random
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from crucible.src.config import DEFAULT_SYSTEM_INSTRUCTION
from crucible.src.models import TrainingExample


@dataclass(frozen=True)
class SplitRecord:
    """One serialized training record and the example it came from.

    Attributes:
        example_id: ID of the source example (not part of the payload).
        messages: Chat turns in provider order.
    """

    example_id: str
    messages: tuple[dict[str, str], ...]

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON object written to the training file."""
        return {"messages": [dict(m) for m in self.messages]}

    def to_json_line(self) -> str:
        """Serialize to a single JSONL line."""
        return json.dumps(self.to_payload(), ensure_ascii=False)


class DatasetSplitter:
    """Shuffles a batch and splits it into training and validation records.

    Args:
        train_ratio: Fraction of the batch assigned to training.
        rng: Random source used for the shuffle. Takes precedence over seed.
        seed: Seed for a fresh random source when rng is not given.
        system_instruction: Constant system turn for every record.

    Example::

        splitter = DatasetSplitter(seed=7)
        training, validation = splitter.split(examples)
        training_file = to_jsonl(training)
    """

    def __init__(
        self,
        train_ratio: float = 0.8,
        rng: random.Random | None = None,
        seed: int | None = None,
        system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION,
    ) -> None:
        if not 0.0 < train_ratio <= 1.0:
            raise ValueError("train_ratio must be in (0, 1]")
        self.train_ratio = train_ratio
        self._rng = rng if rng is not None else random.Random(seed)
        self.system_instruction = system_instruction

    def split(
        self, batch: Sequence[TrainingExample]
    ) -> tuple[list[SplitRecord], list[SplitRecord]]:
        """Partition *batch* into serialized training and validation records.

        The first floor(train_ratio * n) shuffled examples go to
        training and the rest to validation. An empty validation
        subset is valid.

        Args:
            batch: Examples selected by the threshold gate.

        Returns:
            Tuple of (training_records, validation_records).
        """
        shuffled = list(batch)
        self._rng.shuffle(shuffled)
        cut = self.split_index(len(shuffled))
        training = [self.format_example(ex) for ex in shuffled[:cut]]
        validation = [self.format_example(ex) for ex in shuffled[cut:]]
        return training, validation

    def split_index(self, n: int) -> int:
        """Return the number of training records for a batch of *n*."""
        # Round before flooring so 0.8 * 60 does not land on 47.999...
        return math.floor(round(self.train_ratio * n, 9))

    def format_example(self, example: TrainingExample) -> SplitRecord:
        """Serialize one example into the instructional chat format.

        Args:
            example: Source example.

        Returns:
            SplitRecord with system, user, and assistant turns.
        """
        return SplitRecord(
            example_id=example.id,
            messages=(
                {"role": "system", "content": self.system_instruction},
                {"role": "user", "content": example.prompt},
                {"role": "assistant", "content": example.completion},
            ),
        )


def to_jsonl(records: Sequence[SplitRecord]) -> str:
    """Join records into JSONL file content (empty string for no records)."""
    return "\n".join(r.to_json_line() for r in records)


def record_ids(records: Sequence[SplitRecord]) -> list[str]:
    """Return the source example IDs of *records* in order."""
    return [r.example_id for r in records]
