"""Tests for Crucible data models."""

from __future__ import annotations

from datetime import datetime

import pytest

from crucible.src.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    FineTuningJob,
    JobStatus,
    TrainingExample,
)

# ===================================================================
# JobStatus
# ===================================================================


class TestJobStatus:
    """Lifecycle ordering and terminal classification."""

    def test_terminal_statuses(self):
        assert JobStatus.SUCCEEDED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert JobStatus.CANCELLED.is_terminal

    @pytest.mark.parametrize("status", list(ACTIVE_STATUSES))
    def test_active_statuses_not_terminal(self, status):
        assert not status.is_terminal

    def test_forward_order(self):
        ranks = [s.rank for s in ACTIVE_STATUSES]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == len(ranks)

    def test_terminals_rank_above_active(self):
        highest_active = max(s.rank for s in ACTIVE_STATUSES)
        assert all(s.rank > highest_active for s in TERMINAL_STATUSES)

    def test_value_lookup(self):
        assert JobStatus("validating_files") is JobStatus.VALIDATING_FILES

    def test_unknown_value_raises(self):
        with pytest.raises(ValueError):
            JobStatus("paused")


# ===================================================================
# TrainingExample
# ===================================================================


class TestTrainingExample:
    """TrainingExample defaults and serialization."""

    def test_defaults(self):
        ex = TrainingExample(id="ex_1", prompt="p", completion="c")
        assert ex.source == "user_feedback"
        assert ex.quality_score == 0.5
        assert ex.used_in_training is False
        assert ex.job_id is None
        assert ex.claim_id is None

    def test_generate_id_prefix_and_uniqueness(self):
        ids = {TrainingExample.generate_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("ex_") for i in ids)

    def test_dict_round_trip(self):
        ex = TrainingExample(
            id="ex_1",
            prompt="Bill Globex 3 widgets",
            completion='{"client": "Globex"}',
            source="manual",
            quality_score=0.9,
            created_at=datetime(2024, 1, 2, 3, 4, 5),
            used_in_training=True,
            job_id="ftjob_1",
        )
        restored = TrainingExample.from_dict(ex.to_dict())
        assert restored == ex

    def test_to_dict_omits_claim(self):
        ex = TrainingExample(id="ex_1", prompt="p", completion="c", claim_id="claim_x")
        assert "claim_id" not in ex.to_dict()


# ===================================================================
# FineTuningJob
# ===================================================================


class TestFineTuningJob:
    """FineTuningJob serialization."""

    def test_generate_id_prefix(self):
        assert FineTuningJob.generate_id().startswith("ftjob_")

    def test_to_dict_status_is_string(self):
        job = FineTuningJob(
            id="ftjob_1",
            provider_job_id="ftjob-abc",
            model_name="gpt-3.5-turbo",
            provider="openai",
            status=JobStatus.QUEUED,
            examples_count=60,
        )
        data = job.to_dict()
        assert data["status"] == "queued"
        assert data["completed_at"] is None

    def test_dict_round_trip(self):
        job = FineTuningJob(
            id="ftjob_1",
            provider_job_id="ftjob-abc",
            model_name="gpt-3.5-turbo",
            provider="openai",
            status=JobStatus.SUCCEEDED,
            examples_count=60,
            created_at=datetime(2024, 1, 1),
            completed_at=datetime(2024, 1, 2),
            fine_tuned_model_id="ft:abc123",
            training_loss=0.12,
            validation_loss=0.2,
            metadata={"training_examples": 48, "validation_examples": 12},
        )
        assert FineTuningJob.from_dict(job.to_dict()) == job
