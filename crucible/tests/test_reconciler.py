"""Tests for the status reconciler."""

from __future__ import annotations

import pytest

from crucible.src.models import JobStatus
from crucible.src.provider import MockProvider
from crucible.src.reconciler import ReconcileAction, StatusReconciler


@pytest.fixture
def reconciler(memory_store, provider, clock):
    """Reconciler over the in-memory store and mock provider."""
    return StatusReconciler(memory_store, provider, max_workers=4, clock=clock)


def _register(store, provider: MockProvider, job, remote_status: str | None = None):
    """Store *job* and register it with the mock provider."""
    store.insert_job(job)
    provider.add_job(job.provider_job_id, remote_status or job.status.value)
    return job


# ===================================================================
# Transitions
# ===================================================================


class TestTransitions:
    """How provider reports map onto stored jobs."""

    def test_no_active_jobs(self, reconciler, provider):
        assert reconciler.reconcile() == []
        assert provider.count_calls("get_job_status") == 0

    def test_forward_non_terminal_update(self, reconciler, memory_store, provider, job_factory):
        job = _register(memory_store, provider, job_factory(1, JobStatus.QUEUED), "running")
        [outcome] = reconciler.reconcile()
        assert outcome.action == ReconcileAction.UPDATED
        assert outcome.previous_status == JobStatus.QUEUED
        assert outcome.status == JobStatus.RUNNING
        stored = memory_store.get_job(job.id)
        assert stored.status == JobStatus.RUNNING
        assert stored.completed_at is None

    def test_succeeded_sets_model_losses_and_completion(
        self, reconciler, memory_store, provider, job_factory, clock
    ):
        job = _register(memory_store, provider, job_factory(1, JobStatus.RUNNING))
        provider.set_job_status(
            job.provider_job_id,
            "succeeded",
            fine_tuned_model="ft:abc123",
            training_loss=0.31,
            validation_loss=0.42,
        )
        clock.advance(hours=1)
        [outcome] = reconciler.reconcile()
        assert outcome.action == ReconcileAction.UPDATED
        stored = memory_store.get_job(job.id)
        assert stored.status == JobStatus.SUCCEEDED
        assert stored.fine_tuned_model_id == "ft:abc123"
        assert stored.completed_at == clock()
        assert stored.training_loss == pytest.approx(0.31)
        assert stored.validation_loss == pytest.approx(0.42)

    def test_succeeded_without_losses(self, reconciler, memory_store, provider, job_factory):
        job = _register(memory_store, provider, job_factory(1))
        provider.set_job_status(job.provider_job_id, "succeeded", fine_tuned_model="ft:x")
        reconciler.reconcile()
        stored = memory_store.get_job(job.id)
        assert stored.training_loss is None
        assert stored.validation_loss is None

    @pytest.mark.parametrize("terminal", ["failed", "cancelled"])
    def test_failed_and_cancelled_are_terminal(
        self, reconciler, memory_store, provider, job_factory, terminal
    ):
        job = _register(memory_store, provider, job_factory(1))
        provider.set_job_status(job.provider_job_id, terminal, error_message="quota exceeded")
        [outcome] = reconciler.reconcile()
        assert outcome.action == ReconcileAction.UPDATED
        stored = memory_store.get_job(job.id)
        assert stored.status == JobStatus(terminal)
        assert stored.error_message == "quota exceeded"
        assert stored.completed_at is not None
        assert stored.fine_tuned_model_id is None

        # Never polled again.
        assert reconciler.reconcile() == []
        assert provider.count_calls("get_job_status") == 1

    def test_backwards_report_ignored(self, reconciler, memory_store, provider, job_factory):
        job = _register(memory_store, provider, job_factory(1, JobStatus.RUNNING), "queued")
        [outcome] = reconciler.reconcile()
        assert outcome.action == ReconcileAction.IGNORED_REGRESSION
        assert memory_store.get_job(job.id).status == JobStatus.RUNNING

    def test_unknown_status_is_poll_failure(self, reconciler, memory_store, provider, job_factory):
        job = _register(memory_store, provider, job_factory(1), "paused")
        [outcome] = reconciler.reconcile()
        assert outcome.action == ReconcileAction.POLL_FAILED
        assert "paused" in outcome.error
        assert memory_store.get_job(job.id).status == JobStatus.RUNNING


# ===================================================================
# Idempotence and terminal immutability
# ===================================================================


class TestIdempotence:
    """Repeated runs without provider changes write nothing."""

    def test_unchanged_status_not_written(self, reconciler, memory_store, provider, job_factory):
        job = _register(memory_store, provider, job_factory(1, JobStatus.RUNNING))
        before = memory_store.get_job(job.id)
        [outcome] = reconciler.reconcile()
        assert outcome.action == ReconcileAction.UNCHANGED
        assert memory_store.get_job(job.id) == before

    def test_second_run_is_noop(self, reconciler, memory_store, provider, job_factory):
        job = _register(memory_store, provider, job_factory(1, JobStatus.QUEUED), "running")
        reconciler.reconcile()
        after_first = memory_store.get_job(job.id)
        [outcome] = reconciler.reconcile()
        assert outcome.action == ReconcileAction.UNCHANGED
        assert memory_store.get_job(job.id) == after_first

    def test_terminal_jobs_never_polled(self, reconciler, memory_store, provider, job_factory):
        done = _register(
            memory_store,
            provider,
            job_factory(1, JobStatus.SUCCEEDED, fine_tuned_model_id="ft:old"),
            "failed",
        )
        assert reconciler.reconcile() == []
        assert provider.count_calls("get_job_status") == 0
        assert memory_store.get_job(done.id).fine_tuned_model_id == "ft:old"


# ===================================================================
# Failure isolation
# ===================================================================


class TestPollFailures:
    """One job's poll failure does not block the others."""

    def test_scenario_one_running_job_succeeds(self, memory_store, provider, job_factory, clock):
        running = _register(memory_store, provider, job_factory(1, JobStatus.RUNNING))
        queued = _register(memory_store, provider, job_factory(2, JobStatus.QUEUED))
        finished = _register(
            memory_store,
            provider,
            job_factory(3, JobStatus.SUCCEEDED, fine_tuned_model_id="ft:prev"),
        )
        provider.set_job_status(running.provider_job_id, "succeeded", fine_tuned_model="ft:abc123")

        outcomes = StatusReconciler(memory_store, provider, clock=clock).reconcile()

        by_job = {o.job_id: o for o in outcomes}
        assert set(by_job) == {running.id, queued.id}
        assert by_job[running.id].action == ReconcileAction.UPDATED
        assert by_job[queued.id].action == ReconcileAction.UNCHANGED
        assert memory_store.get_job(running.id).fine_tuned_model_id == "ft:abc123"
        assert memory_store.get_job(queued.id).status == JobStatus.QUEUED
        assert memory_store.get_job(finished.id).fine_tuned_model_id == "ft:prev"

    def test_poll_failure_isolated(self, memory_store, job_factory, clock):
        provider = MockProvider(fail_status_for={"ftjob-remote0001"})
        first = _register(memory_store, provider, job_factory(1, JobStatus.RUNNING))
        second = _register(memory_store, provider, job_factory(2, JobStatus.RUNNING))
        provider.set_job_status(second.provider_job_id, "succeeded", fine_tuned_model="ft:ok")

        outcomes = StatusReconciler(memory_store, provider, clock=clock).reconcile()

        assert [o.action for o in outcomes] == [
            ReconcileAction.POLL_FAILED,
            ReconcileAction.UPDATED,
        ]
        assert "Simulated poll failure" in outcomes[0].error
        assert memory_store.get_job(first.id).status == JobStatus.RUNNING
        assert memory_store.get_job(second.id).status == JobStatus.SUCCEEDED

    def test_many_jobs_polled_concurrently(self, memory_store, provider, job_factory, clock):
        jobs = [_register(memory_store, provider, job_factory(i)) for i in range(12)]
        for job in jobs:
            provider.set_job_status(job.provider_job_id, "succeeded", fine_tuned_model="ft:m")
        outcomes = StatusReconciler(memory_store, provider, max_workers=3, clock=clock).reconcile()
        assert len(outcomes) == 12
        assert [o.job_id for o in outcomes] == [j.id for j in jobs]
        assert all(o.action == ReconcileAction.UPDATED for o in outcomes)

    def test_invalid_worker_count(self, memory_store, provider):
        with pytest.raises(ValueError):
            StatusReconciler(memory_store, provider, max_workers=0)

    def test_outcome_to_dict(self, reconciler, memory_store, provider, job_factory):
        _register(memory_store, provider, job_factory(1, JobStatus.QUEUED), "running")
        data = reconciler.reconcile()[0].to_dict()
        assert data["action"] == "updated"
        assert data["previous_status"] == "queued"
        assert data["status"] == "running"
        assert data["error"] is None
