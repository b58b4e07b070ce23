"""Shared fixtures for Crucible tests."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from crucible.src.config import PipelineConfig
from crucible.src.models import FineTuningJob, JobStatus, TrainingExample
from crucible.src.pipeline import FineTuningPipeline
from crucible.src.provider import MockProvider
from crucible.src.storage import CrucibleStorage

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


class FakeClock:
    """Deterministic clock that advances only when told to."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_example(index: int, **overrides) -> TrainingExample:
    """Build a distinct example created *index* minutes after BASE_TIME."""
    fields = {
        "id": f"ex_{index:04d}",
        "prompt": f"Invoice Acme Corp for {index} hours of consulting",
        "completion": f'{{"client": "Acme Corp", "hours": {index}}}',
        "created_at": BASE_TIME + timedelta(minutes=index),
    }
    fields.update(overrides)
    return TrainingExample(**fields)


def seed_examples(store: CrucibleStorage, count: int, start: int = 0) -> list[TrainingExample]:
    """Insert *count* unconsumed examples and return them."""
    return [store.add_example(make_example(i)) for i in range(start, start + count)]


def make_job(index: int, status: JobStatus = JobStatus.RUNNING, **overrides) -> FineTuningJob:
    """Build a job record with a predictable provider ID."""
    fields = {
        "id": f"ftjob_{index:04d}",
        "provider_job_id": f"ftjob-remote{index:04d}",
        "model_name": "gpt-3.5-turbo",
        "provider": "mock",
        "status": status,
        "examples_count": 50,
        "created_at": BASE_TIME + timedelta(minutes=index),
    }
    fields.update(overrides)
    return FineTuningJob(**fields)


@pytest.fixture
def example_factory():
    """Factory for distinct examples; see make_example."""
    return make_example


@pytest.fixture
def job_factory():
    """Factory for job records; see make_job."""
    return make_job


@pytest.fixture
def seed(memory_store: CrucibleStorage):
    """Insert N unconsumed examples into the in-memory store."""

    def _seed(count: int, start: int = 0) -> list[TrainingExample]:
        return seed_examples(memory_store, count, start=start)

    return _seed


@pytest.fixture
def memory_store() -> CrucibleStorage:
    """In-memory CrucibleStorage with schema initialized."""
    store = CrucibleStorage(":memory:")
    store.initialize_schema()
    return store


@pytest.fixture
def clock() -> FakeClock:
    """A fake clock starting at BASE_TIME."""
    return FakeClock()


@pytest.fixture
def provider() -> MockProvider:
    """A mock provider with no failures scripted."""
    return MockProvider()


@pytest.fixture
def config() -> PipelineConfig:
    """Pipeline settings for the mock provider with a fixed shuffle seed."""
    return PipelineConfig(provider="mock", db_path=":memory:", split_seed=1234)


@pytest.fixture
def pipeline(
    memory_store: CrucibleStorage,
    provider: MockProvider,
    config: PipelineConfig,
    clock: FakeClock,
) -> FineTuningPipeline:
    """A pipeline over in-memory storage and the mock provider."""
    return FineTuningPipeline(
        memory_store, provider, config=config, clock=clock, sleep_func=lambda _: None
    )
