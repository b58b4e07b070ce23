"""Tests for the provider backends.

The OpenAI backend is exercised with a ``MagicMock`` client so no
network calls are made; the SDK itself is still imported for its
error types.
"""

from __future__ import annotations

import base64
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from crucible.src.config import ConfigurationError
from crucible.src.provider import (
    MockProvider,
    OpenAIProvider,
    ProviderError,
    TrainingProvider,
    parse_result_metrics,
)

_RESULT_CSV = (
    "step,train_loss,train_accuracy,valid_loss,valid_mean_token_accuracy\n"
    "1,1.20,0.50,1.30,0.48\n"
    "2,0.80,0.70,,\n"
    "3,0.45,0.85,0.52,0.80\n"
)


def _api_error(message: str = "boom") -> openai.APIConnectionError:
    request = httpx.Request("POST", "https://api.openai.com/v1/files")
    return openai.APIConnectionError(message=message, request=request)


@pytest.fixture
def client() -> MagicMock:
    """A stand-in for the OpenAI client."""
    return MagicMock()


@pytest.fixture
def openai_provider(client) -> OpenAIProvider:
    """OpenAIProvider wired to the mock client."""
    return OpenAIProvider(client=client)


# ===================================================================
# OpenAIProvider
# ===================================================================


class TestOpenAIProvider:
    """OpenAI adapter request shaping and error translation."""

    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            OpenAIProvider(api_key=None)

    def test_satisfies_protocol(self, openai_provider):
        assert isinstance(openai_provider, TrainingProvider)

    def test_upload_file(self, openai_provider, client):
        client.files.create.return_value = SimpleNamespace(id="file-123")
        assert openai_provider.upload_file('{"messages": []}') == "file-123"
        kwargs = client.files.create.call_args.kwargs
        assert kwargs["purpose"] == "fine-tune"
        name, payload, content_type = kwargs["file"]
        assert payload == b'{"messages": []}'
        assert content_type == "application/jsonl"

    def test_upload_error_translated(self, openai_provider, client):
        client.files.create.side_effect = _api_error()
        with pytest.raises(ProviderError, match="File upload failed"):
            openai_provider.upload_file("x")

    def test_create_job_with_hyperparameters(self, openai_provider, client):
        client.fine_tuning.jobs.create.return_value = SimpleNamespace(
            id="ftjob-1", status="validating_files", model="gpt-3.5-turbo"
        )
        job = openai_provider.create_job(
            "file-t", "file-v", "gpt-3.5-turbo", {"n_epochs": 3}, "invoice-generator-1"
        )
        assert job.job_id == "ftjob-1"
        assert job.status == "validating_files"
        client.fine_tuning.jobs.create.assert_called_once_with(
            training_file="file-t",
            validation_file="file-v",
            model="gpt-3.5-turbo",
            suffix="invoice-generator-1",
            hyperparameters={"n_epochs": 3},
        )

    def test_create_job_omits_unset_options(self, openai_provider, client):
        client.fine_tuning.jobs.create.return_value = SimpleNamespace(
            id="ftjob-1", status="queued", model="gpt-3.5-turbo"
        )
        openai_provider.create_job("file-t", None, "gpt-3.5-turbo", None, "s")
        kwargs = client.fine_tuning.jobs.create.call_args.kwargs
        assert "hyperparameters" not in kwargs
        assert "validation_file" not in kwargs

    def test_create_job_error_translated(self, openai_provider, client):
        client.fine_tuning.jobs.create.side_effect = _api_error()
        with pytest.raises(ProviderError, match="Job creation failed"):
            openai_provider.create_job("t", "v", "m", None, "s")

    def test_status_running(self, openai_provider, client):
        client.fine_tuning.jobs.retrieve.return_value = SimpleNamespace(
            id="ftjob-1", status="running", fine_tuned_model=None, error=None, result_files=[]
        )
        status = openai_provider.get_job_status("ftjob-1")
        assert status.status == "running"
        assert status.training_loss is None
        client.files.content.assert_not_called()

    def test_status_succeeded_reads_losses(self, openai_provider, client):
        client.fine_tuning.jobs.retrieve.return_value = SimpleNamespace(
            id="ftjob-1",
            status="succeeded",
            fine_tuned_model="ft:gpt-3.5-turbo:acme::abc123",
            error=None,
            result_files=["file-result"],
        )
        encoded = base64.b64encode(_RESULT_CSV.encode()).decode()
        client.files.content.return_value = SimpleNamespace(text=encoded)
        status = openai_provider.get_job_status("ftjob-1")
        assert status.fine_tuned_model == "ft:gpt-3.5-turbo:acme::abc123"
        assert status.training_loss == pytest.approx(0.45)
        assert status.validation_loss == pytest.approx(0.52)
        client.files.content.assert_called_once_with("file-result")

    def test_status_succeeded_without_result_file(self, openai_provider, client):
        client.fine_tuning.jobs.retrieve.return_value = SimpleNamespace(
            id="ftjob-1", status="succeeded", fine_tuned_model="ft:x", error=None, result_files=[]
        )
        status = openai_provider.get_job_status("ftjob-1")
        assert status.training_loss is None
        assert status.validation_loss is None

    def test_unreadable_result_file_keeps_status(self, openai_provider, client):
        client.fine_tuning.jobs.retrieve.return_value = SimpleNamespace(
            id="ftjob-1",
            status="succeeded",
            fine_tuned_model="ft:x",
            error=None,
            result_files=["file-result"],
        )
        client.files.content.side_effect = _api_error()
        status = openai_provider.get_job_status("ftjob-1")
        assert status.status == "succeeded"
        assert status.training_loss is None

    def test_status_failed_carries_error_message(self, openai_provider, client):
        client.fine_tuning.jobs.retrieve.return_value = SimpleNamespace(
            id="ftjob-1",
            status="failed",
            fine_tuned_model=None,
            error=SimpleNamespace(message="Training file has invalid lines"),
            result_files=[],
        )
        status = openai_provider.get_job_status("ftjob-1")
        assert status.error_message == "Training file has invalid lines"

    def test_status_error_translated(self, openai_provider, client):
        client.fine_tuning.jobs.retrieve.side_effect = _api_error()
        with pytest.raises(ProviderError, match="Status poll failed"):
            openai_provider.get_job_status("ftjob-1")

    def test_delete_file(self, openai_provider, client):
        openai_provider.delete_file("file-1")
        client.files.delete.assert_called_once_with("file-1")

    def test_delete_error_translated(self, openai_provider, client):
        client.files.delete.side_effect = _api_error()
        with pytest.raises(ProviderError):
            openai_provider.delete_file("file-1")


# ===================================================================
# Result metrics parsing
# ===================================================================


class TestParseResultMetrics:
    """Loss extraction from the step-metrics CSV."""

    def test_plain_csv_uses_last_reported_values(self):
        assert parse_result_metrics(_RESULT_CSV) == (pytest.approx(0.45), pytest.approx(0.52))

    def test_missing_validation_column(self):
        text = "step,train_loss\n1,0.9\n2,0.7\n"
        assert parse_result_metrics(text) == (pytest.approx(0.7), None)

    def test_empty_content(self):
        assert parse_result_metrics("") == (None, None)

    def test_garbage_content(self):
        assert parse_result_metrics("not base64 !!") == (None, None)


# ===================================================================
# MockProvider
# ===================================================================


class TestMockProvider:
    """Scripted provider behavior."""

    def test_satisfies_protocol(self):
        assert isinstance(MockProvider(), TrainingProvider)

    def test_upload_and_create(self):
        provider = MockProvider()
        file_id = provider.upload_file("line")
        assert provider.uploads[file_id] == "line"
        job = provider.create_job(file_id, None, "gpt-3.5-turbo", None, "sfx")
        assert job.status == "validating_files"
        assert provider.get_job_status(job.job_id).status == "validating_files"

    def test_fail_upload_at(self):
        provider = MockProvider(fail_upload_at=2)
        provider.upload_file("a")
        with pytest.raises(ProviderError):
            provider.upload_file("b")
        assert len(provider.uploads) == 1

    def test_set_job_status(self):
        provider = MockProvider()
        provider.add_job("ftjob-x", "running")
        provider.set_job_status("ftjob-x", "succeeded", fine_tuned_model="ft:abc123")
        status = provider.get_job_status("ftjob-x")
        assert status.status == "succeeded"
        assert status.fine_tuned_model == "ft:abc123"

    def test_unknown_job_raises(self):
        with pytest.raises(ProviderError):
            MockProvider().get_job_status("ftjob-missing")

    def test_count_calls(self):
        provider = MockProvider()
        provider.upload_file("a")
        provider.upload_file("b")
        assert provider.count_calls("upload_file") == 2
        assert provider.count_calls("create_job") == 0
