from types import SimpleNamespace

import pytest

from app.ai.providers.gemini import GeminiBatchProvider, snapshot_from_batch_job


def test_snapshot_flattens_inline_responses():
  response = SimpleNamespace(model_dump=lambda **_: {"candidates": [{"content": {"parts": [{"text": "hi"}]}}]})
  job = SimpleNamespace(
    name="batches/abc",
    state=SimpleNamespace(name="JOB_STATE_SUCCEEDED"),
    error=None,
    dest=SimpleNamespace(inlined_responses=[SimpleNamespace(response=response, error=None)], file_name=None),
  )

  snapshot = snapshot_from_batch_job(job)

  assert snapshot.name == "batches/abc"
  assert snapshot.state == "JOB_STATE_SUCCEEDED"
  assert snapshot.inlined_responses is not None
  assert snapshot.inlined_responses[0].response == {"candidates": [{"content": {"parts": [{"text": "hi"}]}}]}
  assert snapshot.result_file_name is None


def test_snapshot_carries_errors_and_result_files():
  job = SimpleNamespace(
    name="batches/def",
    state=SimpleNamespace(name="JOB_STATE_FAILED"),
    error=SimpleNamespace(message="quota", details=["per-day limit"]),
    dest=SimpleNamespace(inlined_responses=None, file_name="files/result"),
  )

  snapshot = snapshot_from_batch_job(job)

  assert snapshot.error_message == "quota"
  assert snapshot.error_details == ["per-day limit"]
  assert snapshot.inlined_responses is None
  assert snapshot.result_file_name == "files/result"


def test_snapshot_without_destination_is_still_running():
  job = SimpleNamespace(name="batches/ghi", state=SimpleNamespace(name="JOB_STATE_RUNNING"), error=None, dest=None)

  snapshot = snapshot_from_batch_job(job)

  assert snapshot.state == "JOB_STATE_RUNNING"
  assert snapshot.inlined_responses is None


def test_provider_requires_an_api_key(monkeypatch):
  monkeypatch.delenv("GEMINI_API_KEY", raising=False)

  with pytest.raises(ValueError, match="GEMINI_API_KEY"):
    GeminiBatchProvider()


def test_provider_exposes_only_the_batch_surface():
  provider = GeminiBatchProvider(api_key="test-key")

  assert not hasattr(provider, "name")
  assert callable(provider.get_batch)
  assert callable(provider.download_file)
