import json

import pytest

from app.batch.contracts import BatchRequest
from app.batch.errors import BatchSubmissionError
from app.batch.transport import BATCH_FILE_MIME_TYPE, BatchTransport, build_key_map


def _requests(count: int, *, size: int = 10) -> list[BatchRequest]:
  return [BatchRequest(contents=[{"role": "user", "parts": [{"text": f"{index}:" + "x" * size}]}], config={"temperature": 0}) for index in range(count)]


def test_key_map_keeps_first_occurrence():
  assert build_key_map(["a", "b", "a"]) == {"a": 0, "b": 1}


@pytest.mark.anyio
async def test_small_payload_goes_inline(provider):
  transport = BatchTransport(provider, inline_limit_bytes=10_000)

  handle = await transport.submit(model="m", display_name="job-analyze", requests=_requests(2), keys=["g0", "g1"])

  assert handle.mode == "inline"
  assert handle.key_map == {"g0": 0, "g1": 1}
  created = provider.created[0]
  assert created["model"] == "m"
  assert isinstance(created["src"], list) and len(created["src"]) == 2
  assert created["src"][0]["contents"][0]["parts"][0]["text"].startswith("0:")
  assert provider.uploads == []


@pytest.mark.anyio
async def test_payload_at_the_limit_stays_inline(provider):
  requests = _requests(1)
  size = len(json.dumps([request.wire() for request in requests], ensure_ascii=False).encode("utf-8"))
  transport = BatchTransport(provider, inline_limit_bytes=size)

  handle = await transport.submit(model="m", display_name="job", requests=requests, keys=["only"])

  assert handle.mode == "inline"


@pytest.mark.anyio
async def test_large_payload_is_uploaded_as_keyed_lines(provider):
  transport = BatchTransport(provider, inline_limit_bytes=100)

  handle = await transport.submit(model="m", display_name="job-analyze", requests=_requests(3, size=200), keys=["a", "b", "c"])

  assert handle.mode == "file"
  upload = provider.uploads[0]
  assert upload["mime_type"] == BATCH_FILE_MIME_TYPE
  assert upload["display_name"] == "job-analyze-input"
  lines = [json.loads(line) for line in upload["content"].splitlines()]
  assert [(line["key"], line["index"]) for line in lines] == [("a", 0), ("b", 1), ("c", 2)]
  assert lines[0]["request"]["generation_config"] == {"temperature": 0}
  assert provider.created[0]["src"] == upload["name"]
  # The temp request file is removed once uploaded.
  assert not upload["path"].exists()


@pytest.mark.anyio
async def test_provider_errors_become_submission_errors(provider):
  provider.failing_models["m"] = RuntimeError("quota exhausted")
  transport = BatchTransport(provider, inline_limit_bytes=10_000)

  with pytest.raises(BatchSubmissionError, match="quota exhausted"):
    await transport.submit(model="m", display_name="job", requests=_requests(1), keys=["k"])


@pytest.mark.anyio
async def test_mismatched_keys_are_rejected(provider):
  transport = BatchTransport(provider, inline_limit_bytes=10_000)

  with pytest.raises(BatchSubmissionError):
    await transport.submit(model="m", display_name="job", requests=_requests(2), keys=["k"])
  assert provider.created == []
