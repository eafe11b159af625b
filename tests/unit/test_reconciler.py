import json

import pytest

from app.batch.contracts import InlineResult, ProviderJobSnapshot
from app.batch.reconciler import extract_error, extract_text, parse_result_file, reconcile
from app.batch.transport import build_key_map


def _text_response(text: str) -> dict:
  return {"candidates": [{"content": {"parts": [{"text": text[:3]}, {"text": text[3:]}]}}]}


def test_extract_text_prefers_flat_text_then_candidate_parts():
  assert extract_text({"text": "flat"}) == "flat"
  assert extract_text(_text_response("joined")) == "joined"
  assert extract_text({"candidates": [{"parts": [{"text": "bare"}]}]}) == "bare"
  assert extract_text({"candidates": []}) is None
  assert extract_text(None) is None


def test_extract_error_normalizes_shapes():
  assert extract_error("plain") == "plain"
  assert extract_error({"message": "bad", "code": 400}) == "bad"
  assert extract_error({"details": ["a", "b"]}) == "a; b"
  assert extract_error({"code": 500}) == '{"code": 500}'
  assert extract_error(None) is None


@pytest.mark.anyio
async def test_inline_results_align_positionally():
  keys = ["g0", "g1", "g2"]
  snapshot = ProviderJobSnapshot(
    name="batches/1",
    state="JOB_STATE_SUCCEEDED",
    inlined_responses=[InlineResult(response=_text_response("first")), InlineResult(error={"message": "blocked"}), InlineResult(response={})],
  )

  async def _no_download(name: str) -> bytes:
    raise AssertionError("inline results must not download")

  results = await reconcile(snapshot, mode="inline", keys=keys, key_map=build_key_map(keys), download=_no_download)

  assert results[0].text == "first"
  assert results[1].error == "blocked"
  assert results[2].is_empty


def test_result_file_places_lines_by_key_then_index():
  keys = ["a", "b", "c"]
  content = "\n".join(
    [
      json.dumps({"key": "c", "response": {"text": "for c"}}),
      "not json at all",
      json.dumps({"index": 0, "response": {"text": "for a"}}),
      json.dumps({"key": "zzz", "index": 99, "response": {"text": "lost"}}),
      "",
    ]
  )

  results = parse_result_file(content.encode("utf-8"), job_name="batches/1", keys=keys, key_map=build_key_map(keys))

  assert [result.text for result in results] == ["for a", None, "for c"]
  assert results[1].is_empty


@pytest.mark.anyio
async def test_file_mode_downloads_the_result_file():
  keys = ["a", "b"]
  snapshot = ProviderJobSnapshot(name="batches/2", state="JOB_STATE_SUCCEEDED", result_file_name="files/out")
  downloaded: list[str] = []

  async def _download(name: str) -> bytes:
    downloaded.append(name)
    return b'{"key": "b", "error": {"message": "too long"}}\n{"key": "a", "response": {"text": "ok"}}\n'

  results = await reconcile(snapshot, mode="file", keys=keys, key_map=build_key_map(keys), download=_download)

  assert downloaded == ["files/out"]
  assert results[0].text == "ok"
  assert results[1].error == "too long"


@pytest.mark.anyio
async def test_missing_output_yields_empty_slots():
  snapshot = ProviderJobSnapshot(name="batches/3", state="JOB_STATE_SUCCEEDED")

  async def _download(name: str) -> bytes:
    return b""

  results = await reconcile(snapshot, mode="file", keys=["a"], key_map={"a": 0}, download=_download)

  assert results[0].is_empty
