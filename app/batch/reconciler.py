"""Map completed batch output back onto the submitted group keys."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from app.batch.contracts import FileResultLine, ProviderJobSnapshot
from app.batch.models import BatchResult, TransportMode

logger = logging.getLogger(__name__)

EMPTY_RESULT_ERROR = "No response returned for group"


def extract_text(response: Any) -> str | None:
  """Pull text from a flat `text` field or the first candidate's text parts."""
  if not isinstance(response, dict):
    return None
  if isinstance(response.get("text"), str) and response["text"]:
    return response["text"]

  candidates = response.get("candidates")
  if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
    return None
  candidate = candidates[0]
  content = candidate.get("content")
  parts = content.get("parts") if isinstance(content, dict) else candidate.get("parts")
  if not isinstance(parts, list):
    return None
  texts = [part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]
  joined = "".join(texts)
  return joined or None


def extract_error(error: Any) -> str | None:
  if error is None:
    return None
  if isinstance(error, str):
    return error or None
  if isinstance(error, dict):
    if error.get("message"):
      return str(error["message"])
    details = error.get("details")
    if isinstance(details, list) and details:
      return "; ".join(str(detail) for detail in details)
    return json.dumps(error, default=str)
  return str(error)


def _result_from(response: Any, error: Any) -> BatchResult:
  return BatchResult(text=extract_text(response), error=extract_error(error))


def _reconcile_inline(snapshot: ProviderJobSnapshot, keys: list[str], key_map: dict[str, int]) -> list[BatchResult]:
  results = [BatchResult() for _ in keys]
  for position, item in enumerate(snapshot.inlined_responses or []):
    if position >= len(keys):
      logger.warning("Batch job %s returned more inline responses than submitted keys; ignoring position %d", snapshot.name, position)
      continue
    target = key_map.get(keys[position], position)
    results[target] = _result_from(item.response, item.error)
  return results


def parse_result_file(content: bytes | str, *, job_name: str, keys: list[str], key_map: dict[str, int]) -> list[BatchResult]:
  """Place each NDJSON line by its `key`, else its `index`; skip lines that fit neither."""
  text = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else content
  results = [BatchResult() for _ in keys]
  for line_number, raw_line in enumerate(text.splitlines(), start=1):
    line = raw_line.strip()
    if not line:
      continue
    try:
      parsed = FileResultLine.model_validate_json(line)
    except ValidationError as exc:
      logger.warning("Skipping unparseable result line %d of %s: %s", line_number, job_name, exc.errors()[0]["msg"] if exc.errors() else exc)
      continue

    target = key_map.get(parsed.key) if parsed.key is not None else None
    if target is None and parsed.index is not None and 0 <= parsed.index < len(keys):
      target = parsed.index
    if target is None:
      logger.warning("Skipping result line %d of %s with unknown key=%r index=%r", line_number, job_name, parsed.key, parsed.index)
      continue
    results[target] = _result_from(parsed.response, parsed.error)
  return results


async def reconcile(snapshot: ProviderJobSnapshot, *, mode: TransportMode, keys: list[str], key_map: dict[str, int], download: Callable[[str], Awaitable[bytes]]) -> list[BatchResult]:
  """Return one result per key, in `keys` order; empty slots mean nothing came back."""
  if snapshot.inlined_responses is not None:
    return _reconcile_inline(snapshot, keys, key_map)
  if mode == "file" or snapshot.result_file_name:
    if not snapshot.result_file_name:
      logger.warning("Batch job %s finished without a result file", snapshot.name)
      return [BatchResult() for _ in keys]
    content = await download(snapshot.result_file_name)
    return parse_result_file(content, job_name=snapshot.name, keys=keys, key_map=key_map)
  logger.warning("Batch job %s finished without inline responses", snapshot.name)
  return [BatchResult() for _ in keys]
