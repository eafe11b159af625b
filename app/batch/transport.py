"""Submit request batches inline or through an uploaded NDJSON file."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Final

from app.ai.providers.base import BatchProvider
from app.batch.contracts import BatchRequest
from app.batch.errors import BatchSubmissionError
from app.batch.models import BatchHandle

logger = logging.getLogger(__name__)

BATCH_FILE_MIME_TYPE: Final[str] = "jsonl"


def build_key_map(keys: list[str]) -> dict[str, int]:
  """Map each key to its submission index; the first occurrence wins."""
  key_map: dict[str, int] = {}
  for index, key in enumerate(keys):
    key_map.setdefault(key, index)
  return key_map


def _serialize_inline(requests: list[BatchRequest]) -> tuple[list[dict], int]:
  payload = [request.wire() for request in requests]
  size = len(json.dumps(payload, ensure_ascii=False).encode("utf-8"))
  return payload, size


def write_request_file(path: Path, requests: list[BatchRequest], keys: list[str]) -> None:
  """Write one `{key, index, request}` line per request."""
  with path.open("w", encoding="utf-8") as handle:
    for index, (key, request) in enumerate(zip(keys, requests, strict=True)):
      handle.write(json.dumps({"key": key, "index": index, "request": request.file_body()}, ensure_ascii=False))
      handle.write("\n")


class BatchTransport:
  """Choose a wire strategy by payload size and create the provider job."""

  def __init__(self, provider: BatchProvider, *, inline_limit_bytes: int) -> None:
    self._provider = provider
    self._inline_limit_bytes = inline_limit_bytes

  async def submit(self, *, model: str, display_name: str, requests: list[BatchRequest], keys: list[str]) -> BatchHandle:
    if len(requests) != len(keys):
      raise BatchSubmissionError(f"Got {len(requests)} requests for {len(keys)} keys")

    key_map = build_key_map(keys)
    payload, size = _serialize_inline(requests)
    try:
      if size <= self._inline_limit_bytes:
        job_name = await self._provider.create_batch(model=model, src=payload, display_name=display_name)
        logger.info("Submitted inline batch %s model=%s requests=%d bytes=%d", job_name, model, len(requests), size)
        return BatchHandle(job_name=job_name, mode="inline", key_map=key_map)

      job_name = await self._submit_file(model=model, display_name=display_name, requests=requests, keys=keys)
      logger.info("Submitted file batch %s model=%s requests=%d bytes=%d", job_name, model, len(requests), size)
      return BatchHandle(job_name=job_name, mode="file", key_map=key_map)
    except BatchSubmissionError:
      raise
    except Exception as exc:  # noqa: BLE001
      raise BatchSubmissionError(f"Batch submission to {model} failed: {exc}") from exc

  async def _submit_file(self, *, model: str, display_name: str, requests: list[BatchRequest], keys: list[str]) -> str:
    fd, raw_path = tempfile.mkstemp(prefix="batch-", suffix=".jsonl")
    os.close(fd)
    path = Path(raw_path)
    try:
      write_request_file(path, requests, keys)
      file_name = await self._provider.upload_file(path, mime_type=BATCH_FILE_MIME_TYPE, display_name=f"{display_name}-input")
    finally:
      try:
        path.unlink(missing_ok=True)
      except OSError as exc:
        logger.warning("Failed to remove temp batch file %s: %s", path, exc)

    return await self._provider.create_batch(model=model, src=file_name, display_name=display_name)
