"""Gemini batch provider implementation using the google-genai SDK."""

from __future__ import annotations

import asyncio
import logging
import os
import random
from pathlib import Path
from typing import Any

from google import genai
from google.genai import types
from starlette.concurrency import run_in_threadpool

from app.batch.contracts import InlineResult, ProviderJobSnapshot

logger = logging.getLogger(__name__)


class GeminiBatchProvider:
  """Batch job client for the Gemini Developer API."""

  def __init__(self, api_key: str | None = None) -> None:
    # Configure Gemini API
    api_key = api_key or os.getenv("GEMINI_API_KEY")
    if not api_key:
      raise ValueError("GEMINI_API_KEY environment variable is required")

    self._client = genai.Client(api_key=api_key)

  async def create_batch(self, *, model: str, src: list[dict[str, Any]] | str, display_name: str) -> str:
    # Creation is never retried here; the fallback controller owns retries across models.
    job = await self._client.aio.batches.create(model=model, src=src, config={"display_name": display_name})
    if not job.name:
      raise RuntimeError("Gemini batch creation returned no job name")
    return job.name

  async def get_batch(self, name: str) -> ProviderJobSnapshot:
    # Status reads are idempotent, so rate limits are worth waiting out.
    job = await _with_backoff(self._client.aio.batches.get, name=name)
    return snapshot_from_batch_job(job)

  async def upload_file(self, path: Path, *, mime_type: str, display_name: str) -> str:
    # Wrap synchronous SDK calls so we don't block the event loop.
    uploaded = await run_in_threadpool(self._client.files.upload, file=str(path), config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name))
    if not uploaded.name:
      raise RuntimeError("Gemini file upload returned no file name")
    return uploaded.name

  async def download_file(self, name: str) -> bytes:
    return await run_in_threadpool(self._client.files.download, file=name)


def _dump(value: Any) -> Any:
  if value is None:
    return None
  if hasattr(value, "model_dump"):
    return value.model_dump(mode="json", exclude_none=True)
  return value


def snapshot_from_batch_job(job: Any) -> ProviderJobSnapshot:
  """Flatten an SDK BatchJob into the provider-agnostic snapshot."""
  state = getattr(job.state, "name", None) or str(job.state or "JOB_STATE_UNSPECIFIED")
  error = getattr(job, "error", None)
  error_message = getattr(error, "message", None) if error is not None else None
  error_details = [str(detail) for detail in (getattr(error, "details", None) or [])]

  dest = getattr(job, "dest", None)
  inlined = getattr(dest, "inlined_responses", None) if dest is not None else None
  inlined_responses = None
  if inlined is not None:
    inlined_responses = [InlineResult(response=_dump(getattr(item, "response", None)), error=_dump(getattr(item, "error", None))) for item in inlined]

  return ProviderJobSnapshot(
    name=job.name or "",
    state=state,
    error_message=error_message,
    error_details=error_details,
    inlined_responses=inlined_responses,
    result_file_name=getattr(dest, "file_name", None) if dest is not None else None,
  )


async def _with_backoff(func, *args, **kwargs):
  retries = 3
  base_delay = 1
  for i in range(retries):
    try:
      return await func(*args, **kwargs)
    except Exception as e:
      # Check for 429
      if "429" in str(e) or "Too Many Requests" in str(e) or "RESOURCE_EXHAUSTED" in str(e):
        if i == retries - 1:
          raise
        delay = base_delay * (2**i) + random.uniform(0, 1)
        logger.warning("Gemini rate limited; retrying in %.1fs (attempt %d/%d)", delay, i + 1, retries)
        await asyncio.sleep(delay)
      else:
        raise
  return await func(*args, **kwargs)
