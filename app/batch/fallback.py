"""Try an ordered list of models until one accepts the batch."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from app.batch.contracts import BatchRequest
from app.batch.errors import BatchSubmissionError
from app.batch.models import BatchHandle
from app.batch.transport import BatchTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ModelAttempt:
  model: str
  is_fallback: bool


@dataclass(frozen=True)
class SubmissionOutcome:
  handle: BatchHandle
  model_used: str
  fallback_used: bool


def build_model_attempts(primary: str, fallback: str | None) -> list[ModelAttempt]:
  attempts = [ModelAttempt(model=primary, is_fallback=False)]
  if fallback and fallback != primary:
    attempts.append(ModelAttempt(model=fallback, is_fallback=True))
  return attempts


async def first_success(attempts: list[ModelAttempt], run: Callable[[ModelAttempt], Awaitable[T]]) -> tuple[ModelAttempt, T]:
  """Run attempts in order and return the first that does not raise.

  Every failure is logged before moving on. When all fail, the combined error
  lists each model with its reason.
  """
  failures: list[tuple[str, str]] = []
  for attempt in attempts:
    try:
      return attempt, await run(attempt)
    except Exception as exc:  # noqa: BLE001
      reason = str(exc) or type(exc).__name__
      failures.append((attempt.model, reason))
      logger.warning("Batch submission attempt failed model=%s fallback=%s error=%s", attempt.model, attempt.is_fallback, reason)

  summary = "; ".join(f"{model}: {reason}" for model, reason in failures) or "no models configured"
  raise BatchSubmissionError(f"All models failed to accept the batch ({summary})", attempts=failures)


async def submit_with_fallback(transport: BatchTransport, *, primary_model: str, fallback_model: str | None, display_name: str, requests: list[BatchRequest], keys: list[str]) -> SubmissionOutcome:
  async def _submit(attempt: ModelAttempt) -> BatchHandle:
    return await transport.submit(model=attempt.model, display_name=display_name, requests=requests, keys=keys)

  attempt, handle = await first_success(build_model_attempts(primary_model, fallback_model), _submit)
  return SubmissionOutcome(handle=handle, model_used=attempt.model, fallback_used=attempt.is_fallback)
