"""Poll provider batch jobs until they reach a terminal state."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Final, Literal

from app.ai.providers.base import BatchProvider
from app.batch.contracts import ProviderJobSnapshot
from app.batch.errors import PollTimeoutError, ProviderJobFailedError

logger = logging.getLogger(__name__)

JobOutcome = Literal["running", "succeeded", "failed", "cancelled"]

_STATE_PREFIX: Final[str] = "JOB_STATE_"
_SUCCEEDED_STATES: Final[frozenset[str]] = frozenset({"SUCCEEDED"})
_FAILED_STATES: Final[frozenset[str]] = frozenset({"FAILED", "EXPIRED"})
_CANCELLED_STATES: Final[frozenset[str]] = frozenset({"CANCELLED"})


def classify_state(state: str) -> JobOutcome:
  """Collapse provider state names onto the four outcomes the pipeline cares about."""
  normalized = state.strip().upper().removeprefix(_STATE_PREFIX)
  if normalized in _SUCCEEDED_STATES:
    return "succeeded"
  if normalized in _FAILED_STATES:
    return "failed"
  if normalized in _CANCELLED_STATES:
    return "cancelled"
  return "running"


def failure_detail(snapshot: ProviderJobSnapshot) -> str:
  """Most specific diagnostic available: message, then details, then the state name."""
  if snapshot.error_message:
    return snapshot.error_message
  if snapshot.error_details:
    return "; ".join(snapshot.error_details)
  return snapshot.state


def raise_for_terminal_failure(snapshot: ProviderJobSnapshot) -> None:
  outcome = classify_state(snapshot.state)
  if outcome in ("failed", "cancelled"):
    raise ProviderJobFailedError(f"Batch job {snapshot.name} {outcome}: {failure_detail(snapshot)}", state=snapshot.state)


def check_stage_deadline(job_name: str, submitted_at: datetime | None, now: datetime, timeout_seconds: float) -> None:
  """Raise a timeout when a still-running stage has outlived its deadline."""
  if submitted_at is None:
    return
  waited = (now - submitted_at).total_seconds()
  if waited > timeout_seconds:
    raise PollTimeoutError(job_name, waited)


class CompletionPoller:
  """Fixed-interval poller over a provider's batch status endpoint."""

  def __init__(self, provider: BatchProvider, *, clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
    self._provider = provider
    self._clock = clock
    self._sleep = sleep

  async def poll_once(self, job_name: str) -> ProviderJobSnapshot:
    snapshot = await self._provider.get_batch(job_name)
    logger.debug("Batch job %s state=%s", job_name, snapshot.state)
    return snapshot

  async def await_completion(self, job_name: str, *, poll_interval_seconds: float, poll_timeout_seconds: float) -> ProviderJobSnapshot:
    """Block until success; raise on provider failure or when the timeout elapses."""
    started = self._clock()
    while True:
      snapshot = await self.poll_once(job_name)
      raise_for_terminal_failure(snapshot)
      if classify_state(snapshot.state) == "succeeded":
        return snapshot

      elapsed = self._clock() - started
      if elapsed >= poll_timeout_seconds:
        raise PollTimeoutError(job_name, elapsed)
      await self._sleep(min(poll_interval_seconds, max(poll_timeout_seconds - elapsed, 0.0)))
