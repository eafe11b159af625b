"""Global admission control over active batch jobs.

Both ceilings are evaluated against a live aggregate of the job table, never an
in-memory counter, so restarts cannot drift the accounting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from app.batch.errors import AdmissionRejectedError
from app.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionLimits:
  max_active_jobs: int
  max_active_tokens: int

  @classmethod
  def from_settings(cls, settings: Settings) -> AdmissionLimits:
    return cls(max_active_jobs=settings.max_active_jobs, max_active_tokens=settings.max_active_tokens)


@dataclass(frozen=True)
class ActiveUsage:
  job_count: int
  token_sum: int


@dataclass(frozen=True)
class AdmissionDecision:
  allowed: bool
  reason: str | None = None

  def raise_if_rejected(self) -> None:
    if not self.allowed:
      raise AdmissionRejectedError(self.reason or "Batch admission rejected")


def evaluate_admission(usage: ActiveUsage, candidate_tokens: int, limits: AdmissionLimits) -> AdmissionDecision:
  """Decide whether one more job of `candidate_tokens` fits under both ceilings."""
  if usage.job_count >= limits.max_active_jobs:
    return AdmissionDecision(allowed=False, reason=f"Too many active batch jobs ({usage.job_count}/{limits.max_active_jobs}). Try again later.")
  if usage.token_sum + candidate_tokens > limits.max_active_tokens:
    return AdmissionDecision(allowed=False, reason=f"Token budget exceeded ({usage.token_sum} active + {candidate_tokens} requested > {limits.max_active_tokens}). Try again later.")
  return AdmissionDecision(allowed=True)


class ActiveUsageSource(Protocol):
  async def active_usage(self) -> ActiveUsage:
    """Return the count and token sum of jobs in an active status."""


class AdmissionController:
  """Read the live aggregate and decide; callers that insert should use the repository's atomic path."""

  def __init__(self, source: ActiveUsageSource, limits: AdmissionLimits) -> None:
    self._source = source
    self._limits = limits

  @property
  def limits(self) -> AdmissionLimits:
    return self._limits

  async def admit(self, candidate_tokens: int) -> AdmissionDecision:
    usage = await self._source.active_usage()
    decision = evaluate_admission(usage, candidate_tokens, self._limits)
    if not decision.allowed:
      logger.warning("Batch admission rejected jobs=%d tokens=%d candidate=%d", usage.job_count, usage.token_sum, candidate_tokens)
    return decision
