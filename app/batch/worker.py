"""Scheduled tick that advances submitted batch jobs one step at a time."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Final

from app.batch.errors import BatchPipelineError, ProviderUnavailableError
from app.batch.models import TERMINAL_JOB_STATUSES, BatchJobRecord, BatchJobStatus, Stage
from app.batch.pipeline import BatchPipeline
from app.config import Settings

logger = logging.getLogger(__name__)

_STAGE_BY_STATUS: Final[dict[BatchJobStatus, Stage]] = {
  BatchJobStatus.PENDING_ANALYZE: "analyze",
  BatchJobStatus.ANALYZE_SUBMITTED: "analyze",
  BatchJobStatus.INGEST_PENDING: "ingest",
  BatchJobStatus.INGEST_RUNNING: "ingest",
}


@dataclass
class TickSummary:
  analyze_checked: int = 0
  analyze_completed: int = 0
  structure_started: int = 0
  structure_checked: int = 0
  structure_completed: int = 0
  ingest_queued: int = 0
  ingested: int = 0
  failed: int = 0
  deferred: int = 0
  skipped_reason: str | None = None
  errors: list[str] = field(default_factory=list)


class BatchWorker:
  """Poll, advance, and ingest batch jobs with per-stage caps.

  Each job is handled in isolation: a failure is recorded on that job and the
  tick moves on to the next one.
  """

  def __init__(self, pipeline: BatchPipeline, settings: Settings) -> None:
    self._pipeline = pipeline
    self._repo = pipeline.repo
    self._settings = settings

  async def run_tick(self) -> TickSummary:
    summary = TickSummary()
    if not self._pipeline.provider_enabled:
      summary.skipped_reason = "Batch provider disabled"
      logger.info("Batch worker tick skipped: %s", summary.skipped_reason)
      return summary

    await self._fail_stale_pending(summary)
    await self._fail_stale_ingest(summary)
    await self._each(BatchJobStatus.ANALYZE_SUBMITTED, self._settings.max_analyze_per_tick, summary, self._check_analyze)
    await self._each(BatchJobStatus.ANALYZE_COMPLETED, self._settings.max_structure_per_tick, summary, self._start_structure)
    await self._each(BatchJobStatus.STRUCTURE_SUBMITTED, self._settings.max_structure_per_tick, summary, self._check_structure)
    await self._each(BatchJobStatus.STRUCTURE_COMPLETED, self._settings.max_ingest_per_tick, summary, self._queue_ingestion)
    await self._each(BatchJobStatus.INGEST_PENDING, self._settings.max_ingest_per_tick, summary, self._ingest)

    logger.info(
      "Batch worker tick: analyze %d checked/%d completed, structure %d started/%d checked/%d completed, ingest %d queued/%d done, %d failed, %d deferred",
      summary.analyze_checked,
      summary.analyze_completed,
      summary.structure_started,
      summary.structure_checked,
      summary.structure_completed,
      summary.ingest_queued,
      summary.ingested,
      summary.failed,
      summary.deferred,
    )
    return summary

  async def _each(self, status: BatchJobStatus, limit: int, summary: TickSummary, handler: Callable[[BatchJobRecord, TickSummary], Awaitable[None]]) -> None:
    jobs = await self._repo.list_jobs_by_status(status, limit=limit)
    for job in jobs:
      try:
        await handler(job, summary)
      except ProviderUnavailableError as exc:
        # Status unchanged; the next tick retries the same job.
        summary.deferred += 1
        summary.errors.append(f"{job.id}: {exc.message}")
      except BatchPipelineError as exc:
        summary.failed += 1
        summary.errors.append(f"{job.id}: {exc.message}")
      except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error while processing batch job %s in %s", job.id, status.value)
        summary.failed += 1
        summary.errors.append(f"{job.id}: {exc}")
        await self._fail_unexpected(job, exc)

  async def _fail_unexpected(self, job: BatchJobRecord, exc: Exception) -> None:
    current = await self._repo.get_job(job.id)
    if current is None or current.status in TERMINAL_JOB_STATUSES:
      return
    stage = _STAGE_BY_STATUS.get(current.status, "structure")
    try:
      await self._pipeline.fail_job(job.id, expected=current.status, stage=stage, message=f"Unexpected error: {exc}")
    except BatchPipelineError as fail_exc:
      logger.warning("Could not mark batch job %s failed: %s", job.id, fail_exc.message)

  async def _fail_stale_pending(self, summary: TickSummary) -> None:
    # Jobs left in PENDING_ANALYZE by a crash between insert and submission never advance on their own.
    jobs = await self._repo.list_jobs_by_status(BatchJobStatus.PENDING_ANALYZE, limit=self._settings.max_analyze_per_tick)
    now = self._pipeline.now()
    for job in jobs:
      age = (now - job.created_at).total_seconds()
      if age <= self._settings.stage_timeout_seconds:
        continue
      try:
        await self._pipeline.fail_job(job.id, expected=BatchJobStatus.PENDING_ANALYZE, stage="analyze", message=f"Job never submitted; pending for {int(age)}s")
      except BatchPipelineError as exc:
        summary.errors.append(f"{job.id}: {exc.message}")
        continue
      summary.failed += 1

  async def _fail_stale_ingest(self, summary: TickSummary) -> None:
    # An ingest interrupted mid-run stays INGEST_RUNNING and keeps holding admission capacity.
    jobs = await self._repo.list_jobs_by_status(BatchJobStatus.INGEST_RUNNING, limit=self._settings.max_ingest_per_tick)
    now = self._pipeline.now()
    for job in jobs:
      started = job.ingest_requested_at or job.last_processed_at or job.created_at
      age = (now - started).total_seconds()
      if age <= self._settings.stage_timeout_seconds:
        continue
      try:
        await self._pipeline.fail_job(job.id, expected=BatchJobStatus.INGEST_RUNNING, stage="ingest", message=f"Ingestion did not finish; running for {int(age)}s")
      except BatchPipelineError as exc:
        summary.errors.append(f"{job.id}: {exc.message}")
        continue
      summary.failed += 1

  async def _check_analyze(self, job: BatchJobRecord, summary: TickSummary) -> None:
    summary.analyze_checked += 1
    updated = await self._pipeline.poll_stage(job, "analyze")
    if updated.status == BatchJobStatus.ANALYZE_COMPLETED:
      summary.analyze_completed += 1
    elif updated.status == BatchJobStatus.FAILED:
      summary.failed += 1

  async def _start_structure(self, job: BatchJobRecord, summary: TickSummary) -> None:
    await self._pipeline.submit_structure(job)
    summary.structure_started += 1

  async def _check_structure(self, job: BatchJobRecord, summary: TickSummary) -> None:
    summary.structure_checked += 1
    updated = await self._pipeline.poll_stage(job, "structure")
    if updated.status == BatchJobStatus.STRUCTURE_COMPLETED:
      summary.structure_completed += 1
    elif updated.status == BatchJobStatus.FAILED:
      summary.failed += 1

  async def _queue_ingestion(self, job: BatchJobRecord, summary: TickSummary) -> None:
    await self._pipeline.queue_ingestion(job)
    summary.ingest_queued += 1

  async def _ingest(self, job: BatchJobRecord, summary: TickSummary) -> None:
    await self._pipeline.run_ingestion(job)
    summary.ingested += 1
