"""Job/group state machine for the two-stage batch pipeline.

A job moves PENDING_ANALYZE -> ANALYZE_SUBMITTED -> ANALYZE_COMPLETED ->
STRUCTURE_SUBMITTED -> STRUCTURE_COMPLETED -> INGEST_PENDING -> INGEST_RUNNING ->
COMPLETED, and can drop to FAILED from any non-terminal status. Every step is a
compare-and-set against the status it expects, so a duplicate worker fails
loudly instead of advancing a job twice.

Stage failures are recorded on the job before the error is re-raised. Group
failures are recorded on the group and never fail the job on their own.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.ai.providers.base import BatchProvider
from app.batch.admission import AdmissionLimits
from app.batch.contracts import ProviderJobSnapshot
from app.batch.errors import BatchJobNotFoundError, BatchPipelineError, BatchSubmissionError, IngestionError, InvalidBatchInputError, PollTimeoutError, ProviderJobFailedError, ProviderUnavailableError
from app.batch.fallback import SubmissionOutcome, submit_with_fallback
from app.batch.ingest import StructuredIngestor, aggregate_elections
from app.batch.mock import build_mock_output
from app.batch.models import BatchGroupRecord, BatchGroupStatus, BatchJobRecord, BatchJobStatus, BatchResult, GroupUpdate, PreparedGroup, Stage
from app.batch.poller import CompletionPoller, check_stage_deadline, classify_state, raise_for_terminal_failure
from app.batch.preparer import prepare_groups, resolve_row_limit
from app.batch.prompts import convert_schema, load_analyze_prompt, load_structure_prompt, load_structure_schema
from app.batch.reconciler import EMPTY_RESULT_ERROR, reconcile
from app.batch.requests import build_analyze_config, build_analyze_request, build_structure_config, build_structure_request
from app.batch.tokens import estimate_tokens_for_batch, estimate_tokens_for_text
from app.batch.transport import BatchTransport, build_key_map
from app.config import Settings
from app.storage.batch_jobs_repo import BatchJobsRepository
from app.utils.ids import generate_group_id, generate_job_id

logger = logging.getLogger(__name__)

S = BatchJobStatus
G = BatchGroupStatus


def _utcnow() -> datetime:
  return datetime.now(UTC)


@dataclass(frozen=True)
class BatchSubmission:
  """Caller input for a new batch job."""

  groups: Any
  analyze_prompt: str | None = None
  structure_prompt: str | None = None
  response_schema: dict[str, Any] | None = None
  display_name: str | None = None
  uploader_email: str | None = None
  force_hidden: bool = False


@dataclass(frozen=True)
class BatchSubmissionResult:
  job_id: str
  status: BatchJobStatus
  analyze_job_name: str | None
  analyze_mode: str | None
  token_estimate: int
  group_count: int
  response_schema: dict[str, Any]
  display_name: str
  mock: bool


class BatchPipeline:
  """Drive batch jobs through their lifecycle; provider=None selects the mock path."""

  def __init__(self, *, repo: BatchJobsRepository, settings: Settings, provider: BatchProvider | None, ingestor: StructuredIngestor | None = None, poller: CompletionPoller | None = None, clock: Callable[[], datetime] = _utcnow) -> None:
    self._repo = repo
    self._settings = settings
    self._provider = provider
    self._ingestor = ingestor
    self._clock = clock
    self._limits = AdmissionLimits.from_settings(settings)
    self._transport = BatchTransport(provider, inline_limit_bytes=settings.inline_limit_bytes) if provider is not None else None
    self._poller = poller or (CompletionPoller(provider) if provider is not None else None)

  @property
  def provider_enabled(self) -> bool:
    return self._provider is not None

  @property
  def repo(self) -> BatchJobsRepository:
    return self._repo

  def now(self) -> datetime:
    return self._clock()

  # Creation and analyze submission

  async def submit(self, submission: BatchSubmission) -> BatchSubmissionResult:
    """Validate, prepare, admit, persist, then submit the analyze stage.

    Rejected admissions raise before anything is persisted. A submission that
    no model accepts leaves the job FAILED and raises BatchSubmissionError.
    """
    if not isinstance(submission.groups, list) or not submission.groups:
      raise InvalidBatchInputError("At least one group is required")
    if submission.response_schema is not None and not isinstance(submission.response_schema, dict):
      raise InvalidBatchInputError("responseSchema must be a JSON object")

    row_limit = resolve_row_limit(self._settings.max_rows_per_group, production=self._settings.is_production)
    prepared = prepare_groups(submission.groups, row_limit=row_limit)
    analyze_prompt = submission.analyze_prompt or load_analyze_prompt(self._settings)
    structure_prompt = submission.structure_prompt or load_structure_prompt(self._settings)
    response_schema = convert_schema(submission.response_schema) if submission.response_schema else load_structure_schema(self._settings)

    analyze_config = build_analyze_config(self._settings)
    requests = [build_analyze_request(analyze_prompt, group, analyze_config) for group in prepared]
    estimate = estimate_tokens_for_batch(requests)

    now = self._clock()
    job_id = generate_job_id()
    display_name = (submission.display_name or "").strip() or f"batch-{now:%Y%m%d-%H%M%S}"
    groups = [
      BatchGroupRecord(id=generate_group_id(), job_id=job_id, key=group.key, order=group.order, rows=group.rows, municipality=group.municipality, state=group.state, position=group.position, analyze_token_estimate=estimate.per_request[group.order])
      for group in prepared
    ]
    record = BatchJobRecord(
      id=job_id,
      display_name=display_name,
      status=S.PENDING_ANALYZE,
      created_at=now,
      updated_at=now,
      estimated_tokens=estimate.total,
      total_rows=sum(group.row_count for group in prepared),
      group_count=len(groups),
      uploader_email=submission.uploader_email,
      force_hidden=submission.force_hidden,
      analyze_prompt=analyze_prompt,
      structure_prompt=structure_prompt,
      response_schema=response_schema,
      groups=groups,
    )

    decision = await self._repo.create_job_admitted(record, limits=self._limits)
    decision.raise_if_rejected()
    logger.info("Created batch job %s groups=%d rows=%d tokens=%d", job_id, record.group_count, record.total_rows, record.estimated_tokens)

    if self._transport is None:
      job = await self._complete_mock(record, prepared)
      return self._submission_result(job, mock=True)

    try:
      outcome = await self._submit_stage(display_name=f"{display_name}-analyze", requests=requests, keys=[group.key for group in prepared])
    except BatchSubmissionError as exc:
      await self.fail_job(job_id, expected=S.PENDING_ANALYZE, stage="analyze", message=exc.message)
      exc.job_id = job_id
      raise

    submitted_at = self._clock()
    fields = {
      "analyze_job_name": outcome.handle.job_name,
      "analyze_mode": outcome.handle.mode,
      "analyze_model": outcome.model_used,
      "analyze_fallback_used": outcome.fallback_used,
      "analyze_submitted_at": submitted_at,
      "last_processed_at": submitted_at,
    }
    job = await self._transition(record, S.PENDING_ANALYZE, S.ANALYZE_SUBMITTED, fields=fields, group_updates=[GroupUpdate(group.id, G.ANALYZE_RUNNING) for group in groups])
    return self._submission_result(job, mock=False)

  async def _complete_mock(self, record: BatchJobRecord, prepared: list[PreparedGroup]) -> BatchJobRecord:
    """Fill every stage synthetically so mock jobs look exactly like real completed ones."""
    now = self._clock()
    group_updates: list[GroupUpdate] = []
    for group, prepared_group in zip(record.groups, prepared, strict=True):
      output = build_mock_output(prepared_group, prepared_group.order)
      group_updates.append(
        GroupUpdate(
          group.id,
          G.INGEST_COMPLETED,
          {
            "analyze_text": output.analyze_text,
            "analyze_completed_at": now,
            "structure_text": output.structure_text,
            "structured": json.loads(output.structure_text),
            "structure_token_estimate": estimate_tokens_for_text(output.analyze_text),
            "structure_completed_at": now,
            "ingest_completed_at": now,
          },
        )
      )

    fields: dict[str, Any] = {"last_processed_at": now, "notes": {"mock": True, "ingestResults": []}}
    for stage in ("analyze", "structure"):
      fields.update({f"{stage}_job_name": f"mock/{stage}/{record.id}", f"{stage}_mode": "inline", f"{stage}_model": self._settings.gemini_model, f"{stage}_fallback_used": False, f"{stage}_submitted_at": now, f"{stage}_completed_at": now})
    fields.update({"ingest_requested_at": now, "ingest_completed_at": now})
    return await self._transition(record, S.PENDING_ANALYZE, S.COMPLETED, fields=fields, group_updates=group_updates)

  # Analyze completion

  async def complete_analyze(self, job: BatchJobRecord, snapshot: ProviderJobSnapshot) -> BatchJobRecord:
    """Attach analyze results to groups; the job fails only if no group succeeded."""
    results = await self._reconcile(snapshot, mode=job.analyze_mode, groups=job.groups)
    now = self._clock()
    updates: list[GroupUpdate] = []
    succeeded = 0
    for group, result in zip(job.groups, results, strict=True):
      if result.text and not result.error:
        succeeded += 1
        updates.append(GroupUpdate(group.id, G.ANALYZE_COMPLETED, {"analyze_text": result.text, "analyze_error": None, "analyze_completed_at": now}))
      else:
        updates.append(GroupUpdate(group.id, G.ANALYZE_FAILED, {"analyze_error": result.error or EMPTY_RESULT_ERROR, "analyze_completed_at": now}))

    fields: dict[str, Any] = {"analyze_completed_at": now, "last_processed_at": now}
    if succeeded == 0:
      fields["analyze_error"] = "No analyze results available"
      return await self._transition(job, S.ANALYZE_SUBMITTED, S.FAILED, fields=fields, group_updates=updates)
    logger.info("Analyze stage finished for job %s: %d/%d groups succeeded", job.id, succeeded, len(job.groups))
    return await self._transition(job, S.ANALYZE_SUBMITTED, S.ANALYZE_COMPLETED, fields=fields, group_updates=updates)

  # Structure stage

  async def submit_structure(self, job: BatchJobRecord) -> BatchJobRecord:
    """Submit the structure stage for every group whose analyze stage succeeded."""
    eligible = [group for group in job.groups if group.status == G.ANALYZE_COMPLETED and group.analyze_text]
    if not eligible:
      await self.fail_job(job.id, expected=S.ANALYZE_COMPLETED, stage="structure", message="No analyze results available")
      raise BatchPipelineError(f"Job {job.id} has no analyzed groups to structure")

    prompt = job.structure_prompt or load_structure_prompt(self._settings)
    config = build_structure_config(self._settings, job.response_schema or load_structure_schema(self._settings))
    requests = [build_structure_request(prompt, group.analyze_text or "", group.to_prepared(), config) for group in eligible]
    # Per-group estimates are bookkeeping only; the job's admission total stays fixed.
    estimate = estimate_tokens_for_batch(requests)

    try:
      outcome = await self._submit_stage(display_name=f"{job.display_name}-structure", requests=requests, keys=[group.key for group in eligible])
    except BatchSubmissionError as exc:
      await self.fail_job(job.id, expected=S.ANALYZE_COMPLETED, stage="structure", message=exc.message)
      exc.job_id = job.id
      raise

    now = self._clock()
    fields = {
      "structure_job_name": outcome.handle.job_name,
      "structure_mode": outcome.handle.mode,
      "structure_model": outcome.model_used,
      "structure_fallback_used": outcome.fallback_used,
      "structure_submitted_at": now,
      "last_processed_at": now,
    }
    updates = [GroupUpdate(group.id, G.STRUCTURE_RUNNING, {"structure_token_estimate": tokens}) for group, tokens in zip(eligible, estimate.per_request, strict=True)]
    return await self._transition(job, S.ANALYZE_COMPLETED, S.STRUCTURE_SUBMITTED, fields=fields, group_updates=updates)

  async def complete_structure(self, job: BatchJobRecord, snapshot: ProviderJobSnapshot) -> BatchJobRecord:
    """Parse structured JSON per group; a bad payload fails only that group."""
    running = [group for group in job.groups if group.status == G.STRUCTURE_RUNNING]
    if not running:
      await self.fail_job(job.id, expected=S.STRUCTURE_SUBMITTED, stage="structure", message="No structure groups in running state")
      raise BatchPipelineError(f"Job {job.id} has no groups awaiting structure results")

    results = await self._reconcile(snapshot, mode=job.structure_mode, groups=running)
    now = self._clock()
    updates: list[GroupUpdate] = []
    succeeded = 0
    for group, result in zip(running, results, strict=True):
      if result.error or not result.text:
        updates.append(GroupUpdate(group.id, G.STRUCTURE_FAILED, {"structure_error": result.error or EMPTY_RESULT_ERROR, "structure_completed_at": now}))
        continue
      structured, error = parse_structured(result.text)
      if error is not None:
        updates.append(GroupUpdate(group.id, G.STRUCTURE_FAILED, {"structure_text": result.text, "structure_error": error, "structure_completed_at": now}))
        continue
      succeeded += 1
      updates.append(GroupUpdate(group.id, G.STRUCTURE_COMPLETED, {"structure_text": result.text, "structured": structured, "structure_error": None, "structure_completed_at": now}))

    fields: dict[str, Any] = {"structure_completed_at": now, "last_processed_at": now}
    if succeeded == 0:
      fields["structure_error"] = "Structure job produced no valid output"
      return await self._transition(job, S.STRUCTURE_SUBMITTED, S.FAILED, fields=fields, group_updates=updates)
    logger.info("Structure stage finished for job %s: %d/%d groups parsed", job.id, succeeded, len(running))
    return await self._transition(job, S.STRUCTURE_SUBMITTED, S.STRUCTURE_COMPLETED, fields=fields, group_updates=updates)

  # Ingestion

  async def queue_ingestion(self, job: BatchJobRecord) -> BatchJobRecord:
    return await self._transition(job, S.STRUCTURE_COMPLETED, S.INGEST_PENDING, fields={"last_processed_at": self._clock()})

  async def run_ingestion(self, job: BatchJobRecord) -> BatchJobRecord:
    """Hand aggregated elections to the ingestor and finish the job."""
    if self._ingestor is None:
      raise IngestionError("No ingestor configured")
    elections = aggregate_elections(job.groups)
    if not elections:
      await self.fail_job(job.id, expected=S.INGEST_PENDING, stage="ingest", message="No structured elections available")
      raise IngestionError(f"Job {job.id} has no structured elections to ingest")

    started = self._clock()
    job = await self._transition(job, S.INGEST_PENDING, S.INGEST_RUNNING, fields={"ingest_requested_at": started, "last_processed_at": started})
    hidden = job.force_hidden or self._settings.is_production
    try:
      results = await self._ingestor.ingest({"elections": elections}, job_id=job.id, hidden=hidden, uploaded_by=job.uploader_email)
    except Exception as exc:  # noqa: BLE001
      message = str(exc) or type(exc).__name__
      await self.fail_job(job.id, expected=S.INGEST_RUNNING, stage="ingest", message=message)
      raise IngestionError(message) from exc

    done = self._clock()
    updates = [GroupUpdate(group.id, G.INGEST_COMPLETED, {"ingest_completed_at": done}) for group in job.groups if group.status == G.STRUCTURE_COMPLETED]
    fields = {"ingest_completed_at": done, "last_processed_at": done, "ingest_error": None, "notes": {"ingestResults": results}}
    return await self._transition(job, S.INGEST_RUNNING, S.COMPLETED, fields=fields, group_updates=updates)

  # Polling

  async def poll_stage(self, job: BatchJobRecord, stage: Stage) -> BatchJobRecord:
    """Poll a submitted stage once: complete it, fail it, time it out, or touch it."""
    expected = S.ANALYZE_SUBMITTED if stage == "analyze" else S.STRUCTURE_SUBMITTED
    job_name, mode, submitted_at = self._stage_handle(job, stage)
    if not job_name or not mode:
      await self.fail_job(job.id, expected=expected, stage=stage, message=f"Missing {stage} job reference")
      raise BatchPipelineError(f"Job {job.id} has no {stage} job reference")

    poller = self._require_poller()
    try:
      snapshot = await poller.poll_once(job_name)
    except BatchPipelineError:
      raise
    except Exception as exc:  # noqa: BLE001
      raise await self._provider_unavailable(job, expected=expected, stage=stage, job_name=job_name, submitted_at=submitted_at, exc=exc) from exc

    try:
      raise_for_terminal_failure(snapshot)
      if classify_state(snapshot.state) != "succeeded":
        now = self._clock()
        check_stage_deadline(job_name, submitted_at, now, self._settings.stage_timeout_seconds)
        return await self._repo.touch(job.id, expected=expected, fields={"last_processed_at": now})
    except (ProviderJobFailedError, PollTimeoutError) as exc:
      await self.fail_job(job.id, expected=expected, stage=stage, message=exc.message)
      raise

    try:
      if stage == "analyze":
        return await self.complete_analyze(job, snapshot)
      return await self.complete_structure(job, snapshot)
    except ProviderUnavailableError as exc:
      raise await self._provider_unavailable(job, expected=expected, stage=stage, job_name=job_name, submitted_at=submitted_at, exc=exc) from exc

  async def await_stage(self, job: BatchJobRecord, stage: Stage) -> BatchJobRecord:
    """Block on a submitted stage with the configured interval and timeout."""
    expected = S.ANALYZE_SUBMITTED if stage == "analyze" else S.STRUCTURE_SUBMITTED
    job_name, mode, _ = self._stage_handle(job, stage)
    if not job_name or not mode:
      await self.fail_job(job.id, expected=expected, stage=stage, message=f"Missing {stage} job reference")
      raise BatchPipelineError(f"Job {job.id} has no {stage} job reference")

    try:
      snapshot = await self._require_poller().await_completion(job_name, poll_interval_seconds=self._settings.poll_interval_seconds, poll_timeout_seconds=self._settings.poll_timeout_seconds)
    except (ProviderJobFailedError, PollTimeoutError) as exc:
      await self.fail_job(job.id, expected=expected, stage=stage, message=exc.message)
      raise
    except BatchPipelineError:
      raise
    except Exception as exc:  # noqa: BLE001
      # Left submitted so the worker can pick the job up again.
      raise ProviderUnavailableError(f"Provider unavailable while awaiting {stage} for job {job.id}: {str(exc) or type(exc).__name__}") from exc

    if stage == "analyze":
      return await self.complete_analyze(job, snapshot)
    return await self.complete_structure(job, snapshot)

  async def drive(self, job_id: str) -> BatchJobRecord:
    """Run a job to a terminal status in-process, blocking on each stage."""
    job = await self._require_job(job_id)
    if job.status == S.ANALYZE_SUBMITTED:
      job = await self.await_stage(job, "analyze")
    if job.status == S.ANALYZE_COMPLETED:
      job = await self.submit_structure(job)
    if job.status == S.STRUCTURE_SUBMITTED:
      job = await self.await_stage(job, "structure")
    if job.status == S.STRUCTURE_COMPLETED:
      job = await self.queue_ingestion(job)
    if job.status == S.INGEST_PENDING:
      job = await self.run_ingestion(job)
    return job

  # Failure

  async def fail_job(self, job_id: str, *, expected: BatchJobStatus, stage: Stage, message: str) -> BatchJobRecord:
    """Move a job to FAILED with the stage's error text and a processed-at timestamp."""
    logger.warning("Batch job %s failed during %s: %s", job_id, stage, message)
    return await self._repo.transition(job_id, expected=expected, status=S.FAILED, fields={f"{stage}_error": message, "last_processed_at": self._clock()})

  # Helpers

  async def _submit_stage(self, *, display_name: str, requests: list, keys: list[str]) -> SubmissionOutcome:
    if self._transport is None:
      raise BatchSubmissionError("Batch provider is disabled")
    return await submit_with_fallback(self._transport, primary_model=self._settings.gemini_model, fallback_model=self._settings.gemini_model_fallback, display_name=display_name, requests=requests, keys=keys)

  async def _reconcile(self, snapshot: ProviderJobSnapshot, *, mode: str | None, groups: list[BatchGroupRecord]) -> list[BatchResult]:
    keys = [group.key for group in groups]
    provider = self._provider
    if provider is None:
      raise BatchPipelineError("Batch provider is disabled")

    async def _download(name: str) -> bytes:
      try:
        return await provider.download_file(name)
      except Exception as exc:  # noqa: BLE001
        raise ProviderUnavailableError(f"Could not download result file {name}: {str(exc) or type(exc).__name__}") from exc

    return await reconcile(snapshot, mode="file" if mode == "file" else "inline", keys=keys, key_map=build_key_map(keys), download=_download)

  async def _provider_unavailable(self, job: BatchJobRecord, *, expected: BatchJobStatus, stage: Stage, job_name: str, submitted_at: datetime | None, exc: Exception) -> ProviderUnavailableError:
    """Keep an unreachable stage resumable until its deadline passes."""
    now = self._clock()
    detail = str(exc) or type(exc).__name__
    logger.warning("Provider unreachable for %s stage of job %s: %s", stage, job.id, detail)
    try:
      check_stage_deadline(job_name, submitted_at, now, self._settings.stage_timeout_seconds)
    except PollTimeoutError as timeout:
      await self.fail_job(job.id, expected=expected, stage=stage, message=timeout.message)
      raise
    await self._repo.touch(job.id, expected=expected, fields={"last_processed_at": now})
    return ProviderUnavailableError(f"Provider unavailable for {stage} job {job_name}: {detail}")

  async def _transition(self, job: BatchJobRecord, expected: BatchJobStatus, status: BatchJobStatus, *, fields: dict[str, Any] | None = None, group_updates: list[GroupUpdate] | None = None) -> BatchJobRecord:
    updated = await self._repo.transition(job.id, expected=expected, status=status, fields=fields, group_updates=group_updates)
    logger.info("Batch job %s %s -> %s", job.id, expected.value, status.value)
    return updated

  async def _require_job(self, job_id: str) -> BatchJobRecord:
    job = await self._repo.get_job(job_id)
    if job is None:
      raise BatchJobNotFoundError(f"Batch job {job_id} not found")
    return job

  def _require_poller(self) -> CompletionPoller:
    if self._poller is None:
      raise BatchPipelineError("Batch provider is disabled")
    return self._poller

  @staticmethod
  def _stage_handle(job: BatchJobRecord, stage: Stage) -> tuple[str | None, str | None, datetime | None]:
    if stage == "analyze":
      return job.analyze_job_name, job.analyze_mode, job.analyze_submitted_at
    return job.structure_job_name, job.structure_mode, job.structure_submitted_at

  @staticmethod
  def _submission_result(job: BatchJobRecord, *, mock: bool) -> BatchSubmissionResult:
    return BatchSubmissionResult(
      job_id=job.id,
      status=job.status,
      analyze_job_name=job.analyze_job_name,
      analyze_mode=job.analyze_mode,
      token_estimate=job.estimated_tokens,
      group_count=job.group_count,
      response_schema=job.response_schema or {},
      display_name=job.display_name,
      mock=mock,
    )


def parse_structured(text: str) -> tuple[dict[str, Any] | None, str | None]:
  """Parse a structure-stage payload; return (object, None) or (None, error text)."""
  try:
    value = json.loads(text)
  except json.JSONDecodeError as exc:
    return None, f"Invalid JSON: {exc.msg} (line {exc.lineno} column {exc.colno})"
  if not isinstance(value, dict):
    return None, f"Invalid JSON: expected an object, got {type(value).__name__}"
  return value, None
