"""Shared fixtures: in-memory repository, fake provider, and a controllable clock."""

from __future__ import annotations

import copy
import json
import os
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

os.environ.setdefault("ROLLCALL_ALLOWED_ORIGINS", "http://localhost:3000")
os.environ.setdefault("ROLLCALL_ENV", "test")
os.environ["GEMINI_ENABLED"] = "0"

import pytest  # noqa: E402

from app.batch.admission import ActiveUsage, AdmissionDecision, AdmissionLimits, evaluate_admission  # noqa: E402
from app.batch.contracts import InlineResult, ProviderJobSnapshot  # noqa: E402
from app.batch.errors import BatchJobNotFoundError, InvalidTransitionError  # noqa: E402
from app.batch.models import ACTIVE_JOB_STATUSES, BatchJobRecord, BatchJobStatus, GroupUpdate  # noqa: E402
from app.batch.pipeline import BatchPipeline  # noqa: E402
from app.config import Settings, get_settings  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


class FakeClock:
  def __init__(self, start: datetime | None = None) -> None:
    self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

  def __call__(self) -> datetime:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now = self.now + timedelta(seconds=seconds)


class InMemoryBatchJobsRepo:
  """Dict-backed repository with the same compare-and-set contract as Postgres."""

  def __init__(self) -> None:
    self.jobs: dict[str, BatchJobRecord] = {}
    self.transitions: list[tuple[str, BatchJobStatus, BatchJobStatus]] = []

  async def create_job_admitted(self, record: BatchJobRecord, *, limits: AdmissionLimits) -> AdmissionDecision:
    decision = evaluate_admission(await self.active_usage(), record.estimated_tokens, limits)
    if decision.allowed:
      self.jobs[record.id] = copy.deepcopy(record)
    return decision

  async def active_usage(self) -> ActiveUsage:
    active = [job for job in self.jobs.values() if job.status in ACTIVE_JOB_STATUSES]
    return ActiveUsage(job_count=len(active), token_sum=sum(job.estimated_tokens for job in active))

  async def get_job(self, job_id: str) -> BatchJobRecord | None:
    job = self.jobs.get(job_id)
    return copy.deepcopy(job) if job is not None else None

  async def list_jobs_by_status(self, status: BatchJobStatus, *, limit: int) -> list[BatchJobRecord]:
    matching = [job for job in self.jobs.values() if job.status == status]
    matching.sort(key=lambda job: (0, job.created_at) if job.last_processed_at is None else (1, job.last_processed_at))
    return [copy.deepcopy(job) for job in matching[:limit]]

  async def transition(self, job_id: str, *, expected: BatchJobStatus, status: BatchJobStatus, fields: dict[str, Any] | None = None, group_updates: list[GroupUpdate] | None = None) -> BatchJobRecord:
    job = self._require(job_id, expected)
    _assign(job, fields or {})
    job.status = status
    groups = {group.id: group for group in job.groups}
    for item in group_updates or []:
      group = groups[item.group_id]
      group.status = item.status
      _assign(group, item.fields)
    self.transitions.append((job_id, expected, status))
    return copy.deepcopy(job)

  async def touch(self, job_id: str, *, expected: BatchJobStatus, fields: dict[str, Any] | None = None) -> BatchJobRecord:
    job = self._require(job_id, expected)
    _assign(job, fields or {})
    return copy.deepcopy(job)

  def _require(self, job_id: str, expected: BatchJobStatus) -> BatchJobRecord:
    job = self.jobs.get(job_id)
    if job is None:
      raise BatchJobNotFoundError(f"Batch job {job_id} not found")
    if job.status != expected:
      raise InvalidTransitionError(job_id, expected.value, job.status.value)
    return job


def _assign(target: Any, fields: dict[str, Any]) -> None:
  for name, value in fields.items():
    # Catch misspelled column names the same way the ORM update would.
    if not hasattr(target, name):
      raise AttributeError(f"{type(target).__name__} has no field {name}")
    setattr(target, name, value)


def candidate_response(text: str) -> dict[str, Any]:
  return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class FakeBatchProvider:
  """Records submissions and serves scripted job snapshots and result files."""

  def __init__(self) -> None:
    self.created: list[dict[str, Any]] = []
    self.uploads: list[dict[str, Any]] = []
    self.failing_models: dict[str, Exception] = {}
    self.snapshots: dict[str, ProviderJobSnapshot] = {}
    self.files: dict[str, bytes] = {}
    self.status_reads: list[str] = []
    self.read_errors: list[Exception] = []
    self.download_errors: list[Exception] = []

  async def create_batch(self, *, model: str, src: list[dict[str, Any]] | str, display_name: str) -> str:
    if model in self.failing_models:
      raise self.failing_models[model]
    name = f"batches/fake-{len(self.created) + 1}"
    self.created.append({"name": name, "model": model, "src": src, "display_name": display_name})
    return name

  async def get_batch(self, name: str) -> ProviderJobSnapshot:
    self.status_reads.append(name)
    if self.read_errors:
      raise self.read_errors.pop(0)
    return self.snapshots.get(name) or ProviderJobSnapshot(name=name, state="JOB_STATE_RUNNING")

  async def upload_file(self, path: Path, *, mime_type: str, display_name: str) -> str:
    name = f"files/upload-{len(self.uploads) + 1}"
    self.uploads.append({"name": name, "mime_type": mime_type, "display_name": display_name, "content": Path(path).read_text(encoding="utf-8"), "path": Path(path)})
    return name

  async def download_file(self, name: str) -> bytes:
    if self.download_errors:
      raise self.download_errors.pop(0)
    return self.files[name]

  def complete_inline(self, name: str, outputs: list[str | dict[str, Any] | None]) -> None:
    """Script a succeeded inline job: str -> text, dict -> error, None -> empty response."""
    responses: list[InlineResult] = []
    for output in outputs:
      if isinstance(output, dict):
        responses.append(InlineResult(error=output))
      elif output is None:
        responses.append(InlineResult(response={}))
      else:
        responses.append(InlineResult(response=candidate_response(output)))
    self.snapshots[name] = ProviderJobSnapshot(name=name, state="JOB_STATE_SUCCEEDED", inlined_responses=responses)

  def set_state(self, name: str, state: str, *, error_message: str | None = None) -> None:
    self.snapshots[name] = ProviderJobSnapshot(name=name, state=state, error_message=error_message)


class RecordingIngestor:
  def __init__(self, *, error: Exception | None = None) -> None:
    self.calls: list[dict[str, Any]] = []
    self.error = error

  async def ingest(self, payload: dict[str, Any], *, job_id: str, hidden: bool, uploaded_by: str | None) -> list[dict[str, Any]]:
    self.calls.append({"payload": payload, "job_id": job_id, "hidden": hidden, "uploaded_by": uploaded_by})
    if self.error is not None:
      raise self.error
    return [{"electionId": index + 1, "title": entry["election"]["title"], "candidates": len(entry.get("candidates") or [])} for index, entry in enumerate(payload["elections"])]


@pytest.fixture
def settings() -> Settings:
  return replace(
    get_settings(),
    environment="test",
    gemini_enabled=True,
    gemini_api_key="test-key",
    gemini_model="primary-model",
    gemini_model_fallback="fallback-model",
    gemini_thinking_enabled=False,
    max_rows_per_group=None,
    inline_limit_bytes=18 * 1024 * 1024,
    poll_interval_seconds=5.0,
    poll_timeout_seconds=60.0,
    stage_timeout_seconds=3600.0,
    max_active_jobs=100,
    max_active_tokens=5_000_000,
    max_analyze_per_tick=3,
    max_structure_per_tick=3,
    max_ingest_per_tick=2,
    analyze_prompt_path=None,
    structure_prompt_path=None,
    structure_schema_path=None,
    task_secret="test-task-secret",
  )


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def repo() -> InMemoryBatchJobsRepo:
  return InMemoryBatchJobsRepo()


@pytest.fixture
def provider() -> FakeBatchProvider:
  return FakeBatchProvider()


@pytest.fixture
def ingestor() -> RecordingIngestor:
  return RecordingIngestor()


@pytest.fixture
def pipeline(repo: InMemoryBatchJobsRepo, settings: Settings, provider: FakeBatchProvider, ingestor: RecordingIngestor, clock: FakeClock) -> BatchPipeline:
  return BatchPipeline(repo=repo, settings=settings, provider=provider, ingestor=ingestor, clock=clock)


@pytest.fixture
def mock_pipeline(repo: InMemoryBatchJobsRepo, settings: Settings, ingestor: RecordingIngestor, clock: FakeClock) -> BatchPipeline:
  return BatchPipeline(repo=repo, settings=replace(settings, gemini_enabled=False), provider=None, ingestor=ingestor, clock=clock)


def election_payload(title: str, *, candidates: int = 1) -> str:
  return json.dumps({"elections": [{"election": {"title": title, "type": "LOCAL", "date": "11/05/2025", "city": "Springfield", "state": "IL"}, "candidates": [{"name": f"Candidate {index}"} for index in range(candidates)]}]})


@pytest.fixture
def make_election_payload():
  return election_payload
