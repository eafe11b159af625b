"""Postgres-backed repository for batch jobs using SQLAlchemy."""

from __future__ import annotations

from typing import Any, Final

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.batch.admission import ActiveUsage, AdmissionDecision, AdmissionLimits, evaluate_admission
from app.batch.errors import BatchJobNotFoundError, InvalidTransitionError
from app.batch.models import ACTIVE_JOB_STATUSES, BatchGroupRecord, BatchGroupStatus, BatchJobRecord, BatchJobStatus, GroupUpdate
from app.core.database import get_session_factory
from app.schema.batch_jobs import BatchGroup, BatchJob
from app.storage.batch_jobs_repo import BatchJobsRepository
from app.utils.db_retry import execute_with_retry

# Serializes admission across submitters: count + sum + insert happen under one xact lock.
_ADMISSION_LOCK_KEY: Final[int] = 7_201_184_233


class PostgresBatchJobsRepository(BatchJobsRepository):
  """Persist batch jobs and groups to Postgres using SQLAlchemy."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job_admitted(self, record: BatchJobRecord, *, limits: AdmissionLimits) -> AdmissionDecision:
    async def _admit() -> AdmissionDecision:
      async with self._session_factory() as session:
        async with session.begin():
          await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": _ADMISSION_LOCK_KEY})
          usage = await self._active_usage_in_session(session)
          decision = evaluate_admission(usage, record.estimated_tokens, limits)
          if decision.allowed:
            session.add(self._record_to_model(record))
        return decision

    return await execute_with_retry(operation_name="batch_job_admission", func=_admit)

  async def active_usage(self) -> ActiveUsage:
    async with self._session_factory() as session:
      return await self._active_usage_in_session(session)

  async def get_job(self, job_id: str) -> BatchJobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(BatchJob, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def list_jobs_by_status(self, status: BatchJobStatus, *, limit: int) -> list[BatchJobRecord]:
    async with self._session_factory() as session:
      stmt = select(BatchJob).where(BatchJob.status == status.value).order_by(BatchJob.last_processed_at.asc().nulls_first(), BatchJob.created_at.asc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def transition(self, job_id: str, *, expected: BatchJobStatus, status: BatchJobStatus, fields: dict[str, Any] | None = None, group_updates: list[GroupUpdate] | None = None) -> BatchJobRecord:
    async def _apply() -> BatchJobRecord:
      async with self._session_factory() as session:
        async with session.begin():
          await self._conditional_update(session, job_id, expected=expected, values={**(fields or {}), "status": status.value})
          for item in group_updates or []:
            stmt = update(BatchGroup).where(BatchGroup.id == item.group_id, BatchGroup.job_id == job_id).values(status=item.status.value, **item.fields)
            await session.execute(stmt)
        return await self._reload(session, job_id)

    # Each attempt re-checks the expected status, so a retry never applies a transition twice.
    return await execute_with_retry(operation_name="batch_job_transition", func=_apply)

  async def touch(self, job_id: str, *, expected: BatchJobStatus, fields: dict[str, Any] | None = None) -> BatchJobRecord:
    async with self._session_factory() as session:
      async with session.begin():
        await self._conditional_update(session, job_id, expected=expected, values=dict(fields or {}))
      return await self._reload(session, job_id)

  async def _conditional_update(self, session: AsyncSession, job_id: str, *, expected: BatchJobStatus, values: dict[str, Any]) -> None:
    stmt = update(BatchJob).where(BatchJob.id == job_id, BatchJob.status == expected.value).values(**values, updated_at=func.now()).execution_options(synchronize_session=False)
    result = await session.execute(stmt)
    if result.rowcount == 1:
      return
    current = await session.scalar(select(BatchJob.status).where(BatchJob.id == job_id))
    if current is None:
      raise BatchJobNotFoundError(f"Batch job {job_id} not found")
    raise InvalidTransitionError(job_id, expected.value, current)

  async def _reload(self, session: AsyncSession, job_id: str) -> BatchJobRecord:
    row = await session.get(BatchJob, job_id, populate_existing=True)
    if row is None:
      raise BatchJobNotFoundError(f"Batch job {job_id} not found")
    return self._model_to_record(row)

  async def _active_usage_in_session(self, session: AsyncSession) -> ActiveUsage:
    stmt = select(func.count(BatchJob.id), func.coalesce(func.sum(BatchJob.estimated_tokens), 0)).where(BatchJob.status.in_([status.value for status in ACTIVE_JOB_STATUSES]))
    job_count, token_sum = (await session.execute(stmt)).one()
    return ActiveUsage(job_count=int(job_count or 0), token_sum=int(token_sum or 0))

  def _record_to_model(self, record: BatchJobRecord) -> BatchJob:
    job = BatchJob(
      id=record.id,
      display_name=record.display_name,
      status=record.status.value,
      uploader_email=record.uploader_email,
      force_hidden=record.force_hidden,
      notes=record.notes,
      analyze_prompt=record.analyze_prompt,
      structure_prompt=record.structure_prompt,
      response_schema=record.response_schema,
      estimated_tokens=record.estimated_tokens,
      total_rows=record.total_rows,
      group_count=record.group_count,
      created_at=record.created_at,
      updated_at=record.updated_at,
    )
    job.groups = [
      BatchGroup(
        id=group.id,
        job_id=record.id,
        key=group.key,
        order=group.order,
        municipality=group.municipality,
        state=group.state,
        position=group.position,
        rows=group.rows,
        status=group.status.value,
        analyze_token_estimate=group.analyze_token_estimate,
      )
      for group in record.groups
    ]
    return job

  def _group_to_record(self, row: BatchGroup) -> BatchGroupRecord:
    return BatchGroupRecord(
      id=row.id,
      job_id=row.job_id,
      key=row.key,
      order=int(row.order),
      rows=list(row.rows or []),
      status=BatchGroupStatus(row.status),
      municipality=row.municipality,
      state=row.state,
      position=row.position,
      analyze_text=row.analyze_text,
      analyze_error=row.analyze_error,
      analyze_token_estimate=row.analyze_token_estimate,
      analyze_completed_at=row.analyze_completed_at,
      structure_text=row.structure_text,
      structure_error=row.structure_error,
      structured=row.structured,
      structure_token_estimate=row.structure_token_estimate,
      structure_completed_at=row.structure_completed_at,
      ingest_completed_at=row.ingest_completed_at,
    )

  def _model_to_record(self, row: BatchJob) -> BatchJobRecord:
    return BatchJobRecord(
      id=row.id,
      display_name=row.display_name,
      status=BatchJobStatus(row.status),
      created_at=row.created_at,
      updated_at=row.updated_at,
      estimated_tokens=int(row.estimated_tokens or 0),
      total_rows=int(row.total_rows or 0),
      group_count=int(row.group_count or 0),
      uploader_email=row.uploader_email,
      force_hidden=bool(row.force_hidden),
      notes=row.notes,
      analyze_prompt=row.analyze_prompt,
      structure_prompt=row.structure_prompt,
      response_schema=row.response_schema,
      analyze_job_name=row.analyze_job_name,
      analyze_mode=row.analyze_mode,
      analyze_model=row.analyze_model,
      analyze_fallback_used=bool(row.analyze_fallback_used),
      analyze_submitted_at=row.analyze_submitted_at,
      analyze_completed_at=row.analyze_completed_at,
      analyze_error=row.analyze_error,
      structure_job_name=row.structure_job_name,
      structure_mode=row.structure_mode,
      structure_model=row.structure_model,
      structure_fallback_used=bool(row.structure_fallback_used),
      structure_submitted_at=row.structure_submitted_at,
      structure_completed_at=row.structure_completed_at,
      structure_error=row.structure_error,
      ingest_requested_at=row.ingest_requested_at,
      ingest_completed_at=row.ingest_completed_at,
      ingest_error=row.ingest_error,
      last_processed_at=row.last_processed_at,
      groups=[self._group_to_record(group) for group in sorted(row.groups, key=lambda item: item.order)],
    )
