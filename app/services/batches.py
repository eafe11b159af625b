"""Service helpers that wire the batch pipeline to storage, provider, and ingestion."""

from __future__ import annotations

import logging

from app.ai.providers.base import BatchProvider
from app.ai.providers.gemini import GeminiBatchProvider
from app.api.models import BatchJobView, CreateBatchRequest, CreateBatchResponse, TickSummaryResponse
from app.batch.errors import BatchJobNotFoundError
from app.batch.ingest import DatabaseElectionIngestor, StructuredIngestor
from app.batch.pipeline import BatchPipeline
from app.batch.worker import BatchWorker
from app.config import Settings
from app.storage.batch_jobs_repo import BatchJobsRepository
from app.storage.postgres_batch_jobs_repo import PostgresBatchJobsRepository

logger = logging.getLogger(__name__)


def _get_batch_repo(settings: Settings) -> BatchJobsRepository:
  return PostgresBatchJobsRepository()


def _get_batch_provider(settings: Settings) -> BatchProvider | None:
  """Return the provider client, or None when the provider is disabled and the mock path applies."""
  if not settings.gemini_enabled:
    return None
  return GeminiBatchProvider(api_key=settings.gemini_api_key)


def _get_ingestor(settings: Settings) -> StructuredIngestor:
  return DatabaseElectionIngestor()


def build_pipeline(settings: Settings) -> BatchPipeline:
  return BatchPipeline(repo=_get_batch_repo(settings), settings=settings, provider=_get_batch_provider(settings), ingestor=_get_ingestor(settings))


async def create_batch_job(request: CreateBatchRequest, settings: Settings) -> CreateBatchResponse:
  pipeline = build_pipeline(settings)
  result = await pipeline.submit(request.to_submission())
  logger.info("Batch job %s accepted with status %s mock=%s", result.job_id, result.status.value, result.mock)
  return CreateBatchResponse.from_result(result)


async def get_batch_job(job_id: str, settings: Settings) -> BatchJobView:
  job = await _get_batch_repo(settings).get_job(job_id)
  if job is None:
    raise BatchJobNotFoundError(f"Batch job {job_id} not found")
  return BatchJobView.from_record(job)


async def run_worker_tick(settings: Settings) -> TickSummaryResponse:
  worker = BatchWorker(build_pipeline(settings), settings)
  summary = await worker.run_tick()
  return TickSummaryResponse.from_summary(summary)
