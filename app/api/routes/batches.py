from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.api.models import BatchJobView, CreateBatchRequest, CreateBatchResponse
from app.config import Settings, get_settings
from app.services.batches import create_batch_job, get_batch_job

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=CreateBatchResponse, status_code=status.HTTP_200_OK)
async def create_batch_endpoint(request: CreateBatchRequest, settings: Annotated[Settings, Depends(get_settings)]) -> CreateBatchResponse:
  """Create a batch job and submit its analyze stage (or complete it synthetically when the provider is off)."""
  return await create_batch_job(request, settings)


@router.get("/{job_id}", response_model=BatchJobView)
async def get_batch_endpoint(job_id: str, settings: Annotated[Settings, Depends(get_settings)]) -> BatchJobView:
  """Return a batch job with its groups in submission order."""
  return await get_batch_job(job_id, settings)
