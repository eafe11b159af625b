from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status

from app.api.models import TickSummaryResponse
from app.config import Settings, get_settings
from app.services.batches import run_worker_tick

router = APIRouter()
logger = logging.getLogger(__name__)


def _verify_task_secret(settings: Settings, authorization: str | None, x_rollcall_task_secret: str | None) -> None:
  # Secure-by-default: the tick endpoint drives provider spend, so it must be authenticated.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  shared_secret_valid = secrets.compare_digest((x_rollcall_task_secret or ""), settings.task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), f"Bearer {settings.task_secret}")
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to /batches/tick")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")


@router.post("/batches/tick", response_model=TickSummaryResponse, status_code=status.HTTP_200_OK)
async def batch_tick_endpoint(
  settings: Annotated[Settings, Depends(get_settings)], authorization: str | None = Header(default=None), x_rollcall_task_secret: str | None = Header(default=None)
) -> TickSummaryResponse:
  """Run one worker tick: poll submitted stages, start structure, and ingest finished jobs."""
  _verify_task_secret(settings, authorization, x_rollcall_task_secret)
  return await run_worker_tick(settings)
