"""Turn aggregated structured output into election records."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.batch.errors import IngestionError
from app.batch.models import BatchGroupRecord, BatchGroupStatus
from app.core.database import get_session_factory
from app.schema.batch_jobs import IngestedElection

logger = logging.getLogger(__name__)


class StructuredIngestor(Protocol):
  async def ingest(self, payload: dict[str, Any], *, job_id: str, hidden: bool, uploaded_by: str | None) -> list[dict[str, Any]]:
    """Create domain records from `{"elections": [...]}` and return one summary per record."""


def aggregate_elections(groups: Iterable[BatchGroupRecord]) -> list[dict[str, Any]]:
  """Concatenate the `elections` arrays of every structured group, in group order."""
  elections: list[dict[str, Any]] = []
  for group in groups:
    if group.status != BatchGroupStatus.STRUCTURE_COMPLETED or not isinstance(group.structured, dict):
      continue
    value = group.structured.get("elections")
    if isinstance(value, list):
      elections.extend(item for item in value if isinstance(item, dict))
  return elections


class DatabaseElectionIngestor:
  """Store each structured election as an `ingested_elections` row."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def ingest(self, payload: dict[str, Any], *, job_id: str, hidden: bool, uploaded_by: str | None) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    async with self._session_factory() as session:
      async with session.begin():
        for position, entry in enumerate(payload.get("elections") or []):
          row = _election_row(entry, position=position, job_id=job_id, hidden=hidden, uploaded_by=uploaded_by)
          session.add(row)
          await session.flush()
          results.append({"electionId": row.id, "title": row.title, "candidates": row.candidate_count})

    logger.info("Ingested %d elections for batch job %s hidden=%s", len(results), job_id, hidden)
    return results


def _election_row(entry: Any, *, position: int, job_id: str, hidden: bool, uploaded_by: str | None) -> IngestedElection:
  election = entry.get("election") if isinstance(entry, dict) else None
  if not isinstance(election, dict):
    raise IngestionError(f"Election entry {position} has no election object")
  title = str(election.get("title") or "").strip()
  if not title:
    raise IngestionError(f"Election entry {position} is missing a title")
  candidates = entry.get("candidates")
  return IngestedElection(
    job_id=job_id,
    title=title,
    election_type=election.get("type"),
    date=election.get("date"),
    city=election.get("city"),
    state=election.get("state"),
    candidate_count=len(candidates) if isinstance(candidates, list) else 0,
    payload=entry,
    hidden=hidden,
    uploaded_by=uploaded_by,
  )
