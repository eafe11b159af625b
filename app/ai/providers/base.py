"""Provider contract for batch generation backends."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

from app.batch.contracts import ProviderJobSnapshot


class BatchProvider(Protocol):
  """Minimal surface the pipeline needs from a batch-capable LLM provider."""

  async def create_batch(self, *, model: str, src: list[dict[str, Any]] | str, display_name: str) -> str:
    """Create a batch job from inline requests or an uploaded file name; return the job name."""

  async def get_batch(self, name: str) -> ProviderJobSnapshot:
    """Fetch the current status of a batch job."""

  async def upload_file(self, path: Path, *, mime_type: str, display_name: str) -> str:
    """Upload a local file and return the provider's file handle."""

  async def download_file(self, name: str) -> bytes:
    """Download a result file's raw bytes."""
