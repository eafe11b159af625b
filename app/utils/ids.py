"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_job_id() -> str:
  """Return a new batch job identifier."""
  return str(uuid.uuid4())


def generate_group_id() -> str:
  """Return a new batch group identifier."""
  return str(uuid.uuid4())
