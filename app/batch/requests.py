"""Render prepared groups into provider requests for each stage."""

from __future__ import annotations

import json
from typing import Any

from app.batch.contracts import BatchRequest
from app.batch.models import PreparedGroup
from app.config import Settings

ROWS_HEADER = "\n\nElection details input (JSON rows):\n"
ANALYSIS_HEADER = "\n\nAttached data (from previous step):\n"
ORIGINAL_ROWS_HEADER = "\n\nOriginal spreadsheet rows (may include email to preserve):\n"


def _rows_json(rows: list[Any]) -> str:
  return json.dumps(rows, indent=2, ensure_ascii=False, default=str)


def _base_config(settings: Settings) -> dict[str, Any]:
  config: dict[str, Any] = {"temperature": 0, "max_output_tokens": settings.gemini_max_output_tokens}
  if settings.gemini_thinking_enabled:
    config["thinking_config"] = {"thinking_budget": settings.gemini_thinking_budget}
  return config


def build_analyze_config(settings: Settings) -> dict[str, Any]:
  return _base_config(settings)


def build_structure_config(settings: Settings, response_schema: dict[str, Any]) -> dict[str, Any]:
  config = _base_config(settings)
  config["response_mime_type"] = "application/json"
  config["response_schema"] = response_schema
  return config


def build_analyze_request(prompt: str, group: PreparedGroup, config: dict[str, Any]) -> BatchRequest:
  text = f"{prompt}{ROWS_HEADER}{_rows_json(group.rows)}\n"
  return BatchRequest(contents=[{"role": "user", "parts": [{"text": text}]}], config=dict(config))


def build_structure_request(prompt: str, analyze_text: str, group: PreparedGroup, config: dict[str, Any]) -> BatchRequest:
  """Feed the analyze output back with the original rows so emails survive structuring."""
  parts = [{"text": prompt}, {"text": f"{ANALYSIS_HEADER}{analyze_text}"}, {"text": f"{ORIGINAL_ROWS_HEADER}{_rows_json(group.rows)}"}]
  return BatchRequest(contents=[{"role": "user", "parts": parts}], config=dict(config))
