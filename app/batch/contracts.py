"""Typed payloads exchanged with the batch provider."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BatchRequest(BaseModel):
  """One generate-content request inside a batch."""

  contents: list[dict[str, Any]]
  config: dict[str, Any] = Field(default_factory=dict)

  def wire(self) -> dict[str, Any]:
    """Return the JSON-ready body sent to the provider."""
    return self.model_dump(mode="json", exclude_none=True)

  def file_body(self) -> dict[str, Any]:
    """Return the REST-shaped body used inside uploaded request files."""
    body: dict[str, Any] = {"contents": self.model_dump(mode="json")["contents"]}
    if self.config:
      body["generation_config"] = dict(self.config)
    return body


class InlineResult(BaseModel):
  """An entry of a completed job's inline responses, aligned positionally with the submitted array."""

  model_config = ConfigDict(extra="ignore")

  response: dict[str, Any] | None = None
  error: Any = None


class FileResultLine(BaseModel):
  """One line of a downloaded result file."""

  model_config = ConfigDict(extra="ignore")

  key: str | None = None
  index: int | None = None
  response: dict[str, Any] | None = None
  error: Any = None


class ProviderJobSnapshot(BaseModel):
  """Provider-agnostic view of a batch job's status."""

  name: str
  state: str
  error_message: str | None = None
  error_details: list[str] = Field(default_factory=list)
  inlined_responses: list[InlineResult] | None = None
  result_file_name: str | None = None
