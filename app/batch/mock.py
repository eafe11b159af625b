"""Deterministic stand-in outputs used when the provider is disabled."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.batch.models import PreparedGroup


@dataclass(frozen=True)
class MockGroupOutput:
  key: str
  index: int
  analyze_text: str
  structure_text: str


def _first_row(group: PreparedGroup) -> Mapping[str, Any]:
  if group.rows and isinstance(group.rows[0], Mapping):
    return group.rows[0]
  return {}


def build_mock_output(group: PreparedGroup, index: int) -> MockGroupOutput:
  """Build analyze and structure payloads shaped like real provider output."""
  first = _first_row(group)
  city = first.get("municipality") or group.municipality or "Sample City"
  state = first.get("state") or group.state or "Sample State"
  year = str(first.get("year") or "2025")[-4:]
  candidate_name = f"{first.get('firstName') or 'Jane'} {first.get('lastName') or 'Doe'}".strip()
  role = first.get("position") or group.position or "Candidate"

  election = {"type": "LOCAL", "date": f"11/05/{year}", "city": city, "state": state, "number_of_seats": "N/A"}
  analyze = [
    {
      "election": {**election, "title": "Mock Election", "description": "Mock analysis (provider disabled)."},
      "candidates": [{"name": candidate_name, "currentRole": role, "party": "N/A", "bio": "Mock candidate generated locally.", "key_policies": ["Community engagement", "Transparency"], "home_city": city, "hometown_state": state, "sources": ["Local import test"]}],
    }
  ]
  structured = {
    "elections": [
      {
        "election": {**election, "title": "Mock Election (Structured)", "description": "Structured mock output (provider disabled)."},
        "candidates": [{"name": candidate_name, "currentRole": role, "party": "", "image_url": "", "linkedin_url": "", "campaign_website_url": "", "bio": "Mock candidate for local testing.", "key_policies": ["Transparency", "Community"], "home_city": city, "hometown_state": state, "additional_notes": "", "sources": ["Local mock"]}],
      }
    ]
  }
  return MockGroupOutput(key=group.key, index=index, analyze_text=json.dumps(analyze, indent=2, default=str), structure_text=json.dumps(structured, indent=2, default=str))
