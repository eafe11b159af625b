"""Minimal .env loader so local runs and the worker script share one config file."""

from __future__ import annotations

import os
from pathlib import Path


def default_env_path() -> Path:
  """Return the .env path at the project root, overridable via ROLLCALL_ENV_FILE."""

  override = os.getenv("ROLLCALL_ENV_FILE")
  if override:
    return Path(override)
  return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
  if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
    return value[1:-1]
  return value


def parse_env_lines(lines: list[str]) -> dict[str, str]:
  """Parse KEY=value lines, ignoring comments, blanks and `export` prefixes."""

  parsed: dict[str, str] = {}
  for raw_line in lines:
    line = raw_line.strip()
    if not line or line.startswith("#"):
      continue
    line = line.removeprefix("export ").lstrip()
    key, sep, value = line.partition("=")
    key = key.strip()
    if not sep or not key:
      continue
    parsed[key] = _unquote(value.strip())
  return parsed


def load_env_file(path: Path, *, override: bool = False) -> None:
  """Load key=value pairs from a .env file into the process environment."""

  if not path.is_file():
    return

  for key, value in parse_env_lines(path.read_text(encoding="utf-8").splitlines()).items():
    if not override and key in os.environ:
      continue
    os.environ[key] = value
