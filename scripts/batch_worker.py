"""Out-of-process batch worker.

Runs one worker tick every poll interval, or a single tick with --once.
With --drive JOB_ID it blocks on one job until it reaches a terminal status.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

# Ensure repo root is on sys.path so local imports work when invoked directly.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.batch.errors import BatchPipelineError  # noqa: E402
from app.batch.worker import BatchWorker  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.core.database import dispose_db_engine  # noqa: E402
from app.core.logging import initialize_logging  # noqa: E402
from app.services.batches import build_pipeline  # noqa: E402

logger = logging.getLogger("scripts.batch_worker")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description="Advance bulk batch jobs through analyze, structure, and ingestion.")
  parser.add_argument("--once", action="store_true", help="Run a single tick and exit.")
  parser.add_argument("--drive", metavar="JOB_ID", help="Block on one job until it completes or fails.")
  parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks (defaults to the configured poll interval).")
  return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
  settings = get_settings()
  pipeline = build_pipeline(settings)
  try:
    if args.drive:
      try:
        job = await pipeline.drive(args.drive)
      except BatchPipelineError as exc:
        logger.error("Batch job %s did not complete: %s", args.drive, exc.message)
        return 1
      print(json.dumps({"jobId": job.id, "status": job.status.value}))
      return 0

    worker = BatchWorker(pipeline, settings)
    interval = args.interval if args.interval is not None else settings.poll_interval_seconds
    while True:
      summary = await worker.run_tick()
      if args.once:
        print(json.dumps(asdict(summary)))
        return 0
      await asyncio.sleep(interval)
  finally:
    await dispose_db_engine()


def main(argv: list[str] | None = None) -> int:
  args = _parse_args(argv)
  initialize_logging(get_settings())
  try:
    return asyncio.run(_run(args))
  except KeyboardInterrupt:
    logger.info("Batch worker stopped.")
    return 0


if __name__ == "__main__":
  sys.exit(main())
