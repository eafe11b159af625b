"""Error taxonomy for the batch pipeline.

Each error carries the HTTP status the API surface maps it to, so route handlers
never need to know which stage raised.
"""

from __future__ import annotations


class BatchPipelineError(Exception):
  """Base class for batch pipeline failures."""

  status_code: int = 500

  def __init__(self, message: str) -> None:
    super().__init__(message)
    self.message = message


class InvalidBatchInputError(BatchPipelineError):
  """Raised when submitted groups are missing or malformed."""

  status_code = 400


class AdmissionRejectedError(BatchPipelineError):
  """Raised when the active job or token ceiling would be exceeded."""

  status_code = 429


class BatchSubmissionError(BatchPipelineError):
  """Raised when no configured model accepted the batch."""

  status_code = 500

  def __init__(self, message: str, *, attempts: list[tuple[str, str]] | None = None, job_id: str | None = None) -> None:
    super().__init__(message)
    self.attempts = attempts or []
    self.job_id = job_id


class ProviderJobFailedError(BatchPipelineError):
  """Raised when the provider reports a failed or cancelled batch job."""

  def __init__(self, message: str, *, state: str) -> None:
    super().__init__(message)
    self.state = state


class PollTimeoutError(BatchPipelineError):
  """Raised when a batch job never reached a terminal state in time."""

  def __init__(self, job_name: str, waited_seconds: float) -> None:
    super().__init__(f"Batch job {job_name} timed out after {int(waited_seconds)}s without reaching a terminal state")
    self.job_name = job_name
    self.waited_seconds = waited_seconds


class ProviderUnavailableError(BatchPipelineError):
  """Raised when a provider call failed in transit; the job keeps its status and is retried next tick."""

  status_code = 503


class InvalidTransitionError(BatchPipelineError):
  """Raised when a job is not in the status a transition expects."""

  status_code = 409

  def __init__(self, job_id: str, expected: str, actual: str | None) -> None:
    super().__init__(f"Job {job_id} expected status {expected} but found {actual}")
    self.job_id = job_id
    self.expected = expected
    self.actual = actual


class BatchJobNotFoundError(BatchPipelineError):
  """Raised when a job id does not exist."""

  status_code = 404


class IngestionError(BatchPipelineError):
  """Raised when structured output cannot be turned into domain records."""
