"""Schema package exports."""

from .batch_jobs import BatchGroup, BatchJob, IngestedElection

__all__ = ["BatchGroup", "BatchJob", "IngestedElection"]
