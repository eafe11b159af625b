from . import batches, worker

__all__ = ["batches", "worker"]
