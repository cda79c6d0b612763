"""Queue workers: consume work items and persist them idempotently."""

from intake.app.worker.pool import WorkerPool
from intake.app.worker.worker import Worker, WorkerState

__all__ = ["Worker", "WorkerPool", "WorkerState"]
