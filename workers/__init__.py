"""
Background workers: queued imports with retry, and the expiry sweeper.
"""

from workers.import_worker import ImportJob, ImportWorker, JobStatus, RetryPolicy
from workers.sweeper import Sweeper

__all__ = [
    "ImportJob",
    "ImportWorker",
    "JobStatus",
    "RetryPolicy",
    "Sweeper",
]
