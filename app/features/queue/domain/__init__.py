"""
Domain subpackage for the durable job queue.
"""

from .models import Job, JobPriority, JobStatus, JobTypeCounts, utcnow

__all__ = [
    "Job",
    "JobPriority",
    "JobStatus",
    "JobTypeCounts",
    "utcnow",
]
