from .base import JobStore, JobStoreError
from .file_store import FileJobStore
from .postgres_store import PostgresJobStore

__all__ = ["FileJobStore", "JobStore", "JobStoreError", "PostgresJobStore"]
