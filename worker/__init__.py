"""Notebook ingestion worker: claims queued sources and script jobs from PostgreSQL"""

from .config import ConfigError, WorkerConfig
from .derived_jobs import DerivedJobEnqueuer
from .ingest_tasks import IngestionPipeline, SourceNotFound, format_worker_error, page_range
from .queue import JobQueue, QueueTableMissing
from .scheduler import ClaimScheduler
from .script_tasks import ScriptJobExecutor

__all__ = [
    "ClaimScheduler",
    "ConfigError",
    "DerivedJobEnqueuer",
    "IngestionPipeline",
    "JobQueue",
    "QueueTableMissing",
    "ScriptJobExecutor",
    "SourceNotFound",
    "WorkerConfig",
    "format_worker_error",
    "page_range",
]
