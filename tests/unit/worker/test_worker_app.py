"""Tests for worker process wiring."""

from __future__ import annotations

import logging

import pytest

from utils.metrics import MetricsCollector
from utils.storage import FilesystemStorage
from utils.s3_utils import S3Storage
from worker import worker_app
from worker.config import WorkerConfig
from worker.worker_app import WorkerContext, build_scheduler, build_storage, setup_loggers


def _config(**env):
    return WorkerConfig.from_env({"DATABASE_URL": "postgresql://u:p@db/app", **env})


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_main_exits_1_without_database_url(monkeypatch, restore_root_logger):
    monkeypatch.setattr(worker_app, "load_env_files", lambda: None)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert worker_app.main() == 1


def test_setup_loggers_installs_single_stdout_handler(restore_root_logger):
    setup_loggers("debug")
    setup_loggers("info")

    root = restore_root_logger
    assert len(root.handlers) == 1
    assert root.level == logging.INFO
    assert logging.getLogger("httpx").level == logging.WARNING


def test_build_storage_picks_backend(tmp_path):
    assert isinstance(build_storage(_config(UPLOADS_DIR=str(tmp_path))), FilesystemStorage)
    assert isinstance(build_storage(_config(STORAGE_TYPE="s3", S3_BUCKET="docs")), S3Storage)


def test_build_scheduler_applies_config_and_table_check(fake_queue, fake_storage, fake_sandbox):
    config = _config(WORKER_CONCURRENCY="3", WORKER_POLL_INTERVAL_MS="900")
    ctx = WorkerContext(
        config=config,
        db=None,
        queue=fake_queue,
        storage=fake_storage,
        embedder=None,
        embedding_client=None,
        sandbox=fake_sandbox,
        metrics=MetricsCollector(),
    )

    scheduler = build_scheduler(ctx, {"sources": True, "source_chunks": True, "script_jobs": False})

    assert scheduler.concurrency == 3
    assert scheduler.poll_interval_ms == 900
    assert scheduler.sources_enabled is True
    assert scheduler.scripts_enabled is False
