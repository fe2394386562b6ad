# worker/worker_app.py
"""
Worker process wiring - logging, dependency context, signals and the entry point
"""

import sys
import signal
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
import asyncpg

from utils.chunking import ChunkingService
from utils.llm_clients.embedding_batcher import EmbeddingBatcher
from utils.llm_clients.embedding_client import OpenAICompatibleEmbeddingClient, build_provider_configs
from utils.metrics import MetricsCollector
from utils.sandbox.python_sandbox import PythonSandbox
from utils.s3_utils import S3Settings, S3Storage
from utils.storage import FilesystemStorage, StorageAdapter
from worker.config import ConfigError, WorkerConfig, load_env_files
from worker.database import check_queue_tables, close_db_pool, create_db_pool
from worker.derived_jobs import DerivedJobEnqueuer
from worker.ingest_tasks import IngestionPipeline
from worker.queue import JobQueue
from worker.scheduler import ClaimScheduler
from worker.script_tasks import ScriptJobExecutor

logger = logging.getLogger(__name__)

# Quiet chatty third-party loggers unless we are debugging
NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "asyncio")


# ——— Logging Configuration ———————————————————————————————————————————————————————

def setup_loggers(level: str = "INFO"):
    """stdout handler with the worker's standard format, installed once on the root logger"""
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if root.level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


# ——— Dependency Context ——————————————————————————————————————————————————————————

@dataclass
class WorkerContext:
    """Everything a job needs, built once at startup and passed down explicitly"""
    config: WorkerConfig
    db: asyncpg.Pool
    queue: JobQueue
    storage: StorageAdapter
    embedder: EmbeddingBatcher
    embedding_client: OpenAICompatibleEmbeddingClient
    sandbox: PythonSandbox
    metrics: MetricsCollector


def build_storage(config: WorkerConfig) -> StorageAdapter:
    if config.storage_type == "s3":
        logger.info(f"🪣 Using S3 storage (bucket={config.s3_bucket}, endpoint={config.s3_endpoint or 'aws'})")
        return S3Storage(S3Settings(
            bucket=config.s3_bucket,
            region=config.s3_region,
            access_key_id=config.s3_access_key_id or None,
            secret_access_key=config.s3_secret_access_key or None,
            endpoint=config.s3_endpoint or None,
            force_path_style=config.s3_force_path_style,
        ))
    logger.info(f"📁 Using filesystem storage at {config.uploads_dir}")
    return FilesystemStorage(config.uploads_dir)


def build_context(config: WorkerConfig, pool: asyncpg.Pool) -> WorkerContext:
    embedding_client = OpenAICompatibleEmbeddingClient(build_provider_configs(
        provider_mode=config.embedding_provider,
        openai_api_key=config.openai_api_key,
        openai_base_url=config.openai_base_url,
        openai_model=config.openai_embedding_model,
        openrouter_api_key=config.openrouter_api_key,
        openrouter_base_url=config.openrouter_base_url,
        openrouter_model=config.openrouter_embedding_model,
        shared_model=config.embedding_model,
    ))
    logger.info(f"🤖 Embedding configs: {[f'{c.name}:{c.model}' for c in embedding_client.configs][:4]}...")

    return WorkerContext(
        config=config,
        db=pool,
        queue=JobQueue(pool),
        storage=build_storage(config),
        embedder=EmbeddingBatcher(
            embedding_client,
            batch_size=config.embedding_batch_size,
            dimensions=config.embedding_dimensions,
            resize=config.embedding_resize,
        ),
        embedding_client=embedding_client,
        sandbox=PythonSandbox(config.python_bin),
        metrics=MetricsCollector(),
    )


def build_scheduler(ctx: WorkerContext, tables: Optional[dict] = None) -> ClaimScheduler:
    config = ctx.config
    tables = tables or {}
    enqueuer = DerivedJobEnqueuer(ctx.queue)
    pipeline = IngestionPipeline(
        queue=ctx.queue,
        storage=ctx.storage,
        embedder=ctx.embedder,
        chunker=ChunkingService(config.chunk_size, config.chunk_overlap, config.chunk_min_size),
        dimensions=config.embedding_dimensions,
        enqueuer=enqueuer,
        metrics=ctx.metrics,
        sibling_recovery_scope=config.sibling_recovery_scope,
    )
    executor = ScriptJobExecutor(ctx.queue, ctx.sandbox, metrics=ctx.metrics)
    return ClaimScheduler(
        queue=ctx.queue,
        run_source=pipeline.run,
        run_script_job=executor.run,
        concurrency=config.worker_concurrency,
        poll_interval_ms=config.worker_poll_interval_ms,
        sources_enabled=tables.get("sources", True),
        scripts_enabled=tables.get("script_jobs", True),
    )


# ——— Process Lifecycle ———————————————————————————————————————————————————————————

def install_signal_handlers(scheduler: ClaimScheduler):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.request_stop, sig.name)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda signum, frame: scheduler.request_stop(signal.Signals(signum).name))


async def run_worker(config: WorkerConfig):
    pool = await create_db_pool(config)
    ctx = None
    try:
        tables = await check_queue_tables(pool)
        ctx = build_context(config, pool)
        scheduler = build_scheduler(ctx, tables)
        install_signal_handlers(scheduler)
        await scheduler.run()
    finally:
        if ctx is not None:
            await ctx.embedding_client.aclose()
            logger.info(f"📊 Worker metrics: {ctx.metrics.get_summary()}")
        await close_db_pool(pool)


def main() -> int:
    load_env_files()
    try:
        config = WorkerConfig.from_env()
    except ConfigError as e:
        setup_loggers()
        logger.error(f"❌ Configuration error: {e}")
        return 1

    setup_loggers(config.log_level)
    config.log_env_check()

    try:
        asyncio.run(run_worker(config))
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted")
    return 0
