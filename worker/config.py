# worker/config.py
"""
Worker configuration - environment variables parsed once at startup
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parent.parent

EMBEDDING_PROVIDERS = ("auto", "openai", "openrouter")
STORAGE_TYPES = ("filesystem", "s3")
SIBLING_RECOVERY_SCOPES = ("any", "same_owner", "off")


class ConfigError(Exception):
    """Startup configuration is unusable; the worker must not start claiming"""


def load_env_files():
    """Load `.env` from the repo root, then from the current directory (existing env wins)"""
    load_dotenv(REPO_ROOT / ".env")
    load_dotenv(Path.cwd() / ".env")


def read_env(name: str, env: Optional[Mapping[str, str]] = None) -> str:
    """Read a variable, trimmed and with one pair of surrounding quotes removed"""
    source = os.environ if env is None else env
    value = (source.get(name) or "").strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1].strip()
    return value


def _read_int(name: str, default: int, env: Optional[Mapping[str, str]] = None) -> int:
    raw = read_env(name, env)
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        logger.warning(f"⚠️ Invalid {name}={raw!r}, using default {default}")
        return default


def _read_bool(name: str, default: bool, env: Optional[Mapping[str, str]] = None) -> bool:
    raw = read_env(name, env).lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    logger.warning(f"⚠️ Invalid {name}={raw!r}, using default {default}")
    return default


def _read_choice(name: str, default: str, choices, env: Optional[Mapping[str, str]] = None) -> str:
    raw = read_env(name, env).lower()
    if not raw:
        return default
    if raw not in choices:
        logger.warning(f"⚠️ Invalid {name}={raw!r}, expected one of {choices}; using {default}")
        return default
    return raw


@dataclass
class WorkerConfig:
    database_url: str

    # ——— Chunking ———
    chunk_size: int = 2400
    chunk_overlap: int = 450
    chunk_min_size: int = 200

    # ——— Embeddings ———
    embedding_provider: str = "auto"
    embedding_batch_size: int = 20
    embedding_dimensions: int = 1536
    embedding_resize: bool = True
    embedding_model: str = ""
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_embedding_model: str = ""
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_embedding_model: str = ""

    # ——— Scheduling ———
    worker_concurrency: int = 1
    worker_poll_interval_ms: int = 1200

    # ——— Storage ———
    storage_type: str = "filesystem"
    uploads_dir: str = "./uploads"
    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_endpoint: str = ""
    s3_force_path_style: bool = False

    # ——— Scripts & recovery ———
    python_bin: str = "python3"
    sibling_recovery_scope: str = "any"

    # ——— Database pool ———
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "WorkerConfig":
        """Build and validate config; raises `ConfigError` for fatal problems"""
        database_url = read_env("DATABASE_URL", env)
        if not database_url:
            raise ConfigError("DATABASE_URL is required")

        concurrency = max(1, _read_int("WORKER_CONCURRENCY", 1, env))
        pool_min = max(1, _read_int("DB_POOL_MIN_SIZE", 1, env))
        pool_max = max(pool_min, concurrency + 1, _read_int("DB_POOL_MAX_SIZE", 5, env))

        dimensions = _read_int("EMBEDDING_DIMENSIONS", 1536, env)
        if dimensions <= 0:
            dimensions = 1536

        config = cls(
            database_url=database_url,
            chunk_size=max(600, _read_int("CHUNK_SIZE", 2400, env)),
            chunk_overlap=max(0, _read_int("CHUNK_OVERLAP", 450, env)),
            chunk_min_size=max(1, _read_int("CHUNK_MIN_SIZE", 200, env)),
            embedding_provider=_read_choice("EMBEDDING_PROVIDER", "auto", EMBEDDING_PROVIDERS, env),
            embedding_batch_size=max(1, _read_int("EMBEDDING_BATCH_SIZE", 20, env)),
            embedding_dimensions=dimensions,
            embedding_resize=_read_bool("EMBEDDING_RESIZE", True, env),
            embedding_model=read_env("EMBEDDING_MODEL", env),
            openai_api_key=read_env("OPENAI_API_KEY", env),
            openai_base_url=read_env("OPENAI_BASE_URL", env) or "https://api.openai.com/v1",
            openai_embedding_model=read_env("OPENAI_EMBEDDING_MODEL", env),
            openrouter_api_key=read_env("OPENROUTER_API_KEY", env),
            openrouter_base_url=read_env("OPENROUTER_BASE_URL", env) or "https://openrouter.ai/api/v1",
            openrouter_embedding_model=read_env("OPENROUTER_EMBEDDING_MODEL", env),
            worker_concurrency=concurrency,
            worker_poll_interval_ms=max(200, _read_int("WORKER_POLL_INTERVAL_MS", 1200, env)),
            storage_type=_read_choice("STORAGE_TYPE", "filesystem", STORAGE_TYPES, env),
            uploads_dir=read_env("UPLOADS_DIR", env) or "./uploads",
            s3_bucket=read_env("S3_BUCKET", env),
            s3_region=read_env("S3_REGION", env) or "us-east-1",
            s3_access_key_id=read_env("S3_ACCESS_KEY_ID", env),
            s3_secret_access_key=read_env("S3_SECRET_ACCESS_KEY", env),
            s3_endpoint=read_env("S3_ENDPOINT", env),
            s3_force_path_style=_read_bool("S3_FORCE_PATH_STYLE", False, env),
            python_bin=read_env("PYTHON_BIN", env) or "python3",
            sibling_recovery_scope=_read_choice("SIBLING_RECOVERY_SCOPE", "any", SIBLING_RECOVERY_SCOPES, env),
            db_pool_min_size=pool_min,
            db_pool_max_size=pool_max,
            log_level=(read_env("LOG_LEVEL", env) or "INFO").upper(),
        )
        config.validate()
        return config

    def validate(self):
        if self.embedding_provider == "openrouter" and not self.openrouter_api_key:
            raise ConfigError("EMBEDDING_PROVIDER=openrouter requires OPENROUTER_API_KEY")
        if self.storage_type == "s3" and not self.s3_bucket:
            raise ConfigError("STORAGE_TYPE=s3 requires S3_BUCKET")
        if not self.openai_api_key and not self.openrouter_api_key:
            logger.warning("⚠️ No embedding API key configured; every ingestion will fail at the embedding step")

    def log_env_check(self):
        """Log which settings are present without printing secrets"""
        logger.info("🔍 Environment check:")
        logger.info(f"   OPENAI_API_KEY length: {len(self.openai_api_key)}")
        logger.info(f"   OPENROUTER_API_KEY length: {len(self.openrouter_api_key)}")
        logger.info(f"   S3_SECRET_ACCESS_KEY length: {len(self.s3_secret_access_key)}")
        logger.info(f"   EMBEDDING_PROVIDER: {self.embedding_provider}, dims={self.embedding_dimensions}, resize={self.embedding_resize}")
        logger.info(f"   STORAGE_TYPE: {self.storage_type}")
        logger.info(f"   WORKER_CONCURRENCY: {self.worker_concurrency}, poll={self.worker_poll_interval_ms}ms")
        logger.info(f"   CHUNK_SIZE/OVERLAP/MIN: {self.chunk_size}/{self.chunk_overlap}/{self.chunk_min_size}")
