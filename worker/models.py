# worker/models.py

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SourceStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


class ScriptJobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


# Statuses from which an ingestion run may still proceed
INGESTIBLE_STATUSES = (SourceStatus.PENDING, SourceStatus.PROCESSING)


@dataclass
class Source:
    id: str
    notebook_id: str
    filename: str
    file_url: str
    mime: Optional[str]
    status: SourceStatus
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def tag(self) -> str:
        return f"[SRC-{self.id[:8]}]"

    @classmethod
    def from_record(cls, record: Any) -> "Source":
        return cls(
            id=record["id"],
            notebook_id=record["notebook_id"],
            filename=record["filename"] or "",
            file_url=record["file_url"] or "",
            mime=record["mime"],
            status=SourceStatus(record["status"]),
            error_message=record["error_message"],
            created_at=record["created_at"],
        )


@dataclass
class ScriptJob:
    id: str
    user_id: str
    notebook_id: Optional[str]
    code: str
    input: Dict[str, Any]
    status: ScriptJobStatus
    timeout_ms: int = 10_000
    memory_limit_mb: int = 256
    output: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    @property
    def tag(self) -> str:
        return f"[JOB-{self.id[:8]}]"

    @classmethod
    def from_record(cls, record: Any) -> "ScriptJob":
        return cls(
            id=record["id"],
            user_id=record["user_id"],
            notebook_id=record["notebook_id"],
            code=record["code"] or "",
            input=_json_object(record["input"]),
            status=ScriptJobStatus(record["status"]),
            timeout_ms=record["timeout_ms"] or 10_000,
            memory_limit_mb=record["memory_limit_mb"] or 256,
            output=_json_object(record["output"]) if record["output"] is not None else None,
            error_message=record["error_message"],
        )


@dataclass
class NewChunk:
    """A chunk ready to be persisted"""
    chunk_index: int
    content: str
    page_start: int
    page_end: int
    embedding: List[float] = field(default_factory=list)


def _json_object(value: Any) -> Dict[str, Any]:
    # asyncpg returns jsonb as text unless a codec is registered
    if value is None:
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return value if isinstance(value, dict) else {}
