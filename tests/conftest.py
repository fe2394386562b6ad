"""Shared pytest fixtures: in-memory stand-ins for the database queue and collaborators."""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import json
from typing import Dict, List, Optional

import pytest

from utils.chunking import ChunkingService
from utils.document_loaders.loader_factory import get_loader_for_mime
from utils.llm_clients.embedding_batcher import EmbeddingBatcher
from utils.metrics import MetricsCollector
from utils.sandbox.python_sandbox import SandboxResult
from utils.storage import StorageObjectNotFound
from worker.derived_jobs import DerivedJobEnqueuer
from worker.ingest_tasks import IngestionPipeline
from worker.models import NewChunk, ScriptJob, ScriptJobStatus, Source, SourceStatus
from worker.queue import QueueTableMissing, new_chunk_id, new_job_id

DIMS = 8


class FakeQueue:
    """
    In-memory JobQueue with the same method surface.

    Claims are atomic within one event loop (no await between pick and flip), which
    mirrors the single-winner guarantee of the SKIP LOCKED claim.
    """

    def __init__(self):
        self.sources: Dict[str, Source] = {}
        self.chunks: Dict[str, List[dict]] = {}
        self.script_jobs: Dict[str, ScriptJob] = {}
        self.notebook_owners: Dict[str, Optional[str]] = {}
        self.missing_tables: set = set()
        self.claim_error: Optional[Exception] = None
        self.calls: List[str] = []
        self._order = itertools.count()
        self._created: Dict[str, int] = {}

    # ——— setup helpers ———

    def add_source(self, source_id: str, notebook_id: str = "nb_1", filename: str = "notes.txt",
                   file_url: Optional[str] = None, mime: Optional[str] = "text/plain",
                   status: SourceStatus = SourceStatus.PENDING) -> Source:
        source = Source(
            id=source_id,
            notebook_id=notebook_id,
            filename=filename,
            file_url=file_url if file_url is not None else f"uploads/{source_id}",
            mime=mime,
            status=status,
        )
        self.sources[source_id] = source
        self._created[source_id] = next(self._order)
        return source

    def add_chunks(self, source_id: str, contents: List[str], dims: int = DIMS):
        self.chunks[source_id] = [
            {
                "id": new_chunk_id(),
                "chunk_index": i,
                "content": content,
                "page_start": 1,
                "page_end": 1,
                "embedding": [0.5] * dims,
            }
            for i, content in enumerate(contents)
        ]

    def add_script_job(self, job_id: str, code: str = "TOOL_OUTPUT = 1", input: Optional[dict] = None,
                       status: ScriptJobStatus = ScriptJobStatus.PENDING, notebook_id: str = "nb_1") -> ScriptJob:
        job = ScriptJob(
            id=job_id,
            user_id="user_1",
            notebook_id=notebook_id,
            code=code,
            input=input or {},
            status=status,
        )
        self.script_jobs[job_id] = job
        self._created[job_id] = next(self._order)
        return job

    # ——— claims ———

    async def claim_next_source(self) -> Optional[str]:
        self.calls.append("claim_source")
        if "sources" in self.missing_tables:
            raise QueueTableMissing("sources")
        if self.claim_error:
            raise self.claim_error
        pending = [s for s in self.sources.values() if s.status == SourceStatus.PENDING]
        if not pending:
            return None
        source = min(pending, key=lambda s: self._created[s.id])
        source.status = SourceStatus.PROCESSING
        source.error_message = None
        return source.id

    async def claim_next_script_job(self) -> Optional[str]:
        self.calls.append("claim_script")
        if "script_jobs" in self.missing_tables:
            raise QueueTableMissing("script_jobs")
        pending = [j for j in self.script_jobs.values() if j.status == ScriptJobStatus.PENDING]
        if not pending:
            return None
        job = min(pending, key=lambda j: self._created[j.id])
        job.status = ScriptJobStatus.RUNNING
        return job.id

    # ——— sources ———

    async def get_source(self, source_id: str) -> Optional[Source]:
        source = self.sources.get(source_id)
        return dataclasses.replace(source) if source else None

    async def mark_source_ready(self, source_id: str):
        self.sources[source_id].status = SourceStatus.READY
        self.sources[source_id].error_message = None

    async def mark_source_failed(self, source_id: str, error_message: str):
        self.sources[source_id].status = SourceStatus.FAILED
        self.sources[source_id].error_message = error_message

    async def list_ready_sources(self, notebook_id: str) -> List[Source]:
        ready = [s for s in self.sources.values()
                 if s.notebook_id == notebook_id and s.status == SourceStatus.READY]
        return [dataclasses.replace(s) for s in sorted(ready, key=lambda s: self._created[s.id])]

    async def get_notebook_owner(self, notebook_id: str) -> Optional[str]:
        return self.notebook_owners.get(notebook_id)

    # ——— chunks ———

    async def insert_chunks(self, source_id: str, chunks: List[NewChunk]) -> int:
        self.chunks[source_id] = [{"id": new_chunk_id(), **dataclasses.asdict(chunk)} for chunk in chunks]
        return len(chunks)

    async def get_chunk_contents(self, source_id: str) -> List[str]:
        rows = sorted(self.chunks.get(source_id, []), key=lambda r: r["chunk_index"])
        return [r["content"] for r in rows]

    async def get_first_chunk_content(self, source_id: str) -> Optional[str]:
        contents = await self.get_chunk_contents(source_id)
        return contents[0] if contents else None

    async def find_ready_sibling(self, source: Source, scope: str = "any") -> Optional[str]:
        self.calls.append(f"find_sibling:{scope}")
        if scope == "off":
            return None
        owner = self.notebook_owners.get(source.notebook_id)
        for other in sorted(self.sources.values(), key=lambda s: -self._created[s.id]):
            if other.id == source.id or other.file_url != source.file_url:
                continue
            if other.status != SourceStatus.READY or not self.chunks.get(other.id):
                continue
            if scope == "same_owner" and (owner is None or self.notebook_owners.get(other.notebook_id) != owner):
                continue
            return other.id
        return None

    async def copy_chunks_from_sibling(self, target_id: str, sibling_id: str) -> int:
        copied = [dict(row, id=new_chunk_id()) for row in self.chunks.get(sibling_id, [])]
        if copied:
            self.chunks[target_id] = copied
        return len(copied)

    # ——— script jobs ———

    async def has_active_script_job(self, mode: str, script_source_id: str) -> bool:
        if "script_jobs" in self.missing_tables:
            raise QueueTableMissing("script_jobs")
        return self._active_job_exists(mode, script_source_id)

    def _active_job_exists(self, mode, script_source_id) -> bool:
        return any(
            j.status in (ScriptJobStatus.PENDING, ScriptJobStatus.RUNNING)
            and j.input.get("mode") == mode
            and j.input.get("scriptSourceId") == script_source_id
            for j in self.script_jobs.values()
        )

    async def insert_script_job(self, user_id: str, notebook_id: str, code: str, input: dict,
                                timeout_ms: int = 10_000, memory_limit_mb: int = 256) -> Optional[str]:
        # mirrors the partial unique index on active auto jobs
        if input.get("mode") == "auto_notebook_script" and self._active_job_exists(
                input["mode"], input.get("scriptSourceId")):
            return None
        job_id = new_job_id()
        self.script_jobs[job_id] = ScriptJob(
            id=job_id,
            user_id=user_id,
            notebook_id=notebook_id,
            code=code,
            input=json.loads(json.dumps(input)),
            status=ScriptJobStatus.PENDING,
            timeout_ms=timeout_ms,
            memory_limit_mb=memory_limit_mb,
        )
        self._created[job_id] = next(self._order)
        return job_id

    async def get_script_job(self, job_id: str) -> Optional[ScriptJob]:
        job = self.script_jobs.get(job_id)
        return dataclasses.replace(job) if job else None

    async def finish_script_job_success(self, job_id: str, output: dict) -> bool:
        return self._finish(job_id, ScriptJobStatus.SUCCEEDED, output, None)

    async def finish_script_job_failure(self, job_id: str, error_message: str, output: dict) -> bool:
        return self._finish(job_id, ScriptJobStatus.FAILED, output, error_message)

    def _finish(self, job_id, status, output, error_message) -> bool:
        job = self.script_jobs.get(job_id)
        if job is None or job.status != ScriptJobStatus.RUNNING:
            return False
        job.status = status
        job.output = output
        job.error_message = error_message
        return True


class FakeStorage:
    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self.objects = dict(objects or {})
        self.downloads: List[str] = []

    async def download(self, key: str) -> bytes:
        self.downloads.append(key)
        if key not in self.objects:
            raise StorageObjectNotFound(key)
        return self.objects[key]

    async def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        self.objects[key] = data


class FakeEmbeddingProvider:
    """Returns `dims`-long vectors; `fail` raises, `vector_dims` overrides the length"""

    def __init__(self, dims: int = DIMS):
        self.dims = dims
        self.calls: List[List[str]] = []
        self.fail: Optional[Exception] = None
        self.delay = 0.0

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise self.fail
        return [[float(len(t) % 7) + 0.1] * self.dims for t in texts]


class FakeSandbox:
    def __init__(self, result: Optional[SandboxResult] = None):
        self.result = result or SandboxResult(ok=True, result={"answer": 42}, stdout="hi\n", duration_ms=12)
        self.calls: List[dict] = []
        self.fail: Optional[Exception] = None

    async def execute(self, code, input=None, timeout_ms=None, memory_limit_mb=None) -> SandboxResult:
        self.calls.append({"code": code, "input": input, "timeout_ms": timeout_ms, "memory_limit_mb": memory_limit_mb})
        if self.fail:
            raise self.fail
        return self.result


class RecordingLoaderFactory:
    """Wraps the real MIME lookup and remembers every MIME it was asked for"""

    def __init__(self):
        self.requested: List[Optional[str]] = []

    def __call__(self, mime):
        self.requested.append(mime)
        return get_loader_for_mime(mime)


@pytest.fixture
def fake_queue():
    return FakeQueue()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def fake_sandbox():
    return FakeSandbox()


@pytest.fixture
def loader_factory():
    return RecordingLoaderFactory()


@pytest.fixture
def make_pipeline(fake_queue, fake_storage, fake_provider, loader_factory):
    """Build an IngestionPipeline over the fakes; keyword overrides pass through"""

    def _make(dims: int = DIMS, resize: bool = True, scope: str = "any", with_enqueuer: bool = True,
              chunker: Optional[ChunkingService] = None, metrics: Optional[MetricsCollector] = None):
        return IngestionPipeline(
            queue=fake_queue,
            storage=fake_storage,
            embedder=EmbeddingBatcher(fake_provider, batch_size=4, dimensions=dims, resize=resize),
            chunker=chunker or ChunkingService(chunk_size=600, chunk_overlap=100, min_chunk_size=20),
            dimensions=dims,
            enqueuer=DerivedJobEnqueuer(fake_queue) if with_enqueuer else None,
            metrics=metrics,
            sibling_recovery_scope=scope,
            loader_factory=loader_factory,
        )

    return _make
