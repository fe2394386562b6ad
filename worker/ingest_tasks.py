# worker/ingest_tasks.py

"""
Ingestion pipeline: download → parse → chunk → embed → persist, one Source at a time.

Every run ends in a terminal state. Success marks the Source READY and triggers the
derived-job enqueuer; any failure marks it FAILED with a readable `error_message`.
A missing storage object is first answered by sibling recovery: another READY
Source with the same storage key donates its chunks.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Sequence, Tuple

from utils.chunking import ChunkingService, ChunkResult
from utils.document_loaders.base import BaseDocumentLoader, PageInfo
from utils.document_loaders.loader_factory import get_loader_for_mime, is_script_source
from utils.llm_clients.embedding_batcher import EmbeddingBatcher
from utils.metrics import MetricsCollector, Timer
from utils.storage import StorageAdapter, StorageObjectNotFound
from worker.models import INGESTIBLE_STATUSES, NewChunk, Source, SourceStatus
from worker.queue import JobQueue

logger = logging.getLogger(__name__)

SCRIPT_CHUNK_SIZE = 24_000
MAX_ERROR_MESSAGE_CHARS = 2000

STORAGE_CONFIG_HINT = (
    "verify that the uploader and the worker share the same storage configuration "
    "(STORAGE_TYPE, S3_BUCKET, S3_ENDPOINT, S3_REGION, UPLOADS_DIR)"
)


class SourceNotFound(Exception):
    """The claimed Source row no longer exists"""

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Source {source_id} not found")


# ——— Helpers ————————————————————————————————————————————————————————————————————

def format_worker_error(error: BaseException, sibling_recovery_scope: str = "any") -> str:
    """Message stored in `sources.error_message`; not-found wording follows the recovery scope"""
    if isinstance(error, StorageObjectNotFound):
        if sibling_recovery_scope == "off":
            recovery = "Sibling recovery is disabled (SIBLING_RECOVERY_SCOPE=off)"
        elif sibling_recovery_scope == "same_owner":
            recovery = "No READY source of the same owner with the same file was available to recover from"
        else:
            recovery = "No READY source with the same file was available to recover from"
        return f"File not found in object storage (key: {error.key}). {recovery}; {STORAGE_CONFIG_HINT}."
    message = str(error).strip() or type(error).__name__
    return message[:MAX_ERROR_MESSAGE_CHARS]


def page_range(start_offset: int, end_offset: int, pages: Sequence[PageInfo]) -> Tuple[int, int]:
    """
    Map a chunk span to (page_start, page_end).

    page_start is the page whose [start, end) contains `start_offset`; page_end is the
    page with start < `end_offset` <= end. Either falls back to 1.
    """
    page_start = 1
    page_end = 1
    for page in pages:
        if page.start_offset <= start_offset < page.end_offset:
            page_start = page.page_number
            break
    for page in pages:
        if page.start_offset < end_offset <= page.end_offset:
            page_end = page.page_number
            break
    return page_start, page_end


# ——— Pipeline ———————————————————————————————————————————————————————————————————

class IngestionPipeline:
    def __init__(self,
                 queue: JobQueue,
                 storage: StorageAdapter,
                 embedder: EmbeddingBatcher,
                 chunker: ChunkingService,
                 dimensions: int,
                 enqueuer=None,
                 metrics: Optional[MetricsCollector] = None,
                 sibling_recovery_scope: str = "any",
                 loader_factory: Callable[[Optional[str]], BaseDocumentLoader] = get_loader_for_mime):
        self.queue = queue
        self.storage = storage
        self.embedder = embedder
        self.chunker = chunker
        self.dimensions = dimensions
        self.enqueuer = enqueuer
        self.metrics = metrics
        self.sibling_recovery_scope = sibling_recovery_scope
        self.loader_factory = loader_factory

    async def run(self, source_id: str) -> Optional[SourceStatus]:
        """Process one claimed Source; never raises"""
        tag = f"[SRC-{source_id[:8]}]"
        status: Optional[SourceStatus] = None
        detail = None
        with Timer() as timer:
            try:
                status = await self.process_source(source_id)
            except Exception as e:
                detail = format_worker_error(e, self.sibling_recovery_scope)
                logger.error(f"❌ {tag} Ingestion failed: {detail}", exc_info=not isinstance(e, StorageObjectNotFound))
                try:
                    await self.queue.mark_source_failed(source_id, detail)
                    status = SourceStatus.FAILED
                except Exception as mark_error:
                    logger.error(f"❌ {tag} Could not mark source FAILED: {mark_error}")

        if status is not None and self.metrics:
            self.metrics.record_job("ingest", source_id, status.value, timer.elapsed_ms, detail=detail)
        logger.info(f"⏱️ {tag} Finished in {timer.elapsed_ms:.0f}ms → {status.value if status else 'skipped'}")
        return status

    async def process_source(self, source_id: str) -> Optional[SourceStatus]:
        """
        Run the pipeline for one Source.

        Returns the terminal status written, or None when the row was not eligible
        (already READY/FAILED, i.e. a duplicate dispatch). Raises on failure; `run`
        turns exceptions into FAILED.
        """
        source = await self.queue.get_source(source_id)
        if source is None:
            raise SourceNotFound(source_id)
        if source.status not in INGESTIBLE_STATUSES:
            logger.info(f"⏭️ {source.tag} Status is {source.status.value}, skipping")
            return None

        logger.info(f"📥 {source.tag} Ingesting '{source.filename}' ({source.mime or 'unknown mime'})")

        # 1) Download, or recover from a sibling when the object is gone
        try:
            data = await self.storage.download(source.file_url)
        except StorageObjectNotFound:
            logger.warning(f"⚠️ {source.tag} Storage object missing for key '{source.file_url}', trying sibling recovery")
            if await self.recover_from_sibling(source):
                return SourceStatus.READY
            raise
        logger.info(f"📦 {source.tag} Downloaded {len(data):,} bytes")

        # 2) Parse (blocking libraries, so off the event loop)
        loader = self.loader_factory(source.mime)
        parsed = await asyncio.to_thread(loader.load_from_buffer, data, True)
        logger.info(f"📄 {source.tag} Parsed {len(parsed.content):,} chars across {len(parsed.pages)} pages with {type(loader).__name__}")

        # 3) Chunk
        chunks = self.chunk_text(source, parsed.content)
        if not chunks:
            await self.queue.mark_source_failed(source.id, "No chunks generated")
            logger.warning(f"⚠️ {source.tag} No chunks generated")
            return SourceStatus.FAILED

        # 4) Embed
        with Timer() as embed_timer:
            vectors = await self.embedder.embed([c.content for c in chunks])
        logger.info(f"🤖 {source.tag} Embedded {len(chunks)} chunks in {embed_timer.elapsed_ms:.0f}ms")

        # 5) Keep only chunks with a valid embedding
        rows = self.build_rows(chunks, vectors, parsed.pages)
        dropped = len(chunks) - len(rows)
        if dropped:
            logger.warning(f"⚠️ {source.tag} Dropped {dropped} chunks without a {self.dimensions}-dim embedding")
            if self.metrics:
                self.metrics.increment("chunks_dropped", dropped)
        if not rows:
            await self.queue.mark_source_failed(
                source.id, f"No chunks inserted (embedding dimension mismatch, expected {self.dimensions})"
            )
            return SourceStatus.FAILED

        # 6) Persist and finish
        inserted = await self.queue.insert_chunks(source.id, rows)
        await self.queue.mark_source_ready(source.id)
        logger.info(f"✅ {source.tag} READY with {inserted} chunks")
        if self.metrics:
            self.metrics.increment("chunks_inserted", inserted)

        await self._run_enqueuer(source)
        return SourceStatus.READY

    def chunk_text(self, source: Source, content: str) -> List[ChunkResult]:
        if is_script_source(source.filename, source.mime):
            return self.chunker.chunk_fixed(content, chunk_size=SCRIPT_CHUNK_SIZE, chunk_overlap=0)
        return self.chunker.chunk(content)

    def build_rows(self, chunks: List[ChunkResult], vectors: List[List[float]],
                   pages: Sequence[PageInfo]) -> List[NewChunk]:
        rows: List[NewChunk] = []
        for i, chunk in enumerate(chunks):
            vector = vectors[i] if i < len(vectors) else []
            if len(vector) != self.dimensions:
                continue
            page_start, page_end = page_range(chunk.start_offset, chunk.end_offset, pages)
            rows.append(NewChunk(
                chunk_index=chunk.index,
                content=chunk.content,
                page_start=page_start,
                page_end=page_end,
                embedding=vector,
            ))
        return rows

    # ——— Sibling recovery —————————————————————————————————————————————————————————

    async def recover_from_sibling(self, source: Source) -> bool:
        """Copy chunks from a READY Source sharing the storage key; True when recovered"""
        if self.sibling_recovery_scope == "off":
            logger.info(f"🚫 {source.tag} Sibling recovery disabled")
            return False

        sibling_id = await self.queue.find_ready_sibling(source, self.sibling_recovery_scope)
        if not sibling_id:
            logger.warning(f"🔍 {source.tag} No READY sibling shares key '{source.file_url}'")
            return False

        copied = await self.queue.copy_chunks_from_sibling(source.id, sibling_id)
        if copied == 0:
            logger.warning(f"⚠️ {source.tag} Sibling {sibling_id} had no chunks left to copy")
            return False
        await self.queue.mark_source_ready(source.id)
        logger.info(f"♻️ {source.tag} Recovered {copied} chunks from sibling {sibling_id}")
        if self.metrics:
            self.metrics.increment("sibling_recoveries")

        await self._run_enqueuer(source)
        return True

    async def _run_enqueuer(self, source: Source):
        if self.enqueuer is None:
            return
        try:
            await self.enqueuer.enqueue_for(source.id, source.notebook_id)
        except Exception as e:
            logger.warning(f"⚠️ {source.tag} Derived-job enqueue failed (ignored): {e}")
