# worker/queue.py

"""
Queue repository: every SQL statement the worker runs.

`sources` and `script_jobs` double as durable work queues. A row is claimed with a
single `UPDATE ... FROM (SELECT ... FOR UPDATE SKIP LOCKED)` so concurrent workers
never receive the same row; terminal updates are single-row writes.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional
import asyncpg

from worker.models import NewChunk, ScriptJob, Source

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 100


class QueueTableMissing(Exception):
    """The queue table for a job type does not exist (feature disabled)"""

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Queue table '{table}' does not exist")


def new_chunk_id() -> str:
    return f"chk_{uuid.uuid4()}"


def new_job_id() -> str:
    return f"job_{uuid.uuid4()}"


def vector_literal(values: List[float]) -> str:
    """pgvector text form, bound with a `::vector` cast"""
    return "[" + ",".join(str(float(v)) for v in values) + "]"


# ——— SQL ————————————————————————————————————————————————————————————————————————

CLAIM_SOURCE_SQL = """
    WITH candidate AS (
        SELECT id
        FROM sources
        WHERE status = 'PENDING'
        ORDER BY created_at ASC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
    )
    UPDATE sources AS s
    SET status = 'PROCESSING',
        error_message = NULL
    FROM candidate
    WHERE s.id = candidate.id
    RETURNING s.id
"""

CLAIM_SCRIPT_JOB_SQL = """
    WITH candidate AS (
        SELECT id
        FROM script_jobs
        WHERE status = 'PENDING'
        ORDER BY created_at ASC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
    )
    UPDATE script_jobs AS j
    SET status = 'RUNNING',
        started_at = NOW(),
        updated_at = NOW()
    FROM candidate
    WHERE j.id = candidate.id
    RETURNING j.id
"""

SOURCE_COLUMNS = "id, notebook_id, filename, file_url, mime, status, error_message, created_at"

SIBLING_SQL = """
    SELECT s.id
    FROM sources s
    WHERE s.file_url = $1
      AND s.id <> $2
      AND s.status = 'READY'
      AND EXISTS (SELECT 1 FROM source_chunks c WHERE c.source_id = s.id)
    ORDER BY s.created_at DESC
    LIMIT 1
"""

SIBLING_SAME_OWNER_SQL = """
    SELECT s.id
    FROM sources s
    JOIN notebooks n ON n.id = s.notebook_id
    WHERE s.file_url = $1
      AND s.id <> $2
      AND s.status = 'READY'
      AND EXISTS (SELECT 1 FROM source_chunks c WHERE c.source_id = s.id)
      AND n.user_id IS NOT NULL
      AND n.user_id = (SELECT user_id FROM notebooks WHERE id = $3)
    ORDER BY s.created_at DESC
    LIMIT 1
"""

INSERT_CHUNK_SQL = """
    INSERT INTO source_chunks (id, source_id, chunk_index, content, page_start, page_end, embedding)
    VALUES ($1, $2, $3, $4, $5, $6, $7::vector)
"""


class JobQueue:
    """asyncpg-backed queue repository shared by every executor"""

    def __init__(self, pool: asyncpg.Pool, insert_batch_size: int = INSERT_BATCH_SIZE):
        self.pool = pool
        self.insert_batch_size = max(1, insert_batch_size)

    # ——— Claims ———————————————————————————————————————————————————————————————————

    async def claim_next_source(self) -> Optional[str]:
        return await self._claim(CLAIM_SOURCE_SQL, "sources")

    async def claim_next_script_job(self) -> Optional[str]:
        return await self._claim(CLAIM_SCRIPT_JOB_SQL, "script_jobs")

    async def _claim(self, query: str, table: str) -> Optional[str]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval(query)
        except asyncpg.UndefinedTableError as e:
            raise QueueTableMissing(table) from e

    # ——— Sources ——————————————————————————————————————————————————————————————————

    async def get_source(self, source_id: str) -> Optional[Source]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {SOURCE_COLUMNS} FROM sources WHERE id = $1", source_id)
        return Source.from_record(row) if row else None

    async def mark_source_ready(self, source_id: str):
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE sources SET status = 'READY', error_message = NULL WHERE id = $1",
                source_id,
            )

    async def mark_source_failed(self, source_id: str, error_message: str):
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE sources SET status = 'FAILED', error_message = $2 WHERE id = $1",
                source_id, error_message,
            )

    async def list_ready_sources(self, notebook_id: str) -> List[Source]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""SELECT {SOURCE_COLUMNS} FROM sources
                    WHERE notebook_id = $1 AND status = 'READY'
                    ORDER BY created_at ASC""",
                notebook_id,
            )
        return [Source.from_record(row) for row in rows]

    async def get_notebook_owner(self, notebook_id: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT user_id FROM notebooks WHERE id = $1", notebook_id)

    # ——— Chunks ———————————————————————————————————————————————————————————————————

    async def insert_chunks(self, source_id: str, chunks: List[NewChunk]) -> int:
        """
        Replace the source's chunks with `chunks`, written in fixed-size batches.

        All batches share one transaction that first deletes earlier chunks, so a
        failed batch leaves nothing behind and a requeued source never duplicates
        chunk indices. Returns the number of rows written.
        """
        inserted = 0
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM source_chunks WHERE source_id = $1", source_id)
                for start in range(0, len(chunks), self.insert_batch_size):
                    batch = chunks[start:start + self.insert_batch_size]
                    await conn.executemany(INSERT_CHUNK_SQL, [
                        (
                            new_chunk_id(),
                            source_id,
                            chunk.chunk_index,
                            chunk.content,
                            chunk.page_start,
                            chunk.page_end,
                            vector_literal(chunk.embedding),
                        )
                        for chunk in batch
                    ])
                    inserted += len(batch)
        return inserted

    async def get_chunk_contents(self, source_id: str) -> List[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT content FROM source_chunks WHERE source_id = $1 ORDER BY chunk_index ASC",
                source_id,
            )
        return [row["content"] for row in rows]

    async def get_first_chunk_content(self, source_id: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT content FROM source_chunks WHERE source_id = $1 ORDER BY chunk_index ASC LIMIT 1",
                source_id,
            )

    # ——— Sibling recovery —————————————————————————————————————————————————————————

    async def find_ready_sibling(self, source: Source, scope: str = "any") -> Optional[str]:
        """A READY source with the same storage key, another id and at least one chunk"""
        if scope == "off" or not source.file_url:
            return None
        async with self.pool.acquire() as conn:
            if scope == "same_owner":
                return await conn.fetchval(SIBLING_SAME_OWNER_SQL, source.file_url, source.id, source.notebook_id)
            return await conn.fetchval(SIBLING_SQL, source.file_url, source.id)

    async def copy_chunks_from_sibling(self, target_id: str, sibling_id: str) -> int:
        """
        Replace the target's chunks with copies of the sibling's, in one transaction.

        Returns 0 (and writes nothing) when the sibling has no chunks left.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """SELECT chunk_index, content, page_start, page_end, embedding::text AS embedding
                       FROM source_chunks
                       WHERE source_id = $1
                       ORDER BY chunk_index ASC""",
                    sibling_id,
                )
                if rows:
                    await conn.execute("DELETE FROM source_chunks WHERE source_id = $1", target_id)
                    await conn.executemany(INSERT_CHUNK_SQL, [
                        (
                            new_chunk_id(),
                            target_id,
                            row["chunk_index"],
                            row["content"],
                            row["page_start"],
                            row["page_end"],
                            row["embedding"],
                        )
                        for row in rows
                    ])
        return len(rows)

    # ——— Script jobs ——————————————————————————————————————————————————————————————

    async def has_active_script_job(self, mode: str, script_source_id: str) -> bool:
        try:
            async with self.pool.acquire() as conn:
                found = await conn.fetchval(
                    """SELECT 1 FROM script_jobs
                       WHERE status IN ('PENDING', 'RUNNING')
                         AND input->>'mode' = $1
                         AND input->>'scriptSourceId' = $2
                       LIMIT 1""",
                    mode, script_source_id,
                )
        except asyncpg.UndefinedTableError as e:
            raise QueueTableMissing("script_jobs") from e
        return found is not None

    async def insert_script_job(self, user_id: str, notebook_id: str, code: str,
                                input: Dict[str, Any], timeout_ms: int = 10_000,
                                memory_limit_mb: int = 256) -> Optional[str]:
        """
        Insert a PENDING job; returns its id, or None when the active-auto-job unique
        index (see db/schema.sql) already holds an equivalent PENDING/RUNNING job.
        """
        job_id = new_job_id()
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """INSERT INTO script_jobs (id, user_id, notebook_id, code, input, status, timeout_ms, memory_limit_mb)
                   VALUES ($1, $2, $3, $4, $5::jsonb, 'PENDING', $6, $7)
                   ON CONFLICT DO NOTHING
                   RETURNING id""",
                job_id, user_id, notebook_id, code, json.dumps(input, ensure_ascii=False),
                timeout_ms, memory_limit_mb,
            )

    async def get_script_job(self, job_id: str) -> Optional[ScriptJob]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT id, user_id, notebook_id, code, input::text AS input, status, timeout_ms,
                          memory_limit_mb, output::text AS output, error_message
                   FROM script_jobs WHERE id = $1""",
                job_id,
            )
        return ScriptJob.from_record(row) if row else None

    async def finish_script_job_success(self, job_id: str, output: Dict[str, Any]) -> bool:
        return await self._finish_script_job(job_id, "SUCCEEDED", output, None)

    async def finish_script_job_failure(self, job_id: str, error_message: str,
                                        output: Dict[str, Any]) -> bool:
        return await self._finish_script_job(job_id, "FAILED", output, error_message)

    async def _finish_script_job(self, job_id: str, status: str, output: Dict[str, Any],
                                 error_message: Optional[str]) -> bool:
        """Terminal write, guarded so it lands at most once; False if the job was not RUNNING"""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """UPDATE script_jobs
                   SET status = $2, output = $3::jsonb, error_message = $4,
                       finished_at = NOW(), updated_at = NOW()
                   WHERE id = $1 AND status = 'RUNNING'""",
                job_id, status, json.dumps(output, ensure_ascii=False, default=str), error_message,
            )
        return result.endswith(" 1")
