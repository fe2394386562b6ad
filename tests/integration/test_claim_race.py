"""Concurrent claims against a live PostgreSQL; skipped unless TEST_DATABASE_URL is set."""

from __future__ import annotations

import asyncio
import os
import uuid

import asyncpg
import pytest

from worker.queue import JobQueue

DSN = os.getenv("TEST_DATABASE_URL")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not DSN, reason="TEST_DATABASE_URL not set"),
]

SCHEMA_SQL = """
    CREATE TABLE sources (
        id             text PRIMARY KEY NOT NULL,
        notebook_id    text NOT NULL,
        filename       text NOT NULL,
        file_url       text NOT NULL,
        mime           text,
        status         text DEFAULT 'PENDING' NOT NULL,
        error_message  text,
        created_at     timestamp with time zone DEFAULT clock_timestamp() NOT NULL
    )
"""


async def _with_scratch_schema(body):
    schema = f"claim_race_{uuid.uuid4().hex[:10]}"
    admin = await asyncpg.connect(DSN)
    try:
        await admin.execute(f"CREATE SCHEMA {schema}")
        pool = await asyncpg.create_pool(DSN, min_size=2, max_size=8, statement_cache_size=0,
                                         server_settings={"search_path": schema})
        try:
            async with pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
            return await body(pool)
        finally:
            await pool.close()
    finally:
        await admin.execute(f"DROP SCHEMA {schema} CASCADE")
        await admin.close()


def test_each_pending_source_is_claimed_exactly_once():
    async def body(pool):
        async with pool.acquire() as conn:
            for i in range(20):
                await conn.execute(
                    "INSERT INTO sources (id, notebook_id, filename, file_url) VALUES ($1, 'nb', 'f.txt', $2)",
                    f"src_{i:02d}", f"uploads/{i}",
                )
        queue = JobQueue(pool)

        async def claimer():
            claimed = []
            while True:
                source_id = await queue.claim_next_source()
                if source_id is None:
                    return claimed
                claimed.append(source_id)

        results = await asyncio.gather(*(claimer() for _ in range(6)))
        async with pool.acquire() as conn:
            statuses = {row["status"] for row in await conn.fetch("SELECT status FROM sources")}
        return results, statuses

    results, statuses = asyncio.run(_with_scratch_schema(body))
    flat = [source_id for claimed in results for source_id in claimed]
    assert sorted(flat) == [f"src_{i:02d}" for i in range(20)]
    assert statuses == {"PROCESSING"}


def test_claims_oldest_first():
    async def body(pool):
        async with pool.acquire() as conn:
            for source_id in ("src_a", "src_b", "src_c"):
                await conn.execute(
                    "INSERT INTO sources (id, notebook_id, filename, file_url) VALUES ($1, 'nb', 'f.txt', 'k')",
                    source_id,
                )
        queue = JobQueue(pool)
        return [await queue.claim_next_source() for _ in range(4)]

    assert asyncio.run(_with_scratch_schema(body)) == ["src_a", "src_b", "src_c", None]
