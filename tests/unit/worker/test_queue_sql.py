"""Tests for JobQueue against a recording connection (no database)."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager

import asyncpg
import pytest

from worker.database import mask_dsn
from worker.models import NewChunk, Source, SourceStatus
from worker.queue import JobQueue, QueueTableMissing, new_chunk_id, new_job_id, vector_literal


class RecordingConnection:
    def __init__(self, fetchval=None, fetch=None, execute="UPDATE 1", error=None, executemany_error=None):
        self.fetchval_result = fetchval
        self.fetch_result = fetch or []
        self.execute_result = execute
        self.error = error
        self.executemany_error = executemany_error
        self.calls = []

    async def fetchval(self, query, *args):
        self.calls.append(("fetchval", query, args))
        if self.error:
            raise self.error
        return self.fetchval_result

    async def fetch(self, query, *args):
        self.calls.append(("fetch", query, args))
        return self.fetch_result

    async def fetchrow(self, query, *args):
        self.calls.append(("fetchrow", query, args))
        return None

    async def execute(self, query, *args):
        self.calls.append(("execute", query, args))
        return self.execute_result

    async def executemany(self, query, rows):
        self.calls.append(("executemany", query, list(rows)))
        if self.executemany_error:
            # (1-based call number, exception)
            fail_on, error = self.executemany_error
            if sum(c[0] == "executemany" for c in self.calls) == fail_on:
                raise error

    @asynccontextmanager
    async def transaction(self):
        self.calls.append(("begin", None, ()))
        try:
            yield
        except BaseException:
            self.calls.append(("rollback", None, ()))
            raise
        self.calls.append(("commit", None, ()))


class RecordingPool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def _queue(conn, **kwargs):
    return JobQueue(RecordingPool(conn), **kwargs)


def _source(**overrides):
    fields = dict(id="src_1", notebook_id="nb_1", filename="a.pdf", file_url="uploads/a.pdf",
                  mime="application/pdf", status=SourceStatus.PROCESSING)
    fields.update(overrides)
    return Source(**fields)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def test_vector_literal():
    assert vector_literal([1, 0.5, -2]) == "[1.0,0.5,-2.0]"
    assert vector_literal([]) == "[]"


def test_ids_are_prefixed_and_unique():
    assert new_chunk_id().startswith("chk_")
    assert new_job_id().startswith("job_")
    assert new_chunk_id() != new_chunk_id()


@pytest.mark.parametrize("dsn, expected", [
    ("postgresql://user:secret@db:5432/app", "postgresql://***:***@db:5432/app"),
    ("postgresql://db/app", "postgresql://db/app"),
    ("", ""),
])
def test_mask_dsn(dsn, expected):
    assert mask_dsn(dsn) == expected


# ------------------------------------------------------------------
# Claims
# ------------------------------------------------------------------


def test_claim_uses_skip_locked_and_returns_id():
    conn = RecordingConnection(fetchval="src_1")
    assert asyncio.run(_queue(conn).claim_next_source()) == "src_1"

    kind, query, _ = conn.calls[0]
    assert kind == "fetchval"
    assert "FOR UPDATE SKIP LOCKED" in query
    assert "ORDER BY created_at ASC" in query
    assert "SET status = 'PROCESSING'" in query


def test_claim_missing_table_raises_queue_table_missing():
    conn = RecordingConnection(error=asyncpg.UndefinedTableError('relation "script_jobs" does not exist'))
    with pytest.raises(QueueTableMissing) as excinfo:
        asyncio.run(_queue(conn).claim_next_script_job())
    assert excinfo.value.table == "script_jobs"


def test_has_active_script_job_missing_table():
    conn = RecordingConnection(error=asyncpg.UndefinedTableError("missing"))
    with pytest.raises(QueueTableMissing):
        asyncio.run(_queue(conn).has_active_script_job("auto_notebook_script", "src_py"))


# ------------------------------------------------------------------
# Writes
# ------------------------------------------------------------------


def test_insert_chunks_in_batches_with_vector_cast():
    conn = RecordingConnection()
    chunks = [NewChunk(i, f"c{i}", 1, 1, [0.1, 0.2]) for i in range(250)]

    assert asyncio.run(_queue(conn).insert_chunks("src_1", chunks)) == 250

    batches = [c for c in conn.calls if c[0] == "executemany"]
    assert [len(b[2]) for b in batches] == [100, 100, 50]
    assert "$7::vector" in batches[0][1]
    first = batches[0][2][0]
    assert first[1:] == ("src_1", 0, "c0", 1, 1, "[0.1,0.2]")


def test_insert_chunks_replaces_existing_rows_in_one_transaction():
    conn = RecordingConnection()
    chunks = [NewChunk(i, f"c{i}", 1, 1, [0.1]) for i in range(3)]

    asyncio.run(_queue(conn).insert_chunks("src_1", chunks))

    kinds = [c[0] for c in conn.calls]
    assert kinds == ["begin", "execute", "executemany", "commit"]
    assert conn.calls[1][1] == "DELETE FROM source_chunks WHERE source_id = $1"
    assert conn.calls[1][2] == ("src_1",)


def test_insert_chunks_failure_in_later_batch_rolls_back_everything():
    conn = RecordingConnection(executemany_error=(2, asyncpg.PostgresError("batch 2 rejected")))
    chunks = [NewChunk(i, f"c{i}", 1, 1, [0.1]) for i in range(150)]

    with pytest.raises(asyncpg.PostgresError):
        asyncio.run(_queue(conn).insert_chunks("src_1", chunks))

    kinds = [c[0] for c in conn.calls]
    assert kinds == ["begin", "execute", "executemany", "executemany", "rollback"]
    assert "commit" not in kinds


def test_copy_chunks_from_sibling_runs_in_transaction():
    rows = [{"chunk_index": 0, "content": "a", "page_start": 1, "page_end": 2, "embedding": "[0.1,0.2]"}]
    conn = RecordingConnection(fetch=rows)

    assert asyncio.run(_queue(conn).copy_chunks_from_sibling("src_new", "src_old")) == 1

    kinds = [c[0] for c in conn.calls]
    assert kinds == ["begin", "fetch", "execute", "executemany", "commit"]
    assert conn.calls[1][2] == ("src_old",)
    assert conn.calls[2][2] == ("src_new",)
    inserted = conn.calls[3][2][0]
    assert inserted[1:] == ("src_new", 0, "a", 1, 2, "[0.1,0.2]")


def test_copy_from_sibling_without_chunks_writes_nothing():
    conn = RecordingConnection(fetch=[])

    assert asyncio.run(_queue(conn).copy_chunks_from_sibling("src_new", "src_old")) == 0

    kinds = [c[0] for c in conn.calls]
    assert kinds == ["begin", "fetch", "commit"]


def test_find_ready_sibling_scopes():
    conn = RecordingConnection(fetchval="src_old")
    queue = _queue(conn)

    assert asyncio.run(queue.find_ready_sibling(_source(), "off")) is None
    assert conn.calls == []

    assert asyncio.run(queue.find_ready_sibling(_source(), "any")) == "src_old"
    assert conn.calls[-1][2] == ("uploads/a.pdf", "src_1")

    asyncio.run(queue.find_ready_sibling(_source(), "same_owner"))
    assert "JOIN notebooks" in conn.calls[-1][1]
    assert conn.calls[-1][2] == ("uploads/a.pdf", "src_1", "nb_1")


def test_insert_script_job_serializes_input():
    conn = RecordingConnection(fetchval="job_returned")
    job_id = asyncio.run(_queue(conn).insert_script_job("user_1", "nb_1", "TOOL_OUTPUT = 1", {"k": "ü"}))

    kind, query, args = conn.calls[0]
    assert kind == "fetchval"
    assert "$5::jsonb" in query
    assert "ON CONFLICT DO NOTHING" in query
    assert "RETURNING id" in query
    assert job_id == "job_returned"
    assert args[0].startswith("job_")
    assert json.loads(args[4]) == {"k": "ü"}
    assert args[5:] == (10_000, 256)


def test_insert_script_job_conflict_returns_none():
    # RETURNING yields no row when the active auto job index rejects the insert
    conn = RecordingConnection(fetchval=None)

    assert asyncio.run(_queue(conn).insert_script_job("user_1", "nb_1", "x = 1", {})) is None


@pytest.mark.parametrize("status_tag, expected", [("UPDATE 1", True), ("UPDATE 0", False)])
def test_finish_reports_whether_row_was_running(status_tag, expected):
    conn = RecordingConnection(execute=status_tag)
    queue = _queue(conn)

    assert asyncio.run(queue.finish_script_job_success("job_1", {"result": 1})) is expected
    assert asyncio.run(queue.finish_script_job_failure("job_1", "boom", {})) is expected
    assert all("status = 'RUNNING'" in c[1] for c in conn.calls)
