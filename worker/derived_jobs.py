# worker/derived_jobs.py

import logging
from typing import List

from utils.document_loaders.loader_factory import is_script_source
from worker.models import Source
from worker.payloads import (
    AUTO_NOTEBOOK_SCRIPT_MODE,
    MAX_CONTEXT_SNIPPETS,
    MAX_SNIPPET_CHARS,
    AutoNotebookScript,
    ContextSnippet,
)
from worker.queue import JobQueue, QueueTableMissing

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_MEMORY_LIMIT_MB = 256


class DerivedJobEnqueuer:
    """
    After a Source becomes READY, queue one script job per Python source in the
    notebook, unless that script already has a PENDING/RUNNING auto job.

    Best-effort: errors are logged and swallowed, the ingestion result stands.
    """

    def __init__(self, queue: JobQueue, timeout_ms: int = DEFAULT_TIMEOUT_MS,
                 memory_limit_mb: int = DEFAULT_MEMORY_LIMIT_MB):
        self.queue = queue
        self.timeout_ms = timeout_ms
        self.memory_limit_mb = memory_limit_mb

    async def enqueue_for(self, trigger_source_id: str, notebook_id: str) -> int:
        """Returns the number of jobs created"""
        tag = f"[SRC-{trigger_source_id[:8]}]"
        try:
            return await self._enqueue(trigger_source_id, notebook_id, tag)
        except QueueTableMissing as e:
            logger.info(f"⏭️ {tag} Skipping auto script jobs: {e}")
        except Exception as e:
            logger.error(f"❌ {tag} Auto script enqueue failed: {e}", exc_info=True)
        return 0

    async def _enqueue(self, trigger_source_id: str, notebook_id: str, tag: str) -> int:
        ready_sources = await self.queue.list_ready_sources(notebook_id)
        scripts = [s for s in ready_sources if is_script_source(s.filename, s.mime)]
        if not scripts:
            return 0

        owner_id = await self.queue.get_notebook_owner(notebook_id)
        if not owner_id:
            logger.info(f"⏭️ {tag} Notebook {notebook_id} has no owner, no auto script jobs")
            return 0

        context = await self._build_context([s for s in ready_sources if not is_script_source(s.filename, s.mime)])

        created = 0
        for script in scripts:
            if await self.queue.has_active_script_job(AUTO_NOTEBOOK_SCRIPT_MODE, script.id):
                logger.debug(f"{tag} Script {script.id} already has an active auto job")
                continue

            code = "".join(await self.queue.get_chunk_contents(script.id))
            if not code.strip():
                logger.warning(f"⚠️ {tag} Script source {script.id} has no stored code, skipping")
                continue

            payload = AutoNotebookScript(
                script_source_id=script.id,
                trigger_source_id=trigger_source_id,
                notebook_context=context,
            )
            job_id = await self.queue.insert_script_job(
                user_id=owner_id,
                notebook_id=notebook_id,
                code=code,
                input=payload.to_json(),
                timeout_ms=self.timeout_ms,
                memory_limit_mb=self.memory_limit_mb,
            )
            if job_id is None:
                logger.debug(f"{tag} Script {script.id} was queued concurrently by another worker")
                continue
            created += 1
            logger.info(f"🧪 {tag} Queued auto script job {job_id} for '{script.filename}'")

        return created

    async def _build_context(self, sources: List[Source]) -> List[ContextSnippet]:
        snippets: List[ContextSnippet] = []
        for source in sources:
            if len(snippets) >= MAX_CONTEXT_SNIPPETS:
                break
            content = await self.queue.get_first_chunk_content(source.id)
            if not content:
                continue
            snippets.append(ContextSnippet(
                source_id=source.id,
                filename=source.filename,
                snippet=content[:MAX_SNIPPET_CHARS],
            ))
        return snippets
