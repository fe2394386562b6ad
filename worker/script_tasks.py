# worker/script_tasks.py

import logging
import traceback
from typing import Optional

from utils.metrics import MetricsCollector, Timer
from utils.sandbox.python_sandbox import PythonSandbox
from worker.models import ScriptJobStatus
from worker.payloads import AutoNotebookScript, SandboxResult, decode_job_input
from worker.queue import JobQueue

logger = logging.getLogger(__name__)


class ScriptJobExecutor:
    """Runs one claimed (RUNNING) script job in the sandbox and writes its terminal state"""

    def __init__(self, queue: JobQueue, sandbox: PythonSandbox,
                 metrics: Optional[MetricsCollector] = None):
        self.queue = queue
        self.sandbox = sandbox
        self.metrics = metrics

    async def run(self, job_id: str) -> Optional[ScriptJobStatus]:
        tag = f"[JOB-{job_id[:8]}]"
        status: Optional[ScriptJobStatus] = None
        detail = None

        with Timer() as timer:
            try:
                job = await self.queue.get_script_job(job_id)
                if job is None or job.status != ScriptJobStatus.RUNNING:
                    logger.info(f"⏭️ {tag} Not RUNNING (or gone), skipping")
                    return None

                payload = decode_job_input(job.input)
                if isinstance(payload, AutoNotebookScript):
                    logger.info(f"🐍 {tag} Running auto script for source {payload.script_source_id} "
                                f"({len(payload.notebook_context)} context snippets)")
                else:
                    logger.info(f"🐍 {tag} Running submitted script")

                result = await self.sandbox.execute(
                    code=job.code,
                    input=payload.to_json(),
                    timeout_ms=job.timeout_ms,
                    memory_limit_mb=job.memory_limit_mb,
                )
            except Exception as e:
                logger.error(f"❌ {tag} Script orchestration failed: {e}", exc_info=True)
                result = SandboxResult(
                    ok=False,
                    error=str(e) or type(e).__name__,
                    traceback=traceback.format_exc(),
                )
                result.duration_ms = int(timer.current_ms())

            try:
                if result.ok:
                    await self.queue.finish_script_job_success(job_id, result.to_output())
                    status = ScriptJobStatus.SUCCEEDED
                    logger.info(f"✅ {tag} SUCCEEDED in {result.duration_ms}ms")
                else:
                    detail = result.error or "Execution failed"
                    await self.queue.finish_script_job_failure(job_id, detail, result.to_output())
                    status = ScriptJobStatus.FAILED
                    logger.warning(f"⚠️ {tag} FAILED in {result.duration_ms}ms: {detail}")
            except Exception as e:
                logger.error(f"❌ {tag} Could not write terminal state: {e}", exc_info=True)

        if status is not None and self.metrics:
            self.metrics.record_job("script", job_id, status.value, timer.elapsed_ms, detail=detail)
        return status
