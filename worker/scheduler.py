# worker/scheduler.py

"""
Claim loop.

Each tick fills free concurrency slots by claiming queue rows, preferring sources
over script jobs, and runs every claimed job as an asyncio task. Between ticks the
loop sleeps for a short busy interval while work is in flight, otherwise for the
configured poll interval. Stopping ends claiming; in-flight jobs are drained, never
cancelled.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set, Tuple

from worker.queue import JobQueue, QueueTableMissing

logger = logging.getLogger(__name__)

BUSY_INTERVAL_MS = 200

JobRunner = Callable[[str], Awaitable[object]]
SleepFn = Callable[[float], Awaitable[None]]


class ClaimScheduler:
    def __init__(self,
                 queue: JobQueue,
                 run_source: JobRunner,
                 run_script_job: Optional[JobRunner] = None,
                 concurrency: int = 1,
                 poll_interval_ms: int = 1200,
                 busy_interval_ms: int = BUSY_INTERVAL_MS,
                 sleep: Optional[SleepFn] = None,
                 sources_enabled: bool = True,
                 scripts_enabled: bool = True):
        self.queue = queue
        self.run_source = run_source
        self.run_script_job = run_script_job
        self.concurrency = max(1, concurrency)
        self.poll_interval_ms = poll_interval_ms
        self.busy_interval_ms = busy_interval_ms
        self.sources_enabled = sources_enabled
        self.scripts_enabled = scripts_enabled and run_script_job is not None

        self.in_flight: Set[asyncio.Task] = set()
        self.peak_in_flight = 0
        self.started_jobs = 0
        self.stop_requested = False
        self.stop_reason: Optional[str] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._sleep = sleep or self._sleep_until_stopped

    # ——— Loop control —————————————————————————————————————————————————————————————

    def request_stop(self, reason: str = "stop requested"):
        """Idempotent; wakes the poll sleep"""
        if self.stop_requested:
            return
        self.stop_requested = True
        self.stop_reason = reason
        logger.info(f"🛑 Stop requested ({reason}); {len(self.in_flight)} job(s) in flight will be drained")
        if self._stop_event is not None:
            self._stop_event.set()

    def next_delay(self) -> float:
        """Seconds to sleep before the next tick"""
        interval_ms = self.busy_interval_ms if self.in_flight else self.poll_interval_ms
        return interval_ms / 1000

    async def run(self):
        self._ensure_stop_event()
        logger.info(f"🚀 Claim loop started (concurrency={self.concurrency}, poll={self.poll_interval_ms}ms, "
                    f"sources={'on' if self.sources_enabled else 'off'}, scripts={'on' if self.scripts_enabled else 'off'})")
        while not self.stop_requested:
            await self.tick()
            if self.stop_requested:
                break
            await self._sleep(self.next_delay())
        await self.drain()
        logger.info(f"👋 Claim loop stopped after {self.started_jobs} job(s), peak concurrency {self.peak_in_flight}")

    async def drain(self):
        """Wait for every in-flight job; exceptions are collected and logged"""
        if not self.in_flight:
            return
        logger.info(f"⏳ Draining {len(self.in_flight)} in-flight job(s)...")
        results = await asyncio.gather(*list(self.in_flight), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"❌ In-flight job raised during drain: {result!r}")

    # ——— Claiming ————————————————————————————————————————————————————————————————

    async def tick(self) -> int:
        """Fill free slots; returns the number of jobs started"""
        started = 0
        while len(self.in_flight) < self.concurrency and not self.stop_requested:
            claimed = await self._claim_next()
            if claimed is None:
                break
            kind, job_id = claimed
            self._start(kind, job_id)
            started += 1
        return started

    async def _claim_next(self) -> Optional[Tuple[str, str]]:
        if self.sources_enabled:
            source_id = await self._try_claim("source", self.queue.claim_next_source)
            if source_id:
                return "source", source_id
        if self.scripts_enabled:
            job_id = await self._try_claim("script", self.queue.claim_next_script_job)
            if job_id:
                return "script", job_id
        return None

    async def _try_claim(self, kind: str, claim: Callable[[], Awaitable[Optional[str]]]) -> Optional[str]:
        try:
            return await claim()
        except QueueTableMissing as e:
            self._disable(kind, e)
        except Exception as e:
            logger.error(f"❌ Failed to claim next {kind}: {e}")
        return None

    def _disable(self, kind: str, error: QueueTableMissing):
        # Logged once: the flag flips and this kind is never claimed again
        if kind == "source" and self.sources_enabled:
            self.sources_enabled = False
            logger.warning(f"⚠️ {error}; source ingestion disabled for this process")
        elif kind == "script" and self.scripts_enabled:
            self.scripts_enabled = False
            logger.warning(f"⚠️ {error}; script jobs disabled for this process")

    def _start(self, kind: str, job_id: str):
        runner = self.run_source if kind == "source" else self.run_script_job
        tag = f"[SRC-{job_id[:8]}]" if kind == "source" else f"[JOB-{job_id[:8]}]"
        logger.info(f"🎯 {tag} Claimed {kind}")

        task = asyncio.create_task(runner(job_id), name=f"{kind}:{job_id}")
        self.in_flight.add(task)
        task.add_done_callback(self._on_done)
        self.started_jobs += 1
        self.peak_in_flight = max(self.peak_in_flight, len(self.in_flight))

    def _on_done(self, task: asyncio.Task):
        self.in_flight.discard(task)
        if task.cancelled():
            logger.warning(f"⚠️ Task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ Task {task.get_name()} crashed: {error!r}")

    # ——— Sleeping ————————————————————————————————————————————————————————————————

    def _ensure_stop_event(self):
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
            if self.stop_requested:
                self._stop_event.set()

    async def _sleep_until_stopped(self, delay: float):
        self._ensure_stop_event()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
