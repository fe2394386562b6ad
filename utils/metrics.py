"""
# metrics.py
Per-job telemetry for the worker process
"""

import time
import threading
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from collections import defaultdict, deque
import psutil
import logging

logger = logging.getLogger(__name__)


class Timer:
    """High-precision timer for performance measurements"""

    def __init__(self):
        self.start_time = None
        self.end_time = None
        self.elapsed_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        self.elapsed_ms = (self.end_time - self.start_time) * 1000

    def current_ms(self) -> float:
        """Elapsed time so far, usable inside the `with` block"""
        if self.start_time is None:
            return 0.0
        return (time.perf_counter() - self.start_time) * 1000


class MetricsCollector:
    """Job outcome metrics with thread safety"""

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self._lock = threading.Lock()

        self.job_metrics = deque(maxlen=max_history)
        self.counters = defaultdict(int)

    def record_job(self, kind: str, job_id: str, status: str, elapsed_ms: float,
                   chunk_count: int = 0, detail: Optional[str] = None):
        """Record one finished job (ingestion or script)"""
        with self._lock:
            self.job_metrics.append({
                'timestamp': datetime.now(timezone.utc),
                'kind': kind,
                'job_id': job_id,
                'status': status,
                'elapsed_ms': elapsed_ms,
                'chunk_count': chunk_count,
                'detail': detail,
            })
            self.counters[f'{kind}_total'] += 1
            self.counters[f'{kind}_{status.lower()}'] += 1

    def increment(self, name: str, amount: int = 1):
        with self._lock:
            self.counters[name] += amount

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate counters plus average durations per job kind"""
        with self._lock:
            durations: Dict[str, list] = defaultdict(list)
            for m in self.job_metrics:
                durations[m['kind']].append(m['elapsed_ms'])

            summary: Dict[str, Any] = {'counters': dict(self.counters)}
            for kind, values in durations.items():
                total = self.counters.get(f'{kind}_total', 0)
                failed = self.counters.get(f'{kind}_failed', 0)
                summary[kind] = {
                    'jobs': total,
                    'avg_elapsed_ms': sum(values) / len(values),
                    'success_rate': ((total - failed) / total * 100) if total > 0 else 0,
                }

        summary['memory_mb'] = self._process_memory_mb()
        return summary

    @staticmethod
    def _process_memory_mb() -> float:
        try:
            return psutil.Process().memory_info().rss / (1024 * 1024)
        except psutil.Error as e:
            logger.debug(f"Could not read process memory: {e}")
            return 0.0
