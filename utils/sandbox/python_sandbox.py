# utils/sandbox/python_sandbox.py

"""
Runs untrusted Python in a child interpreter with hard time and memory limits.

The child is `runner.py` from this package; it prints a single JSON line that is
parsed back into a `SandboxResult`.
"""

import asyncio
import json
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

RUNNER_PATH = Path(__file__).with_name("runner.py")

MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 60_000
DEFAULT_TIMEOUT_MS = 10_000
MIN_MEMORY_MB = 64
MAX_MEMORY_MB = 1_024
DEFAULT_MEMORY_MB = 256
KILL_GRACE_MS = 500
MAX_STREAM_CHARS = 24_000


@dataclass
class SandboxResult:
    """Outcome of one sandbox execution"""
    ok: bool
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    result: Any = None
    error: Optional[str] = None
    traceback: Optional[str] = None

    def to_output(self) -> Dict[str, Any]:
        """Payload persisted into `script_jobs.output`"""
        if self.ok:
            return {
                "result": self.result,
                "stdout": self.stdout,
                "stderr": self.stderr,
                "durationMs": self.duration_ms,
            }
        output: Dict[str, Any] = {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "durationMs": self.duration_ms,
        }
        if self.traceback:
            output["traceback"] = self.traceback
        return output


def clamp_timeout_ms(value: Optional[int]) -> int:
    return min(MAX_TIMEOUT_MS, max(MIN_TIMEOUT_MS, int(value or DEFAULT_TIMEOUT_MS)))


def clamp_memory_mb(value: Optional[int]) -> int:
    return min(MAX_MEMORY_MB, max(MIN_MEMORY_MB, int(value or DEFAULT_MEMORY_MB)))


async def _read_capped(stream: Optional[asyncio.StreamReader], limit: int = MAX_STREAM_CHARS) -> str:
    """Drain a pipe completely, keeping only the first `limit` characters"""
    if stream is None:
        return ""
    kept = bytearray()
    while True:
        block = await stream.read(65536)
        if not block:
            break
        if len(kept) < limit * 4:
            kept.extend(block)
    return kept.decode("utf-8", errors="replace")[:limit]


def parse_runner_output(stdout: str) -> Optional[Dict[str, Any]]:
    """The runner's JSON is the last non-empty stdout line"""
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


class PythonSandbox:
    """`execute(code, input, timeout_ms, memory_limit_mb) -> SandboxResult`"""

    def __init__(self, python_bin: str = "python3", runner_path: Path = RUNNER_PATH):
        self.python_bin = (python_bin or "").strip() or "python3"
        self.runner_path = runner_path

    def _resolve_interpreter(self) -> str:
        # The child gets a minimal env without PATH, so resolve the binary here
        return shutil.which(self.python_bin) or self.python_bin

    async def execute(self, code: str, input: Optional[Dict[str, Any]] = None,
                      timeout_ms: Optional[int] = None,
                      memory_limit_mb: Optional[int] = None) -> SandboxResult:
        timeout_ms = clamp_timeout_ms(timeout_ms)
        memory_limit_mb = clamp_memory_mb(memory_limit_mb)
        start = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        with tempfile.TemporaryDirectory(prefix="notebook-py-") as tmp:
            workdir = Path(tmp)
            script_path = workdir / "script.py"
            input_path = workdir / "input.json"
            script_path.write_text(code, encoding="utf-8")
            input_path.write_text(json.dumps(input or {}, ensure_ascii=False), encoding="utf-8")

            try:
                process = await asyncio.create_subprocess_exec(
                    self._resolve_interpreter(), "-I", str(self.runner_path),
                    str(script_path), str(input_path), str(timeout_ms), str(memory_limit_mb),
                    cwd=str(workdir),
                    env={"PYTHONUTF8": "1"},
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                logger.error(f"❌ Could not start sandbox interpreter '{self.python_bin}': {e}")
                return SandboxResult(
                    ok=False,
                    error="Python runtime not available. Please install python3 and set PYTHON_BIN if needed.",
                    duration_ms=elapsed_ms(),
                )

            stdout_task = asyncio.create_task(_read_capped(process.stdout))
            stderr_task = asyncio.create_task(_read_capped(process.stderr))
            timed_out = False
            try:
                await asyncio.wait_for(process.wait(), timeout=(timeout_ms + KILL_GRACE_MS) / 1000)
            except asyncio.TimeoutError:
                timed_out = True
                process.kill()
                await process.wait()

            stdout, stderr = await asyncio.gather(stdout_task, stderr_task)

        duration_ms = elapsed_ms()
        if timed_out:
            logger.warning(f"⏰ Sandbox killed after {duration_ms}ms (limit {timeout_ms}ms)")
            return SandboxResult(
                ok=False,
                error=f"Execution timed out after {timeout_ms}ms",
                stdout=stdout,
                stderr=stderr,
                duration_ms=duration_ms,
            )

        parsed = parse_runner_output(stdout)
        if parsed is None:
            returncode = process.returncode
            exit_code = returncode if returncode is not None and returncode >= 0 else "null"
            signal_ = -returncode if returncode is not None and returncode < 0 else "null"
            return SandboxResult(
                ok=False,
                error=f"Sandbox execution failed (exit={exit_code}, signal={signal_})",
                stdout=stdout,
                stderr=stderr,
                duration_ms=duration_ms,
            )

        if parsed.get("ok"):
            return SandboxResult(
                ok=True,
                result=parsed.get("result"),
                stdout=str(parsed.get("stdout") or ""),
                stderr=str(parsed.get("stderr") or ""),
                duration_ms=duration_ms,
            )

        return SandboxResult(
            ok=False,
            error=str(parsed.get("error") or "Execution failed"),
            traceback=str(parsed["traceback"]) if parsed.get("traceback") else None,
            stdout=str(parsed.get("stdout") or ""),
            stderr=str(parsed.get("stderr") or ""),
            duration_ms=duration_ms,
        )
