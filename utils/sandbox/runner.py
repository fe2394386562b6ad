#!/usr/bin/env python3
# utils/sandbox/runner.py

"""
Sandbox entry point, executed in a child interpreter:

    python -I runner.py <script_path> <input_path> <timeout_ms> <memory_mb>

Applies resource limits, restricts builtins and imports, runs the user script and
writes exactly one JSON line to the real stdout.
"""

import builtins
import io
import json
import resource
import signal
import socket
import sys
import traceback

MAX_OUTPUT_CHARS = 12000
MAX_FILE_BYTES = 1024 * 1024

BLOCKED_MODULE_PREFIXES = (
    "subprocess",
    "socket",
    "ctypes",
    "multiprocessing",
    "ssl",
    "http",
    "urllib",
    "ftplib",
    "telnetlib",
    "asyncio",
)

SAFE_BUILTIN_NAMES = [
    "__build_class__", "__import__", "abs", "all", "any", "bin", "bool", "bytes",
    "callable", "chr", "dict", "dir", "divmod", "enumerate", "filter", "float",
    "format", "frozenset", "hash", "hex", "int", "isinstance", "issubclass",
    "iter", "len", "list", "map", "max", "min", "next", "object", "oct", "ord",
    "pow", "print", "range", "repr", "reversed", "round", "set", "slice", "sorted",
    "str", "sum", "tuple", "type", "zip", "Exception", "ValueError", "TypeError",
    "KeyError", "IndexError", "RuntimeError", "ArithmeticError", "ZeroDivisionError",
    "StopIteration", "NotImplementedError", "AttributeError",
]

_original_import = builtins.__import__


def guard_import(name, globals=None, locals=None, fromlist=(), level=0):
    root = (name or "").split(".")[0]
    if root in BLOCKED_MODULE_PREFIXES:
        raise ImportError(f"Module '{root}' is blocked in sandbox")
    return _original_import(name, globals, locals, fromlist, level)


def disable_network():
    def blocked(*args, **kwargs):
        raise RuntimeError("Network is disabled in sandbox")

    socket.socket = blocked
    socket.create_connection = blocked


def apply_limits(timeout_ms, memory_mb):
    timeout_sec = max(1, int(timeout_ms / 1000) + 1)
    mem_bytes = max(64, memory_mb) * 1024 * 1024
    resource.setrlimit(resource.RLIMIT_CPU, (timeout_sec, timeout_sec))
    resource.setrlimit(resource.RLIMIT_AS, (mem_bytes, mem_bytes))
    resource.setrlimit(resource.RLIMIT_FSIZE, (MAX_FILE_BYTES, MAX_FILE_BYTES))
    signal.alarm(timeout_sec + 1)


def build_safe_builtins():
    safe = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES if hasattr(builtins, name)}

    def blocked_open(*args, **kwargs):
        raise PermissionError("open() is disabled in sandbox")

    safe["open"] = blocked_open
    return safe


def stringify_payload(payload):
    try:
        return json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        fallback = dict(payload)
        fallback["result"] = str(payload.get("result"))
        return json.dumps(fallback, ensure_ascii=False)


def main():
    if len(sys.argv) < 5:
        sys.__stdout__.write(json.dumps({"ok": False, "error": "Missing runner args"}) + "\n")
        return

    script_path, input_path = sys.argv[1], sys.argv[2]
    timeout_ms = int(sys.argv[3])
    memory_mb = int(sys.argv[4])

    with open(script_path, "r", encoding="utf-8") as f:
        code = f.read()
    with open(input_path, "r", encoding="utf-8") as f:
        raw = f.read().strip()
        input_data = json.loads(raw) if raw else {}

    apply_limits(timeout_ms, memory_mb)
    disable_network()
    builtins.__import__ = guard_import

    output_buffer = io.StringIO()
    error_buffer = io.StringIO()
    sys.stdout = output_buffer
    sys.stderr = error_buffer

    scope = {
        "__builtins__": build_safe_builtins(),
        "__name__": "__sandbox__",
        "TOOL_INPUT": input_data,
        "TOOL_OUTPUT": None,
    }

    try:
        exec(compile(code, "user_script.py", "exec"), scope, scope)
        result = scope.get("TOOL_OUTPUT")
        if result is None and callable(scope.get("main")):
            result = scope["main"](input_data)
        payload = {
            "ok": True,
            "result": result,
            "stdout": output_buffer.getvalue()[:MAX_OUTPUT_CHARS],
            "stderr": error_buffer.getvalue()[:MAX_OUTPUT_CHARS],
        }
    except BaseException as e:  # user code may raise SystemExit or KeyboardInterrupt
        payload = {
            "ok": False,
            "error": str(e) or type(e).__name__,
            "traceback": traceback.format_exc()[:MAX_OUTPUT_CHARS],
            "stdout": output_buffer.getvalue()[:MAX_OUTPUT_CHARS],
            "stderr": error_buffer.getvalue()[:MAX_OUTPUT_CHARS],
        }
    finally:
        sys.stdout = sys.__stdout__
        sys.stderr = sys.__stderr__

    sys.__stdout__.write(stringify_payload(payload) + "\n")
    sys.__stdout__.flush()


if __name__ == "__main__":
    main()
