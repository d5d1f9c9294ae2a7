"""Capability-scoped, time-bounded execution for the execute_code tool.

A snippet never sees the real builtins or any module. It runs as the body of
a function inside a namespace that exposes only:

- ``fs``: read-only filesystem view scoped to the declared roots
- ``paths``: pure path string helpers
- ``roots``: the declared root directories
- ``nodes``: JSON copies of the nodes in the queried snapshot
- ``json`` / ``re``: the loads/dumps and search/match subsets
- ``print``: captured into the result instead of stdout

The snippet runs in a child interpreter that is killed when its time is up,
so a long call inside C code cannot hold up the caller. Every failure comes
back as ``{"error": ...}``; nothing raises out of
:meth:`SandboxedExecutor.execute`.
"""

import ast
import asyncio
import builtins
import json
import os
import posixpath
import re
import sys
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import structlog

from intentgraph.config import settings
from intentgraph.sandbox.security import validate_path, validate_script

logger = structlog.get_logger(__name__)

MAX_READ_CHARS = 200_000
MAX_LIST_ENTRIES = 1_000
MAX_PRINT_LINES = 200

READY_MARKER = b"ready"

# Interpreter start and imports are not charged to the snippet.
_STARTUP_TIMEOUT_SECONDS = 30.0
_STREAM_LIMIT = 16 * 1024 * 1024
_PACKAGE_PARENT = Path(__file__).resolve().parents[2]

_SCRIPT_NAME = "script"

_SAFE_BUILTINS: dict[str, Any] = {
    name: getattr(builtins, name)
    for name in (
        "abs", "all", "any", "bool", "dict", "enumerate", "filter", "float",
        "int", "isinstance", "len", "list", "map", "max", "min", "range",
        "repr", "reversed", "round", "set", "sorted", "str", "sum", "tuple",
        "zip", "Exception", "ValueError", "KeyError", "TypeError",
        "IndexError", "PermissionError", "FileNotFoundError",
    )
}


class AccessDeniedError(PermissionError):
    """A path argument resolved outside every declared root."""


class FileSystemView:
    """Read-only filesystem access limited to ``roots``."""

    def __init__(self, roots: Sequence[str]) -> None:
        self._roots = list(roots)

    def _resolve(self, path: str) -> Path:
        is_valid, error, resolved = validate_path(self._roots, path)
        if not is_valid:
            raise AccessDeniedError(error)
        return Path(resolved)

    def read_text(self, path: str) -> str:
        """At most ``MAX_READ_CHARS`` characters from the start of the file."""
        resolved = self._resolve(path)
        with resolved.open(encoding="utf-8", errors="replace") as handle:
            return handle.read(MAX_READ_CHARS)

    def list_dir(self, path: str = ".") -> list[str]:
        """Sorted entry names; directories carry a trailing ``/``."""
        resolved = self._resolve(path)
        entries = sorted(
            f"{entry.name}/" if entry.is_dir() else entry.name
            for entry in resolved.iterdir()
        )
        return entries[:MAX_LIST_ENTRIES]

    def stat(self, path: str) -> dict[str, Any]:
        resolved = self._resolve(path)
        info = resolved.stat()
        return {
            "path": str(resolved),
            "size": info.st_size,
            "is_dir": resolved.is_dir(),
            "is_file": resolved.is_file(),
            "modified": info.st_mtime,
        }

    def exists(self, path: str) -> bool:
        """False for anything outside the roots, without raising."""
        is_valid, _, resolved = validate_path(self._roots, path)
        return is_valid and Path(resolved).exists()


def _relative(path: str, start: str) -> str:
    return os.path.relpath(path, start)


_PATH_HELPERS = SimpleNamespace(
    join=posixpath.join,
    basename=posixpath.basename,
    dirname=posixpath.dirname,
    splitext=posixpath.splitext,
    normpath=posixpath.normpath,
    relative=_relative,
)

_JSON_HELPERS = SimpleNamespace(loads=json.loads, dumps=json.dumps)

_RE_HELPERS = SimpleNamespace(
    search=re.search,
    match=re.match,
    fullmatch=re.fullmatch,
    findall=re.findall,
    finditer=re.finditer,
    sub=re.sub,
    split=re.split,
    compile=re.compile,
    escape=re.escape,
    IGNORECASE=re.IGNORECASE,
    MULTILINE=re.MULTILINE,
    DOTALL=re.DOTALL,
)


def _build_function(tree: ast.Module) -> Any:
    """Compile the snippet as the body of ``script()``.

    A trailing expression statement becomes the return value.
    """
    body = list(tree.body)
    if body and isinstance(body[-1], ast.Expr):
        last = body[-1]
        body[-1] = ast.copy_location(ast.Return(value=last.value), last)

    wrapper = ast.parse(f"def {_SCRIPT_NAME}():\n    pass")
    wrapper.body[0].body = body
    ast.fix_missing_locations(wrapper)
    return compile(wrapper, "<execute_code>", "exec")


def _to_json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def run_snippet(
    code: str,
    roots: Sequence[str],
    nodes: list[dict[str, Any]],
    on_ready: Callable[[], None] | None = None,
) -> dict[str, Any]:
    """Validate, compile and run one snippet in the current interpreter.

    :class:`SandboxedExecutor` calls this through ``intentgraph.sandbox.runner``
    in a child process that is killed once the deadline passes. ``on_ready``
    fires after the namespace is built, right before the snippet starts.
    """
    is_valid, error, tree = validate_script(code)
    if not is_valid or tree is None:
        return {"error": error}

    try:
        code_obj = _build_function(tree)
    except (SyntaxError, ValueError) as e:
        return {"error": f"{type(e).__name__}: {e}"}

    output: list[str] = []

    def captured_print(*args: Any, **kwargs: Any) -> None:
        if len(output) < MAX_PRINT_LINES:
            output.append(" ".join(str(arg) for arg in args))

    namespace: dict[str, Any] = {
        "__builtins__": {**_SAFE_BUILTINS, "print": captured_print},
        "fs": FileSystemView(roots),
        "paths": _PATH_HELPERS,
        "roots": list(roots),
        "nodes": _to_json_safe(nodes),
        "json": _JSON_HELPERS,
        "re": _RE_HELPERS,
    }
    exec(code_obj, namespace)
    script = namespace[_SCRIPT_NAME]

    if on_ready is not None:
        on_ready()
    try:
        result = script()
    except AccessDeniedError as e:
        return {"error": str(e)}
    except Exception as e:
        return {"error": f"{type(e).__name__}: {e}"}

    try:
        return {"result": _to_json_safe(result), "output": output}
    except (TypeError, ValueError) as e:
        return {"error": f"Result is not serializable: {e}"}


class SandboxedExecutor:
    """Runs execute_code snippets against a scoped filesystem view.

    Each snippet runs in a fresh child interpreter
    (``python -m intentgraph.sandbox.runner``). The child reports ``ready``
    once it has started, and from then on it has ``timeout_seconds`` to
    answer before it is killed.

    Attributes:
        roots: Directories the snippet may read from.
        timeout_seconds: Wall-clock budget per snippet.
    """

    def __init__(
        self,
        roots: Sequence[str] | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.roots = list(roots) if roots is not None else list(settings.sandbox_roots)
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None
            else settings.sandbox_timeout_seconds
        )

    def _timeout_error(self) -> dict[str, Any]:
        return {"error": f"Execution timed out after {self.timeout_seconds}s"}

    async def execute(
        self,
        code: str,
        nodes: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Validate and run a snippet.

        Returns:
            ``{"result": value, "output": [printed lines]}`` on success, or
            ``{"error": message}``.
        """
        is_valid, error, tree = validate_script(code)
        if not is_valid or tree is None:
            logger.info("sandbox_script_rejected", error=error)
            return {"error": error}

        payload = json.dumps(
            {"code": code, "roots": self.roots, "nodes": _to_json_safe(nodes or [])}
        ).encode("utf-8")

        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(
            filter(None, [str(_PACKAGE_PARENT), env.get("PYTHONPATH")])
        )
        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "intentgraph.sandbox.runner",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=env,
            limit=_STREAM_LIMIT,
        )
        try:
            assert process.stdin is not None and process.stdout is not None
            process.stdin.write(payload)
            await process.stdin.drain()
            process.stdin.close()

            try:
                ready = await asyncio.wait_for(
                    process.stdout.readline(), timeout=_STARTUP_TIMEOUT_SECONDS
                )
            except TimeoutError:
                logger.error("sandbox_start_timeout", timeout_seconds=_STARTUP_TIMEOUT_SECONDS)
                return {"error": "Sandbox worker failed to start"}

            if ready.strip() != READY_MARKER:
                # Rejected before running (compile error); the line is the result.
                return self._decode(ready)

            start = time.monotonic()
            try:
                line = await asyncio.wait_for(
                    process.stdout.readline(), timeout=self.timeout_seconds
                )
            except TimeoutError:
                logger.warning("sandbox_timeout", timeout_seconds=self.timeout_seconds)
                return self._timeout_error()
            except ValueError:
                logger.warning("sandbox_result_too_large", limit=_STREAM_LIMIT)
                return {"error": f"Result exceeds {_STREAM_LIMIT} bytes"}

            result = self._decode(line)
            logger.debug(
                "sandbox_executed",
                duration_ms=int((time.monotonic() - start) * 1000),
                failed="error" in result,
            )
            return result
        finally:
            if process.returncode is None:
                process.kill()
            await process.wait()

    @staticmethod
    def _decode(line: bytes) -> dict[str, Any]:
        if not line:
            logger.error("sandbox_worker_exited")
            return {"error": "Sandbox worker exited without a result"}
        try:
            return json.loads(line)
        except ValueError as e:
            logger.error("sandbox_bad_reply", error=str(e))
            return {"error": "Sandbox worker returned an unreadable result"}
