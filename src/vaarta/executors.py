# vaarta: Executor adapters for fenced code blocks plus the tag registry the orchestrator consults. Failures of the executed code come back as data (Failure), never as exceptions.

import ast
import contextlib
import io
import shutil
import subprocess
import threading
import traceback
from typing import Any, Dict, Iterable, List, Optional

from .config import ENABLE_SHELL
from .models import ExecutionResult, Failure, Success
from .settings import section

PYTHON_TAGS = ("python", "py", "python3")
SHELL_TAGS = ("sh", "bash", "shell")


class ExecutorAdapter:
    """
    Contract for an execution environment.

    execute() runs a code block body synchronously and returns Success or
    Failure. cancel() is a best-effort request to stop a running execution
    from another thread; adapters that cannot be interrupted ignore it.
    """

    name = "executor"

    def execute(self, code: str) -> ExecutionResult:
        raise NotImplementedError

    def cancel(self) -> None:
        return None


class PythonExecutor(ExecutorAdapter):
    """
    Run Python blocks in a persistent in-process namespace.

    The value of a trailing expression statement is returned (as repr), the
    way an interactive prompt echoes it; stdout written by the block is
    captured alongside.
    """

    name = "python"

    def __init__(self, namespace: Optional[Dict[str, Any]] = None) -> None:
        self.namespace: Dict[str, Any] = namespace if namespace is not None else {"__name__": "__vaarta__"}

    def execute(self, code: str) -> ExecutionResult:
        out = io.StringIO()
        try:
            tree = ast.parse(code, filename="<block>", mode="exec")
        except SyntaxError as e:
            return Failure(message=f"SyntaxError: {e.msg}", trace="".join(traceback.format_exception_only(type(e), e)))

        tail: Optional[ast.Expression] = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            tail = ast.Expression(tree.body.pop().value)

        value: Any = None
        try:
            with contextlib.redirect_stdout(out):
                exec(compile(tree, "<block>", "exec"), self.namespace)
                if tail is not None:
                    value = eval(compile(tail, "<block>", "eval"), self.namespace)
        except (Exception, SystemExit) as e:
            return Failure(
                message=f"{type(e).__name__}: {e}",
                trace=traceback.format_exc(),
                output=out.getvalue() or None,
            )
        return Success(value=repr(value), output=out.getvalue() or None)


class ShellExecutor(ExecutorAdapter):
    """Run shell blocks in a subprocess; a non-zero exit status is a Failure."""

    name = "shell"

    def __init__(self, executable: Optional[str] = None, cwd: Optional[str] = None) -> None:
        self.executable = executable or shutil.which("bash") or "/bin/sh"
        self.cwd = cwd
        self._proc: Optional[subprocess.Popen] = None
        self._cancelled = False
        self._lock = threading.Lock()

    def execute(self, code: str) -> ExecutionResult:
        with self._lock:
            if self._cancelled:
                # cancel() arrived before the process started.
                self._cancelled = False
                return Failure(message="execution cancelled")
            try:
                self._proc = subprocess.Popen(
                    [self.executable, "-c", code],
                    cwd=self.cwd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                )
            except OSError as e:
                return Failure(message=f"could not start {self.executable}: {e}")
            proc = self._proc
        try:
            stdout, stderr = proc.communicate()
        finally:
            with self._lock:
                self._proc = None
                cancelled, self._cancelled = self._cancelled, False
        if cancelled:
            return Failure(message="execution cancelled", trace=stderr, output=stdout or None)
        if proc.returncode != 0:
            return Failure(message=f"exit status {proc.returncode}", trace=stderr, output=stdout or None)
        return Success(value=stdout, output=stderr or None)

    def cancel(self) -> None:
        """Kill the running process, or make the next execute() return a cancelled Failure if none has started."""
        with self._lock:
            self._cancelled = True
            if self._proc is not None and self._proc.poll() is None:
                self._proc.kill()


class ExecutorRegistry:
    """Map fence tags (case-insensitive) to executor adapters."""

    def __init__(self) -> None:
        self._by_tag: Dict[str, ExecutorAdapter] = {}

    def register(self, tags: Iterable[str], adapter: ExecutorAdapter) -> None:
        for tag in tags:
            self._by_tag[tag.strip().lower()] = adapter

    def resolve(self, tag: Optional[str]) -> Optional[ExecutorAdapter]:
        """Return the adapter for a tag; empty or unknown tags are inert (None)."""
        if not tag:
            return None
        return self._by_tag.get(tag.strip().lower())

    def is_executable(self, tag: Optional[str]) -> bool:
        return self.resolve(tag) is not None

    def tags(self) -> List[str]:
        return sorted(self._by_tag)


def build_default_registry(settings: Optional[Dict[str, Any]] = None, cwd: Optional[str] = None) -> ExecutorRegistry:
    """
    Build the registry from settings['executors'].

    Python blocks run unless executors.python is false; shell blocks run only
    when executors.shell is true or VAARTA_ENABLE_SHELL=1.
    """
    cfg = section(settings or {}, "executors")
    registry = ExecutorRegistry()
    if cfg.get("python", True):
        registry.register(PYTHON_TAGS, PythonExecutor())
    if cfg.get("shell", ENABLE_SHELL):
        registry.register(SHELL_TAGS, ShellExecutor(cwd=cwd))
    return registry
