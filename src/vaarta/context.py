# vaarta: Console I/O Context and the operator input history store, kept out of the orchestrator so business logic never prints directly.

import pathlib
import shutil
import sys
from typing import Any, Dict, List, Optional

from .config import INPUT_HISTORY_CAP, STATE_DIR, VERBOSE
from .fs import append_jsonl, now_ts, read_jsonl
from .settings import section


class Context:
    """
    Thin wrapper around console I/O and logging.

    This abstraction exists to decouple direct stdout/stderr usage from
    conversation logic and to let tests substitute a recording context.
    """

    def __init__(
        self,
        workdir: Optional[pathlib.Path] = None,
        settings: Optional[Dict[str, Any]] = None,
        verbose: Optional[bool] = None,
    ) -> None:
        self.workdir = pathlib.Path(workdir or ".").resolve()
        self.settings = settings or {}
        if verbose is None:
            verbose = bool(section(self.settings, "logging").get("verbose", VERBOSE))
        self.verbose = verbose

    def send_to_user(self, message: str) -> None:
        """Send a user-facing message to stdout."""
        print(message)

    def log(self, message: str) -> None:
        """Emit a lightweight log line to stdout when verbose, prefixed for readability."""
        if self.verbose:
            print(f"[LOG] {message}")

    def error_message(self, message: str) -> None:
        """Print an error message to stderr."""
        print(f"Error: {message}", file=sys.stderr)


class InputHistory:
    """
    Durable log of operator inputs (not conversation turns).

    Stored as JSONL under <workdir>/.vaarta/ for append-only writes; only the
    most recent INPUT_HISTORY_CAP entries are returned on load.
    """

    def __init__(self, workdir: pathlib.Path, cap: int = INPUT_HISTORY_CAP) -> None:
        self.file = pathlib.Path(workdir) / STATE_DIR / "input-history.jsonl"
        self.cap = cap

    def load(self) -> List[str]:
        entries = [e.get("input") for e in read_jsonl(self.file) if isinstance(e, dict)]
        inputs = [e for e in entries if isinstance(e, str)]
        if len(inputs) > self.cap:
            inputs = inputs[-self.cap:]
        return inputs

    def append(self, text: str) -> None:
        append_jsonl(self.file, {"ts": now_ts(), "input": text})

    def clear(self) -> None:
        """Rotate the current history to a timestamped .bak.jsonl file if present."""
        if self.file.exists():
            backup = self.file.with_name(f"{self.file.stem}-{int(now_ts())}.bak.jsonl")
            shutil.move(str(self.file), str(backup))
