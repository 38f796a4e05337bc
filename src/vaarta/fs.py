# vaarta: Small filesystem helpers: timestamps, JSONL append/read, tolerant text reads.

import json
import pathlib
import time
from typing import Any, List, Optional


def now_ts() -> float:
    """Return the current UNIX timestamp in seconds (float)."""
    return time.time()


def append_jsonl(path: pathlib.Path, obj: Any) -> None:
    """Append a single JSON object as one line to a JSONL file (creating parents)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(obj, ensure_ascii=False) + "\n")


# Invalid lines are skipped so one torn write does not lose the whole file.
def read_jsonl(path: pathlib.Path) -> List[Any]:
    """Read a JSONL file into a list of parsed objects; returns [] if missing."""
    if not path.exists():
        return []
    lines: List[Any] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                lines.append(json.loads(line))
            except ValueError:
                continue
    return lines


def read_text_if_exists(path: pathlib.Path) -> Optional[str]:
    """Return the UTF-8 text of path, or None when it is missing or unreadable."""
    try:
        if path.is_file():
            return path.read_text(encoding="utf-8")
    except OSError:
        return None
    return None
