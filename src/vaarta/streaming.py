# vaarta: Server-sent-event assembly for streamed chat completions. Decodes `data: {json}` lines into ordered text deltas plus one terminal event, and wraps a single in-flight request as a cancellable StreamingSession.

import json
import threading
from typing import Any, Callable, Iterable, Iterator, List, Optional, Union

from pydantic import BaseModel

DATA_MARKER = "data:"
DONE_SENTINEL = "[DONE]"


class Delta(BaseModel):
    text: str


class Completed(BaseModel):
    pass


class Failed(BaseModel):
    diagnostic: str


StreamEvent = Union[Delta, Completed, Failed]


def _frame_text(frame: Any) -> Optional[str]:
    """Return choices[0].delta.content from a decoded frame, or None if the path is absent."""
    if not isinstance(frame, dict):
        return None
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def _frame_error(frame: Any) -> Optional[str]:
    if not isinstance(frame, dict) or "error" not in frame:
        return None
    err = frame.get("error")
    if isinstance(err, dict):
        return str(err.get("message") or err)
    return str(err)


def iter_stream_events(lines: Iterable[Union[str, bytes]]) -> Iterator[StreamEvent]:
    """
    Assemble transport lines into stream events.

    Lines without the data marker are skipped and payloads that do not decode
    as JSON are dropped. Each decoded frame yields at most one Delta. The
    sequence ends with exactly one terminal event: Completed on the [DONE]
    sentinel or on stream close, Failed on an error frame or when the
    underlying iterator raises.
    """
    try:
        for raw in lines:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            line = raw.strip()
            if not line.startswith(DATA_MARKER):
                continue
            payload = line[len(DATA_MARKER):].strip()
            if payload == DONE_SENTINEL:
                yield Completed()
                return
            try:
                frame = json.loads(payload)
            except ValueError:
                continue
            err = _frame_error(frame)
            if err is not None:
                yield Failed(diagnostic=f"model stream reported an error: {err}")
                return
            text = _frame_text(frame)
            if text is not None:
                yield Delta(text=text)
    except Exception as e:
        yield Failed(diagnostic=f"model stream interrupted: {type(e).__name__}: {e}")
        return
    yield Completed()


class StreamingSession:
    """
    One in-flight model request.

    Owns the transport handle (via `close`), the accumulation buffer and the
    terminal state: one of "live", "completed", "failed" or "cancelled".
    Once cancelled, events() stops yielding even if the transport keeps
    delivering.
    """

    def __init__(self, lines: Iterable[Union[str, bytes]], close: Optional[Callable[[], None]] = None) -> None:
        self._lines = lines
        self._close = close
        self._parts: List[str] = []
        self._lock = threading.Lock()
        self.state = "live"
        self.diagnostic: Optional[str] = None

    @property
    def text(self) -> str:
        """Concatenation of every delta delivered so far."""
        return "".join(self._parts)

    @property
    def cancelled(self) -> bool:
        return self.state == "cancelled"

    @property
    def live(self) -> bool:
        return self.state == "live"

    def cancel(self) -> None:
        """Stop accepting events immediately and ask the transport to stop."""
        with self._lock:
            if self.state != "live":
                return
            self.state = "cancelled"
        self._release()

    def _release(self) -> None:
        close, self._close = self._close, None
        if close is None:
            return
        try:
            close()
        except Exception:
            # Closing a half-read response can raise; the session is finished either way.
            pass

    def _finish(self, state: str, diagnostic: Optional[str] = None) -> bool:
        with self._lock:
            if self.state != "live":
                return False
            self.state = state
            self.diagnostic = diagnostic
            return True

    def events(self) -> Iterator[StreamEvent]:
        """Yield assembled events in arrival order, accumulating delta text."""
        if not self.live:
            return
        try:
            for event in iter_stream_events(self._lines):
                if not self.live:
                    return
                if isinstance(event, Delta):
                    self._parts.append(event.text)
                    yield event
                elif isinstance(event, Failed):
                    if self._finish("failed", event.diagnostic):
                        yield event
                    return
                else:
                    if self._finish("completed"):
                        yield event
                    return
        finally:
            self._release()
