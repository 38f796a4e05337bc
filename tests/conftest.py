import json
from typing import Any, Dict, List, Optional

import pytest

from vaarta.context import Context
from vaarta.errors import ConfigurationError, TransportFailure
from vaarta.executors import ExecutorAdapter, ExecutorRegistry
from vaarta.models import ExecutionResult, Success
from vaarta.store import ContextStore
from vaarta.streaming import StreamingSession
from vaarta.transcript import TranscriptSink


def sse(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": text}}]})


def sse_lines(*chunks: str, done: bool = True) -> List[str]:
    lines = [sse(c) for c in chunks]
    if done:
        lines.append("data: [DONE]")
    return lines


class RecordingContext(Context):
    def __init__(self, workdir=None) -> None:
        super().__init__(workdir, settings={}, verbose=True)
        self.logs: List[str] = []
        self.messages: List[str] = []
        self.errors: List[str] = []

    def send_to_user(self, message: str) -> None:
        self.messages.append(message)

    def log(self, message: str) -> None:
        self.logs.append(message)

    def error_message(self, message: str) -> None:
        self.errors.append(message)


class FakeTransport:
    """
    Scripted stand-in for ChatCompletionsClient.

    Each queued reply is a list of SSE lines, an iterable/generator of lines,
    or an exception instance raised from open_stream.
    """

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies)
        self.requests: List[Dict[str, Any]] = []
        self.sessions: List[StreamingSession] = []
        self.problems: List[str] = []
        self.closed = 0

    def queue(self, reply: Any) -> None:
        self.replies.append(reply)

    def ensure_configured(self) -> None:
        if self.problems:
            raise ConfigurationError(" ".join(self.problems))

    def open_stream(self, ctx, messages, prefix: Optional[str] = None, model: Optional[str] = None) -> StreamingSession:
        self.requests.append({"messages": [dict(m) for m in messages], "prefix": prefix, "model": model})
        if not self.replies:
            raise TransportFailure("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        session = StreamingSession(reply, close=self._close)
        self.sessions.append(session)
        return session

    def _close(self) -> None:
        self.closed += 1


class FakeExecutor(ExecutorAdapter):
    name = "fake"

    def __init__(self, *results: ExecutionResult) -> None:
        self.results = list(results)
        self.calls: List[str] = []
        self.cancelled = 0

    def execute(self, code: str) -> ExecutionResult:
        self.calls.append(code)
        if self.results:
            return self.results.pop(0)
        return Success(value="nil")

    def cancel(self) -> None:
        self.cancelled += 1


@pytest.fixture
def ctx(tmp_path):
    return RecordingContext(tmp_path)


@pytest.fixture
def store():
    return ContextStore(system_prompt="You are a test assistant.")


@pytest.fixture
def sink():
    return TranscriptSink()


@pytest.fixture
def registry():
    return ExecutorRegistry()
