# vaarta: Display sinks. Turns render between a `--- <index>: <actor>` header line and a bare `---` closing line so a transcript can be parsed back into steps for rewind/edit targeting.

import re
import sys
from typing import List, NamedTuple, Optional, TextIO

from .models import Actor

CLOSE_DELIMITER = "---"
_HEADER_RE = re.compile(r"^--- (?P<index>\d+): (?P<actor>operator|model|executor)$", re.MULTILINE)


def header_line(index: int, actor: Actor) -> str:
    return f"--- {index}: {Actor(actor).value}"


class DisplaySink:
    """
    Receiver of everything the orchestrator shows.

    Calls arrive from a single control thread in order: begin_turn, any number
    of append, end_turn; report_error is called once per failed model request.
    """

    def begin_turn(self, index: int, actor: Actor) -> None:
        pass

    def append(self, text: str) -> None:
        pass

    def end_turn(self) -> None:
        pass

    def report_error(self, message: str) -> None:
        pass


class TranscriptSink(DisplaySink):
    """Accumulate the delimited transcript in memory; errors are recorded separately."""

    def __init__(self) -> None:
        self._parts: List[str] = []
        self._at_line_start = True
        self._open = False
        self.errors: List[str] = []

    @property
    def transcript(self) -> str:
        return "".join(self._parts)

    def _write(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        self._at_line_start = text.endswith("\n")

    def begin_turn(self, index: int, actor: Actor) -> None:
        if self._open:
            self.end_turn()
        if not self._at_line_start:
            self._write("\n")
        self._write(header_line(index, actor) + "\n")
        self._open = True

    def append(self, text: str) -> None:
        self._write(text)

    def end_turn(self) -> None:
        if not self._open:
            return
        if not self._at_line_start:
            self._write("\n")
        self._write(CLOSE_DELIMITER + "\n")
        self._open = False

    def report_error(self, message: str) -> None:
        self.errors.append(message)


class ConsoleSink(TranscriptSink):
    """Stream the transcript to a terminal while keeping the in-memory copy."""

    def __init__(self, stream: Optional[TextIO] = None, err_stream: Optional[TextIO] = None, echo_operator: bool = False) -> None:
        super().__init__()
        self.stream = stream or sys.stdout
        self.err_stream = err_stream or sys.stderr
        self.echo_operator = echo_operator
        self._muted = False

    def _write(self, text: str) -> None:
        super()._write(text)
        if text and not self._muted:
            self.stream.write(text)
            self.stream.flush()

    def begin_turn(self, index: int, actor: Actor) -> None:
        # The operator already sees what they typed; keep it in the transcript only.
        self._muted = Actor(actor) is Actor.operator and not self.echo_operator
        super().begin_turn(index, actor)

    def end_turn(self) -> None:
        super().end_turn()
        self._muted = False

    def report_error(self, message: str) -> None:
        super().report_error(message)
        print(f"Error: {message}", file=self.err_stream)


class Step(NamedTuple):
    index: int
    actor: Actor
    text: str


def iter_steps(transcript: str) -> List[Step]:
    """Split a delimited transcript back into (index, actor, text) steps."""
    headers = list(_HEADER_RE.finditer(transcript))
    steps: List[Step] = []
    for i, m in enumerate(headers):
        start = m.end() + 1
        end = headers[i + 1].start() if i + 1 < len(headers) else len(transcript)
        segment = transcript[start:end]
        closing = "\n" + CLOSE_DELIMITER + "\n"
        if segment.endswith(closing):
            segment = segment[: -len(closing)]
        elif segment == CLOSE_DELIMITER + "\n":
            segment = ""
        steps.append(Step(int(m.group("index")), Actor(m.group("actor")), segment))
    return steps


def locate_step(transcript: str, offset: int) -> Optional[int]:
    """Return the sequence index of the step whose header precedes offset, or None."""
    found: Optional[int] = None
    for m in _HEADER_RE.finditer(transcript):
        if m.start() > offset:
            break
        found = int(m.group("index"))
    return found
