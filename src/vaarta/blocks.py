# vaarta: Fenced code block extraction for model turns. Pure text in, ordered blocks out; tolerant of indentation drift and unterminated fences.

import re
from typing import List, Optional

from .models import FencedBlock

# Opening fence: optional indentation, a run of three or more backticks, then the tag.
_OPEN_RE = re.compile(r"^(?P<indent>[ \t]*)(?P<fence>`{3,})(?P<tag>[^`]*)$")
_CLOSE_RE = re.compile(r"^(?P<indent>[ \t]*)(?P<fence>`{3,})[ \t]*$")


def _dedent_line(line: str, width: int) -> str:
    """Strip `width` leading whitespace characters when present, else keep the line verbatim."""
    head = line[:width]
    if len(head) == width and (width == 0 or head.isspace()):
        return line[width:]
    return line


def extract_blocks(text: str) -> List[FencedBlock]:
    """
    Return every fenced block in text, in order of appearance.

    A block opens on a line whose stripped form starts with three or more
    backticks; the remainder of that line is the tag. It closes on a later line
    with the same leading whitespace consisting only of a backtick run at least
    as long as the opening one. Lines inside lose the opening fence's
    indentation width when they have it. A block still open at end of text is
    returned with closed=False.
    """
    blocks: List[FencedBlock] = []
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        m = _OPEN_RE.match(lines[i])
        if not m:
            i += 1
            continue
        indent = m.group("indent")
        fence = m.group("fence")
        tag = m.group("tag").strip()
        body: List[str] = []
        closed = False
        i += 1
        while i < len(lines):
            line = lines[i]
            c = _CLOSE_RE.match(line)
            if c and c.group("indent") == indent and len(c.group("fence")) >= len(fence):
                closed = True
                i += 1
                break
            body.append(_dedent_line(line, len(indent)))
            i += 1
        blocks.append(FencedBlock(tag=tag, body="\n".join(body), indent=indent, fence=fence, closed=closed))
    return blocks


def last_block(text: str) -> Optional[FencedBlock]:
    """Return the final fenced block in text, or None when there is none."""
    blocks = extract_blocks(text)
    return blocks[-1] if blocks else None
