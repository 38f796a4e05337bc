# vaarta: Branch-aware, append-only conversation log. Turns live in an arena keyed by identity; the live history is an ordered list of identities that rewinds shrink without deleting anything.

from typing import Dict, List, Optional

from .errors import InvalidRewindTarget
from .models import Actor, Turn


class ContextStore:
    """
    Ordered history of conversation turns for one session.

    The store assigns sequence indices (dense positions in the live history),
    identities (session-wide, never reused) and branch ids (bumped on every
    truncation). It accepts turns in any order; alternation between actors is
    the orchestrator's job.
    """

    def __init__(self, system_prompt: str = "") -> None:
        self.system_prompt = system_prompt
        self._arena: Dict[int, Turn] = {}
        self._live: List[int] = []
        self._next_identity = 0
        self.branch_id = 0

    def __len__(self) -> int:
        return len(self._live)

    def push(self, actor: Actor, content: str, override_prefix: Optional[str] = None) -> Turn:
        """Append a new turn to the live history and return it."""
        turn = Turn(
            sequence_index=len(self._live),
            identity=self._next_identity,
            actor=Actor(actor),
            content=content,
            branch_id=self.branch_id,
            override_prefix=override_prefix,
        )
        self._next_identity += 1
        self._arena[turn.identity] = turn
        self._live.append(turn.identity)
        return turn

    def truncate_from(self, sequence_index: int) -> None:
        """
        Drop every live turn at or after sequence_index and start a new branch.

        Raises:
            InvalidRewindTarget: If sequence_index is outside 0..len(self).
        """
        if not isinstance(sequence_index, int) or not 0 <= sequence_index <= len(self._live):
            raise InvalidRewindTarget(
                f"rewind target {sequence_index!r} outside 0..{len(self._live)}"
            )
        # Detached turns stay in the arena so they remain addressable by identity.
        del self._live[sequence_index:]
        self.branch_id += 1

    def last_turn(self) -> Optional[Turn]:
        if not self._live:
            return None
        return self._arena[self._live[-1]]

    def turns(self) -> List[Turn]:
        """Return a copy of the live history in order."""
        return [self._arena[i] for i in self._live]

    def get(self, identity: int) -> Optional[Turn]:
        """Return any turn ever pushed in this session, live or detached."""
        return self._arena.get(identity)

    def is_live(self, turn: Turn) -> bool:
        idx = turn.sequence_index
        return idx < len(self._live) and self._live[idx] == turn.identity

    def branch(self, branch_id: int) -> List[Turn]:
        """Return the turns pushed on a given branch, ordered by identity."""
        return [t for _, t in sorted(self._arena.items()) if t.branch_id == branch_id]

    def render(self) -> List[Dict[str, str]]:
        """
        Project the live history into chat messages for the model transport.

        The system instruction always comes first and is not a stored turn.
        Model turns map to the assistant role; operator and executor turns map
        to the user role.
        """
        messages = [{"role": "system", "content": self.system_prompt}]
        for turn in self.turns():
            messages.append({"role": turn.role, "content": turn.content})
        return messages
