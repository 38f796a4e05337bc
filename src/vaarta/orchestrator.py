# vaarta: The turn-taking state machine. Drives operator -> model -> (executor -> model)* chains in an explicit loop, owns the live streaming session, and serializes rewinds so a cancelled stream can never append to a re-branched history.

import threading
import traceback
from enum import Enum
from typing import Optional

from .blocks import last_block
from .context import Context
from .errors import InvalidRewindTarget, InvalidTransition, TransportFailure
from .executors import ExecutorAdapter, ExecutorRegistry
from .models import Actor, Failure, FencedBlock, Turn, serialize_result
from .store import ContextStore
from .streaming import Delta, StreamingSession
from .transcript import DisplaySink


class ConversationState(str, Enum):
    idle = "idle"
    awaiting_model = "awaiting_model"
    awaiting_execution = "awaiting_execution"
    halted_on_error = "halted_on_error"


class Orchestrator:
    """
    Turn-taking orchestrator for one conversation.

    Only the orchestrator mutates the ContextStore. Transitions are guarded
    by a re-entrant lock held for short sections only, never while reading
    the network or running code, so abort() and rewind_to() called from
    another thread take effect immediately. Every model/execution step
    captures an epoch; abort and rewind bump it, and a step that finishes
    under a stale epoch discards its result instead of pushing.
    """

    def __init__(
        self,
        store: ContextStore,
        transport,
        executors: ExecutorRegistry,
        sink: Optional[DisplaySink] = None,
        ctx: Optional[Context] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.executors = executors
        self.sink = sink or DisplaySink()
        self.ctx = ctx or Context()
        self.state = ConversationState.idle
        self.last_error: Optional[str] = None
        self._session: Optional[StreamingSession] = None
        self._executing: Optional[ExecutorAdapter] = None
        self._prefix: Optional[str] = None
        self._model: Optional[str] = None
        self._epoch = 0
        self._lock = threading.RLock()

    # ---------- Queries ----------

    def actionable_block(self, turn: Optional[Turn]) -> Optional[FencedBlock]:
        """Return the block a model turn asks to execute, or None when it is inert."""
        if turn is None or turn.actor is not Actor.model:
            return None
        block = last_block(turn.content)
        if block is None or not block.closed:
            return None
        if not self.executors.is_executable(block.tag):
            if block.tag:
                self.ctx.log(f"Block tagged {block.tag!r} has no executor; leaving it inert.")
            return None
        return block

    def pending_continuation(self) -> Optional[ConversationState]:
        """State that continue_without_input() would enter, or None when there is nothing to resume."""
        last = self.store.last_turn()
        if last is None:
            return None
        if last.actor is Actor.executor:
            return ConversationState.awaiting_model
        if self.actionable_block(last) is not None:
            return ConversationState.awaiting_execution
        return None

    @property
    def streaming(self) -> bool:
        return self._session is not None and self._session.live

    # ---------- Operator events ----------

    def submit(self, text: str, model: Optional[str] = None) -> None:
        """
        Push an operator turn and run the loop until control returns to the operator.

        Empty input resumes a pending continuation when there is one.

        Raises:
            InvalidTransition: If not idle, or text is empty with nothing to continue.
            ConfigurationError: If the transport is not configured; nothing is pushed.
        """
        with self._lock:
            self._require(ConversationState.idle, "submit")
            if not text or not text.strip():
                if self.pending_continuation() is None:
                    raise InvalidTransition("empty input and nothing to continue")
                resume = True
            else:
                resume = False
                self.transport.ensure_configured()
                self._model = model
                turn = self.store.push(Actor.operator, text)
                self.ctx.log(f"Pushed operator turn #{turn.sequence_index} (id {turn.identity}).")
                self._enter(ConversationState.awaiting_model)
                epoch = self._epoch
        if resume:
            self.continue_without_input()
            return
        self._show_turn(turn)
        self._run(epoch)

    def continue_without_input(self) -> None:
        """
        Resume the loop without a new turn: execute a pending block or ask the model again.

        Raises:
            InvalidTransition: If not idle or there is nothing to resume.
        """
        with self._lock:
            self._require(ConversationState.idle, "continue")
            target = self.pending_continuation()
            if target is None:
                raise InvalidTransition("nothing to continue: the last turn is not an executor turn or an unexecuted block")
            self.transport.ensure_configured()
            self._enter(target)
            epoch = self._epoch
        self._run(epoch)

    def abort(self) -> None:
        """
        Cancel the live model request, discard its partial text and return to idle.

        Raises:
            InvalidTransition: If no model request is in flight.
        """
        with self._lock:
            self._require(ConversationState.awaiting_model, "abort")
            self._cancel_in_flight()
            self._enter(ConversationState.idle)

    def stop(self) -> None:
        """Abort a model request or cancel a running execution; no-op when idle."""
        with self._lock:
            if self.state is ConversationState.awaiting_model:
                self.abort()
            elif self.state is ConversationState.awaiting_execution:
                self._cancel_in_flight()
                self._enter(ConversationState.idle)

    def rewind_to(self, sequence_index: int) -> None:
        """
        Truncate the live history at sequence_index from any state.

        A live stream or execution is cancelled before the truncation.

        Raises:
            InvalidRewindTarget: If sequence_index is outside 0..len(history); nothing changes.
        """
        with self._lock:
            self._check_target(sequence_index)
            self._cancel_in_flight()
            self.store.truncate_from(sequence_index)
            self.ctx.log(f"Rewound to #{sequence_index}; now on branch {self.store.branch_id}.")
            self._enter(ConversationState.idle)

    def edit_and_continue(self, sequence_index: int, text: str, model: Optional[str] = None) -> None:
        """
        Replace the turn at sequence_index and continue from there.

        For an operator turn, the edited text is submitted in its place and must
        not be blank. For any other turn, history is rewound to it and the model
        is asked for a new turn seeded with text as the leading fragment of its
        own reply. Editing an executor turn therefore replaces the result with a
        model reply that starts with text.

        Raises:
            InvalidRewindTarget: If there is no live turn at sequence_index.
            InvalidTransition: If an operator turn would be replaced with blank text.
        """
        with self._lock:
            self._check_target(sequence_index)
            if sequence_index == len(self.store):
                raise InvalidRewindTarget(f"no turn at #{sequence_index} to edit")
            self.transport.ensure_configured()
            edited = self.store.turns()[sequence_index]
            resubmit = edited.actor is Actor.operator
            if resubmit and (not text or not text.strip()):
                raise InvalidTransition(f"operator turn #{sequence_index} cannot be replaced with empty text")
            self.rewind_to(sequence_index)
            if not resubmit:
                self._prefix = text or None
                self._model = model
                self._enter(ConversationState.awaiting_model)
                epoch = self._epoch
        if resubmit:
            self.submit(text, model=model)
            return
        self._run(epoch)

    def rerun(self, model: Optional[str] = None) -> None:
        """Discard everything after the last operator turn and ask the model again."""
        with self._lock:
            turns = self.store.turns()
            last_operator = next((t for t in reversed(turns) if t.actor is Actor.operator), None)
            if last_operator is None:
                raise InvalidTransition("no operator turn to rerun")
            self.transport.ensure_configured()
            self.rewind_to(last_operator.sequence_index + 1)
            self._model = model
            self._enter(ConversationState.awaiting_model)
            epoch = self._epoch
        self._run(epoch)

    def rewind_to_identity(self, identity: int) -> None:
        self.rewind_to(self._live_index(identity))

    def edit_turn(self, identity: int, text: str, model: Optional[str] = None) -> None:
        self.edit_and_continue(self._live_index(identity), text, model=model)

    # ---------- Loop ----------

    def _run(self, epoch: int) -> None:
        # Explicit loop: arbitrarily long model/executor chains never grow the stack.
        # A driver whose epoch was superseded stops; the next operator event owns the conversation.
        while True:
            with self._lock:
                if epoch != self._epoch:
                    return
                state = self.state
            if state is ConversationState.awaiting_model:
                self._request_model(epoch)
            elif state is ConversationState.awaiting_execution:
                self._execute_pending(epoch)
            else:
                return

    def _request_model(self, epoch: int) -> None:
        with self._lock:
            if epoch != self._epoch:
                return
            prefix = self._prefix
            model = self._model
            messages = self.store.render()
        try:
            session = self.transport.open_stream(self.ctx, messages, prefix=prefix, model=model)
        except TransportFailure as e:
            self._fail(epoch, str(e))
            return

        with self._lock:
            if epoch != self._epoch:
                session.cancel()
                return
            if self._session is not None:
                self._session.cancel()
            self._session = session
            index = len(self.store)

        self.sink.begin_turn(index, Actor.model)
        try:
            if prefix:
                self.sink.append(prefix)
            for event in session.events():
                if epoch != self._epoch or session.cancelled:
                    break
                if isinstance(event, Delta):
                    self.sink.append(event.text)
        finally:
            self.sink.end_turn()

        with self._lock:
            if epoch != self._epoch or session.cancelled:
                return
            self._session = None
            if session.state != "completed":
                failed = session.diagnostic or "model stream ended unexpectedly"
            else:
                failed = None
                self._prefix = None
                turn = self.store.push(Actor.model, (prefix or "") + session.text, override_prefix=prefix)
                self.ctx.log(f"Pushed model turn #{turn.sequence_index} (id {turn.identity}, {len(turn.content)} chars).")
                if self.actionable_block(turn) is not None:
                    self._enter(ConversationState.awaiting_execution)
                else:
                    self._enter(ConversationState.idle)
        if failed is not None:
            self._fail(epoch, failed)

    def _execute_pending(self, epoch: int) -> None:
        with self._lock:
            if epoch != self._epoch:
                return
            block = self.actionable_block(self.store.last_turn())
            adapter = self.executors.resolve(block.tag) if block is not None else None
            if block is None or adapter is None:
                self._enter(ConversationState.idle)
                return
            self._executing = adapter
        self.ctx.log(f"Executing {block.tag} block with {adapter.name} ({len(block.body)} chars).")
        try:
            result = adapter.execute(block.body)
        except Exception as e:
            # An adapter that raises still produces data for the model.
            result = Failure(message=f"{type(e).__name__}: {e}", trace=traceback.format_exc())
        finally:
            with self._lock:
                if self._executing is adapter and epoch == self._epoch:
                    self._executing = None

        with self._lock:
            if epoch != self._epoch:
                self.ctx.log("Discarding result of a superseded execution.")
                return
            turn = self.store.push(Actor.executor, serialize_result(result))
            self.ctx.log(f"Pushed executor turn #{turn.sequence_index} ({result.status}).")
            self._enter(ConversationState.awaiting_model)
        self._show_turn(turn)

    # ---------- Helpers ----------

    def _fail(self, epoch: int, diagnostic: str) -> None:
        with self._lock:
            if epoch != self._epoch:
                return
            self._session = None
            self._prefix = None
            self.last_error = diagnostic
            self._enter(ConversationState.halted_on_error)
        self.ctx.log(f"Model request failed: {diagnostic}")
        self.sink.report_error(diagnostic)
        with self._lock:
            if self.state is ConversationState.halted_on_error:
                self._enter(ConversationState.idle)

    def _cancel_in_flight(self) -> None:
        # Cancel first; the caller truncates afterwards.
        self._epoch += 1
        self._prefix = None
        session, self._session = self._session, None
        if session is not None:
            session.cancel()
            self.ctx.log("Cancelled live model stream.")
        executing, self._executing = self._executing, None
        if executing is not None:
            executing.cancel()
            self.ctx.log("Cancelled running execution.")

    def _enter(self, state: ConversationState) -> None:
        if state is not self.state:
            self.ctx.log(f"State {self.state.value} -> {state.value}")
        self.state = state

    def _require(self, state: ConversationState, action: str) -> None:
        if self.state is not state:
            raise InvalidTransition(f"cannot {action} while {self.state.value}")

    def _check_target(self, sequence_index: int) -> None:
        if not isinstance(sequence_index, int) or not 0 <= sequence_index <= len(self.store):
            raise InvalidRewindTarget(f"rewind target {sequence_index!r} outside 0..{len(self.store)}")

    def _live_index(self, identity: int) -> int:
        turn = self.store.get(identity)
        if turn is None or not self.store.is_live(turn):
            raise InvalidRewindTarget(f"no live turn with identity {identity}")
        return turn.sequence_index

    def _show_turn(self, turn: Turn) -> None:
        self.sink.begin_turn(turn.sequence_index, turn.actor)
        self.sink.append(turn.content)
        self.sink.end_turn()
