import json
import threading

import pytest

from vaarta.errors import ConfigurationError, InvalidRewindTarget, InvalidTransition, TransportFailure
from vaarta.executors import PythonExecutor
from vaarta.models import Actor, Failure, Success, serialize_result
from vaarta.orchestrator import ConversationState, Orchestrator

from conftest import FakeExecutor, FakeTransport, sse, sse_lines


@pytest.fixture
def elisp(registry):
    executor = FakeExecutor(Success(value="(list A B)"))
    registry.register(["emacs-lisp", "elisp"], executor)
    return executor


def _orch(store, transport, registry, sink, ctx):
    return Orchestrator(store, transport, registry, sink=sink, ctx=ctx)


def test_block_is_executed_and_result_fed_back(store, registry, sink, ctx, elisp):
    transport = FakeTransport(
        sse_lines("Sure.\n```emacs-lisp\n", "(buffer-list)\n```"),
        sse_lines("You have two buffers."),
    )
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("list open files")

    assert elisp.calls == ["(buffer-list)"]
    actors = [t.actor for t in store.turns()]
    assert actors == [Actor.operator, Actor.model, Actor.executor, Actor.model]
    expected = serialize_result(Success(value="(list A B)"))
    assert store.turns()[2].content == expected
    assert transport.requests[1]["messages"][-1] == {"role": "user", "content": expected}
    assert orch.state is ConversationState.idle


def test_only_last_block_executes(store, registry, sink, ctx, elisp):
    text = "```emacs-lisp\n(first)\n```\nand\n```emacs-lisp\n(second)\n```"
    transport = FakeTransport(sse_lines(text), sse_lines("done"))
    _orch(store, transport, registry, sink, ctx).submit("go")
    assert elisp.calls == ["(second)"]


def test_inert_blocks_return_to_idle(store, registry, sink, ctx, elisp):
    transport = FakeTransport(sse_lines("```ruby\nputs 1\n```"))
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("show ruby")
    assert elisp.calls == []
    assert len(store) == 2
    assert orch.state is ConversationState.idle
    assert orch.pending_continuation() is None


def test_unterminated_block_is_not_executed(store, registry, sink, ctx, elisp):
    transport = FakeTransport(sse_lines("```emacs-lisp\n(buffer-list)"))
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("go")
    assert elisp.calls == []
    assert orch.state is ConversationState.idle


def test_stream_failure_pushes_nothing_and_reports_once(store, registry, sink, ctx):
    def failing():
        yield sse("Hello wor")
        raise ConnectionError("connection reset by peer")

    transport = FakeTransport(failing())
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("say hello")

    assert [t.actor for t in store.turns()] == [Actor.operator]
    assert orch.state is ConversationState.idle
    assert len(sink.errors) == 1
    assert "connection reset by peer" in sink.errors[0]
    assert "Hello wor" in sink.transcript
    assert orch.last_error == sink.errors[0]


def test_http_failure_reports_once(store, registry, sink, ctx):
    transport = FakeTransport(TransportFailure("Chat Completions API error 500: boom"))
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("hi")
    assert len(store) == 1
    assert sink.errors == ["Chat Completions API error 500: boom"]
    assert orch.state is ConversationState.idle


def test_rewind_while_streaming_cancels_and_appends_nothing(store, registry, sink, ctx, elisp):
    holder = {}

    def streaming_then_rewound():
        yield sse("Partial ans")
        holder["orch"].rewind_to(2)
        yield sse("wer that must be dropped")
        yield "data: [DONE]"

    transport = FakeTransport(sse_lines("```emacs-lisp\n(buffer-list)\n```"), streaming_then_rewound())
    orch = _orch(store, transport, registry, sink, ctx)
    holder["orch"] = orch
    orch.submit("list open files")

    assert len(store) == 2
    assert [t.actor for t in store.turns()] == [Actor.operator, Actor.model]
    assert transport.sessions[-1].cancelled
    assert "must be dropped" not in sink.transcript
    assert orch.state is ConversationState.idle
    assert sink.errors == []


def test_abort_requires_live_request(store, registry, sink, ctx):
    orch = _orch(store, FakeTransport(), registry, sink, ctx)
    with pytest.raises(InvalidTransition):
        orch.abort()


def test_abort_discards_partial_text(store, registry, sink, ctx):
    holder = {}

    def stream():
        yield sse("Hel")
        holder["orch"].abort()
        yield sse("lo")

    orch = _orch(store, FakeTransport(stream()), registry, sink, ctx)
    holder["orch"] = orch
    orch.submit("hi")
    assert len(store) == 1
    assert orch.state is ConversationState.idle


def test_empty_submit_without_continuation_is_rejected(store, registry, sink, ctx):
    orch = _orch(store, FakeTransport(), registry, sink, ctx)
    with pytest.raises(InvalidTransition):
        orch.submit("   ")
    with pytest.raises(InvalidTransition):
        orch.continue_without_input()
    assert len(store) == 0


def test_configuration_error_pushes_nothing(store, registry, sink, ctx):
    transport = FakeTransport()
    transport.problems = ["No API key."]
    orch = _orch(store, transport, registry, sink, ctx)
    with pytest.raises(ConfigurationError):
        orch.submit("hello")
    assert len(store) == 0
    assert orch.state is ConversationState.idle


def test_continue_runs_pending_block_after_rewind(store, registry, sink, ctx, elisp):
    transport = FakeTransport(
        sse_lines("```emacs-lisp\n(buffer-list)\n```"),
        sse_lines("Two buffers."),
        sse_lines("Still two buffers."),
    )
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("list open files")
    orch.rewind_to(2)
    assert orch.pending_continuation() is ConversationState.awaiting_execution

    elisp.results.append(Success(value="(list A B)"))
    orch.submit("")
    assert len(elisp.calls) == 2
    assert [t.actor for t in store.turns()][-2:] == [Actor.executor, Actor.model]
    assert store.last_turn().content == "Still two buffers."


def test_continue_after_executor_turn_asks_model(store, registry, sink, ctx, elisp):
    transport = FakeTransport(
        sse_lines("```emacs-lisp\n(buffer-list)\n```"),
        sse_lines("first answer"),
        sse_lines("second answer"),
    )
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("list open files")
    orch.rewind_to(3)
    assert orch.pending_continuation() is ConversationState.awaiting_model
    orch.continue_without_input()
    assert store.last_turn().content == "second answer"
    assert len(store) == 4


def test_edit_model_turn_continues_from_prefix(store, registry, sink, ctx):
    transport = FakeTransport(sse_lines("I cannot do that."), sse_lines(" the answer is 42."))
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("what is the answer?")
    first_branch = store.branch_id

    orch.edit_and_continue(1, "Sure,")
    turn = store.last_turn()
    assert turn.content == "Sure, the answer is 42."
    assert turn.override_prefix == "Sure,"
    assert turn.sequence_index == 1
    assert store.branch_id == first_branch + 1
    assert transport.requests[-1]["prefix"] == "Sure,"
    assert transport.requests[-1]["messages"][-1]["role"] == "user"


def test_edit_operator_turn_resubmits(store, registry, sink, ctx):
    transport = FakeTransport(sse_lines("a"), sse_lines("b"))
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("first question")
    orch.edit_and_continue(0, "better question")
    assert [t.content for t in store.turns()] == ["better question", "b"]


def test_rewind_out_of_range_changes_nothing(store, registry, sink, ctx):
    orch = _orch(store, FakeTransport(sse_lines("ok")), registry, sink, ctx)
    orch.submit("hi")
    with pytest.raises(InvalidRewindTarget):
        orch.rewind_to(5)
    with pytest.raises(InvalidRewindTarget):
        orch.edit_and_continue(2, "x")
    assert len(store) == 2
    assert store.branch_id == 0


def test_rerun_replaces_reply_with_model_override(store, registry, sink, ctx):
    transport = FakeTransport(sse_lines("meh"), sse_lines("better"))
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("hi")
    orch.rerun(model="bigger-model")
    assert [t.content for t in store.turns()] == ["hi", "better"]
    assert transport.requests[-1]["model"] == "bigger-model"


def test_identity_addressing_rejects_detached_turns(store, registry, sink, ctx):
    transport = FakeTransport(sse_lines("one"), sse_lines("two"))
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("hi")
    old_reply = store.last_turn()
    orch.rerun()
    with pytest.raises(InvalidRewindTarget):
        orch.rewind_to_identity(old_reply.identity)
    orch.rewind_to_identity(store.last_turn().identity)
    assert len(store) == 1


def test_adapter_exception_becomes_failure_turn(store, registry, sink, ctx):
    class Exploding(FakeExecutor):
        def execute(self, code):
            raise RuntimeError("adapter crashed")

    registry.register(["boom"], Exploding())
    transport = FakeTransport(sse_lines("```boom\nx\n```"), sse_lines("noted"))
    _orch(store, transport, registry, sink, ctx).submit("go")
    result = json.loads(store.turns()[2].content)
    assert result["status"] == "failure"
    assert "adapter crashed" in result["message"]


def test_failure_result_continues_loop(store, registry, sink, ctx):
    executor = FakeExecutor(Failure(message="void-function buffer-lst"))
    registry.register(["emacs-lisp"], executor)
    transport = FakeTransport(sse_lines("```emacs-lisp\n(buffer-lst)\n```"), sse_lines("Typo, sorry."))
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("go")
    assert json.loads(store.turns()[2].content)["status"] == "failure"
    assert store.last_turn().content == "Typo, sorry."


def test_long_chain_runs_without_recursion(store, registry, sink, ctx):
    steps = 300
    replies = [sse_lines(f"```python\nn = {i}\nn\n```") for i in range(steps)]
    replies.append(sse_lines("done"))
    registry.register(["python"], PythonExecutor())
    orch = _orch(store, FakeTransport(*replies), registry, sink, ctx)
    orch.submit("count")
    assert len(store) == 2 + 2 * steps
    assert json.loads(store.turns()[-2].content)["value"] == str(steps - 1)


def test_transcript_headers_follow_sequence_indices(store, registry, sink, ctx, elisp):
    transport = FakeTransport(sse_lines("```emacs-lisp\n(buffer-list)\n```"), sse_lines("ok"))
    _orch(store, transport, registry, sink, ctx).submit("list")
    for header in ("--- 0: operator", "--- 1: model", "--- 2: executor", "--- 3: model"):
        assert header + "\n" in sink.transcript


def gated_stream(started, release, first, rest):
    yield sse(first)
    started.set()
    release.wait(5)
    yield sse(rest)
    yield "data: [DONE]"


def in_thread(fn, *args):
    errors = []

    def target():
        try:
            fn(*args)
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, errors


class GatedExecutor(FakeExecutor):
    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def execute(self, code):
        self.calls.append(code)
        self.started.set()
        self.release.wait(5)
        return Success(value="late")

    def cancel(self):
        self.cancelled += 1
        self.release.set()


def test_abort_from_another_thread(store, registry, sink, ctx):
    started, release = threading.Event(), threading.Event()
    transport = FakeTransport(gated_stream(started, release, "Hel", "lo there"))
    orch = _orch(store, transport, registry, sink, ctx)

    worker, errors = in_thread(orch.submit, "hi")
    assert started.wait(5)
    assert orch.state is ConversationState.awaiting_model
    orch.abort()
    assert orch.state is ConversationState.idle
    assert transport.sessions[0].cancelled
    release.set()
    worker.join(5)

    assert not worker.is_alive()
    assert errors == []
    assert [t.actor for t in store.turns()] == [Actor.operator]
    assert "lo there" not in sink.transcript
    assert transport.closed == 1


def test_superseded_driver_stops_after_rewind(store, registry, sink, ctx):
    first_started, first_release = threading.Event(), threading.Event()
    second_started, second_release = threading.Event(), threading.Event()
    transport = FakeTransport(
        gated_stream(first_started, first_release, "old ", "reply"),
        gated_stream(second_started, second_release, "new ", "reply"),
        sse_lines("reply from a superseded driver"),
    )
    orch = _orch(store, transport, registry, sink, ctx)

    first, first_errors = in_thread(orch.submit, "first")
    assert first_started.wait(5)
    orch.rewind_to(0)
    second, second_errors = in_thread(orch.submit, "second")
    assert second_started.wait(5)

    # The old driver wakes up while the new request is still in flight.
    first_release.set()
    first.join(5)
    assert not first.is_alive()
    assert len(transport.requests) == 2

    second_release.set()
    second.join(5)
    assert not second.is_alive()
    assert first_errors == [] and second_errors == []
    assert [(t.actor, t.content) for t in store.turns()] == [
        (Actor.operator, "second"),
        (Actor.model, "new reply"),
    ]
    assert len(transport.requests) == 2
    assert orch.state is ConversationState.idle


def test_stop_during_execution_cancels_adapter_and_discards_result(store, registry, sink, ctx):
    executor = GatedExecutor()
    registry.register(["slow"], executor)
    transport = FakeTransport(sse_lines("```slow\nsleep 60\n```"), sse_lines("must not be requested"))
    orch = _orch(store, transport, registry, sink, ctx)

    worker, errors = in_thread(orch.submit, "go")
    assert executor.started.wait(5)
    assert orch.state is ConversationState.awaiting_execution
    orch.stop()
    worker.join(5)

    assert not worker.is_alive()
    assert errors == []
    assert executor.cancelled == 1
    assert [t.actor for t in store.turns()] == [Actor.operator, Actor.model]
    assert len(transport.requests) == 1
    assert orch.state is ConversationState.idle
    assert orch.pending_continuation() is ConversationState.awaiting_execution


def test_rewind_from_another_thread_during_execution(store, registry, sink, ctx):
    executor = GatedExecutor()
    registry.register(["slow"], executor)
    transport = FakeTransport(sse_lines("```slow\nsleep 60\n```"))
    orch = _orch(store, transport, registry, sink, ctx)

    worker, errors = in_thread(orch.submit, "go")
    assert executor.started.wait(5)
    orch.rewind_to(1)
    worker.join(5)

    assert not worker.is_alive()
    assert errors == []
    assert executor.cancelled == 1
    assert [t.actor for t in store.turns()] == [Actor.operator]


def test_blank_edit_of_operator_turn_keeps_history(store, registry, sink, ctx):
    orch = _orch(store, FakeTransport(sse_lines("hi there")), registry, sink, ctx)
    orch.submit("hello")
    with pytest.raises(InvalidTransition):
        orch.edit_and_continue(0, "   ")
    assert [t.content for t in store.turns()] == ["hello", "hi there"]
    assert store.branch_id == 0


def test_edit_turn_by_identity(store, registry, sink, ctx):
    transport = FakeTransport(sse_lines("No."), sse_lines(" it is 42."))
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("what is the answer?")
    reply = store.last_turn()

    orch.edit_turn(reply.identity, "Yes,")
    assert store.last_turn().content == "Yes, it is 42."
    assert store.last_turn().sequence_index == 1
    with pytest.raises(InvalidRewindTarget):
        orch.edit_turn(reply.identity, "again")


def test_editing_executor_turn_seeds_model_reply(store, registry, sink, ctx, elisp):
    transport = FakeTransport(
        sse_lines("```emacs-lisp\n(buffer-list)\n```"),
        sse_lines("Two buffers."),
        sse_lines(" that failed."),
    )
    orch = _orch(store, transport, registry, sink, ctx)
    orch.submit("list open files")
    orch.edit_and_continue(2, "Apparently")

    turns = store.turns()
    assert [t.actor for t in turns] == [Actor.operator, Actor.model, Actor.model]
    assert turns[2].content == "Apparently that failed."
    assert turns[2].override_prefix == "Apparently"
    assert transport.requests[-1]["messages"][-1]["role"] == "assistant"
