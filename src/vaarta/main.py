# vaarta: Interactive REPL wiring the orchestrator to the console: operator lines become turns, `:` lines are commands, Ctrl-C stops the current stream or execution without leaving the session.

import pathlib
import sys
from typing import Optional

from .client import ChatCompletionsClient
from .context import Context, InputHistory
from .errors import VaartaError
from .executors import build_default_registry
from .orchestrator import ConversationState, Orchestrator
from .prompts import resolve_system_prompt
from .settings import load_settings
from .store import ContextStore
from .transcript import ConsoleSink

HELP_LINES = [
    ":history [n]           - Show the last n turns of the live history (default 10)",
    ":rewind <index>        - Drop the turn at <index> and everything after it",
    ":rewind-id <id>        - Same as :rewind, addressing the turn by the id shown in :history",
    ":edit <index> <text>   - Replace turn <index>: operator turns are resubmitted as <text>;",
    "                         model and executor turns become a model reply starting with <text>",
    ":edit-id <id> <text>   - Same as :edit, addressing the turn by the id shown in :history",
    ":continue              - Run a pending block or ask the model again (or press Enter)",
    ":rerun                 - Ask the model again for the last operator message",
    ":model <model> <msg>   - Use model for only this message",
    ":status                - Show conversation state, branch and endpoint",
    ":transcript            - Print the delimited transcript of this session",
    ":inputs [n]            - Show recent operator inputs from the input history",
    ":inputs clear          - Move the input history aside to a .bak.jsonl file",
    ":help                  - Show this help",
    ":quit                  - Exit",
]


class Vaarta:
    def __init__(self, workdir: pathlib.Path, model: Optional[str] = None) -> None:
        self.workdir = pathlib.Path(workdir).resolve()
        self.settings = load_settings(self.workdir)
        self.ctx = Context(self.workdir, settings=self.settings)
        self.client = ChatCompletionsClient(model=model, settings=self.settings)
        self.store = ContextStore(system_prompt=resolve_system_prompt(self.workdir, self.settings, ctx=self.ctx))
        self.sink = ConsoleSink()
        self.orch = Orchestrator(
            self.store,
            self.client,
            build_default_registry(self.settings, cwd=str(self.workdir)),
            sink=self.sink,
            ctx=self.ctx,
        )
        self.inputs = InputHistory(self.workdir)

    # ---------- Commands ----------

    def cmd_help(self, ctx: Context) -> None:
        """Print a list of supported commands and brief descriptions."""
        ctx.send_to_user("Commands:")
        for line in HELP_LINES:
            ctx.send_to_user(line)

    def cmd_history(self, ctx: Context, max_turns: int = 10) -> None:
        """Print the last N live turns with their sequence index and identity."""
        turns = self.store.turns()
        if not turns:
            ctx.send_to_user("History is empty.")
            return
        last = turns[-max_turns:] if max_turns > 0 else turns
        ctx.send_to_user(f"Last {len(last)} of {len(turns)} turn(s), branch {self.store.branch_id}:")
        for t in last:
            first_line = t.content.strip().splitlines()[0] if t.content.strip() else ""
            if len(first_line) > 100:
                first_line = first_line[:97] + "..."
            ctx.send_to_user(f"  #{t.sequence_index} (id {t.identity}) {t.actor.value}: {first_line}")

    def cmd_status(self, ctx: Context) -> None:
        ctx.send_to_user(f"State: {self.orch.state.value}")
        ctx.send_to_user(f"Turns: {len(self.store)} (branch {self.store.branch_id})")
        ctx.send_to_user(f"Endpoint: {self.client.provider} {self.client.chat_url()} model={self.client.model}")
        ctx.send_to_user(f"Executors: {', '.join(self.orch.executors.tags()) or '(none)'}")
        pending = self.orch.pending_continuation()
        if pending is ConversationState.awaiting_execution:
            ctx.send_to_user("Pending: last block has not been executed (:continue)")
        elif pending is ConversationState.awaiting_model:
            ctx.send_to_user("Pending: executor result has not been sent to the model (:continue)")
        if self.orch.last_error:
            ctx.send_to_user(f"Last error: {self.orch.last_error}")

    def cmd_inputs(self, ctx: Context, n: int = 10) -> None:
        entries = self.inputs.load()
        if not entries:
            ctx.send_to_user("No recorded inputs.")
            return
        for text in entries[-n:]:
            ctx.send_to_user(f"  {text}")

    def _parse_index(self, ctx: Context, raw: str, usage: str) -> Optional[int]:
        try:
            return int(raw)
        except ValueError:
            ctx.error_message(usage)
            return None

    def handle_user_input(self, ctx: Context, text: str) -> bool:
        """
        Handle a line of operator input: either run a command or advance the conversation.

        Returns False when the session should end.
        """
        if text.startswith(":model"):
            parts = text.split(maxsplit=2)
            if len(parts) < 3 or not parts[2].strip():
                ctx.error_message("Usage: :model <model> <message>")
                return True
            ctx.log(f"Using per-message model override: {parts[1]}")
            self.inputs.append(parts[2])
            self.orch.submit(parts[2], model=parts[1])
            return True

        if not text.startswith(":"):
            if text:
                self.inputs.append(text)
            self.orch.submit(text)
            return True

        parts = text.split(maxsplit=2)
        cmd = parts[0]
        if cmd == ":help":
            self.cmd_help(ctx)
        elif cmd == ":history":
            n = self._parse_index(ctx, parts[1], "Usage: :history [n]") if len(parts) > 1 else 10
            if n is not None:
                self.cmd_history(ctx, n)
        elif cmd == ":rewind":
            if len(parts) < 2:
                ctx.error_message("Usage: :rewind <index>")
            else:
                index = self._parse_index(ctx, parts[1], "Usage: :rewind <index>")
                if index is not None:
                    self.orch.rewind_to(index)
                    ctx.send_to_user(f"Rewound to #{index}; {len(self.store)} turn(s) remain.")
        elif cmd == ":rewind-id":
            if len(parts) < 2:
                ctx.error_message("Usage: :rewind-id <id>")
            else:
                identity = self._parse_index(ctx, parts[1], "Usage: :rewind-id <id>")
                if identity is not None:
                    self.orch.rewind_to_identity(identity)
                    ctx.send_to_user(f"Rewound to turn id {identity}; {len(self.store)} turn(s) remain.")
        elif cmd == ":edit":
            if len(parts) < 3:
                ctx.error_message("Usage: :edit <index> <text>")
            else:
                index = self._parse_index(ctx, parts[1], "Usage: :edit <index> <text>")
                if index is not None:
                    self.orch.edit_and_continue(index, parts[2])
        elif cmd == ":edit-id":
            if len(parts) < 3:
                ctx.error_message("Usage: :edit-id <id> <text>")
            else:
                identity = self._parse_index(ctx, parts[1], "Usage: :edit-id <id> <text>")
                if identity is not None:
                    self.orch.edit_turn(identity, parts[2])
        elif cmd == ":continue":
            self.orch.continue_without_input()
        elif cmd == ":rerun":
            self.orch.rerun()
        elif cmd == ":status":
            self.cmd_status(ctx)
        elif cmd == ":transcript":
            ctx.send_to_user(self.sink.transcript)
        elif cmd == ":inputs" and len(parts) > 1 and parts[1] == "clear":
            self.inputs.clear()
            ctx.send_to_user("Input history cleared.")
        elif cmd == ":inputs":
            n = self._parse_index(ctx, parts[1], "Usage: :inputs [n]") if len(parts) > 1 else 10
            if n is not None:
                self.cmd_inputs(ctx, n)
        elif cmd == ":quit":
            ctx.send_to_user("Goodbye.")
            return False
        else:
            ctx.error_message(f"Unknown command: {cmd}. Type :help for help.")
        return True

    def run(self) -> None:
        """Start the interactive REPL loop."""
        print(f"vaarta ready in {self.workdir}")
        print(f"Model: {self.client.model} via {self.client.provider}")
        for problem in self.client.problems:
            self.ctx.error_message(problem)
        print("Type :help for commands. Ctrl-C stops the current response.")
        ctx = self.ctx
        while True:
            try:
                text = input("> ").strip()
            except EOFError:
                print("\nGoodbye.")
                break
            except KeyboardInterrupt:
                print()
                continue
            if not text and self.orch.pending_continuation() is None:
                continue
            try:
                if not self.handle_user_input(ctx, text):
                    break
            except KeyboardInterrupt:
                self.orch.stop()
                print("\n(stopped)")
            except VaartaError as e:
                ctx.error_message(str(e))


def main() -> None:
    """
    vaarta CLI entrypoint.

    Usage:
        vaarta [--model MODEL|-m MODEL] [workdir]

    Notes:
        - OPENAI_API_KEY (or the Azure variables) must be set in the environment
          or in <workdir>/.vaarta/settings.yaml.
        - If workdir is not supplied, the current directory is used.
    """
    args = sys.argv[1:]

    if any(a in ("-h", "--help") for a in args):
        print("Usage: vaarta [--model MODEL|-m MODEL] [workdir]")
        print("Options:")
        print("  -m, --model MODEL   Model (or Azure deployment) used for this session.")
        print("Environment:")
        print("  OPENAI_API_KEY, AI_MODEL, OPENAI_BASE_URL, AZURE_OPENAI_API_KEY, AZURE_OPENAI_ENDPOINT,")
        print("  AZURE_OPENAI_MODEL, VAARTA_HTTP_TIMEOUT, VAARTA_ENABLE_SHELL, VAARTA_VERBOSE")
        return

    model = None
    workdir_arg = None
    i = 0
    while i < len(args):
        a = args[i]
        if a in ("-m", "--model"):
            if i + 1 >= len(args):
                print(f"error: {a} requires a MODEL argument")
                return
            model = args[i + 1]
            i += 2
            continue
        if a.startswith("--model="):
            model = a.split("=", 1)[1]
            i += 1
            continue
        if a.startswith("-"):
            print(f"error: unknown option: {a}")
            return
        if workdir_arg is None:
            workdir_arg = a
        i += 1

    workdir = pathlib.Path(workdir_arg).resolve() if workdir_arg else pathlib.Path(".").resolve()
    Vaarta(workdir, model=model).run()


if __name__ == "__main__":
    main()
