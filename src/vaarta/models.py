# vaarta: Centralized Pydantic v2 models for conversation turns, fenced blocks and execution results; one source of truth for what flows between the store, extractor and executors.

from __future__ import annotations

from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class CustomBaseModel(BaseModel):
    """Pydantic base model configured to forbid unknown fields for strict validation."""
    model_config = ConfigDict(extra="forbid")


class FrozenModel(CustomBaseModel):
    """Strict model whose instances cannot be mutated once created."""
    model_config = ConfigDict(extra="forbid", frozen=True)


class Actor(str, Enum):
    operator = "operator"
    model = "model"
    executor = "executor"


# Wire roles for the chat transport; executor output is replayed as user input.
ACTOR_ROLES = {
    Actor.operator: "user",
    Actor.model: "assistant",
    Actor.executor: "user",
}


class Turn(FrozenModel):
    """One immutable step of conversation history."""

    sequence_index: int = Field(..., ge=0, description="Dense position in the live history at push time")
    identity: int = Field(..., ge=0, description="Session-wide unique id, never reused across rewinds")
    actor: Actor = Field(..., description="Who produced the content")
    content: str = Field(..., description="Text payload")
    branch_id: int = Field(..., ge=0, description="Lineage this turn was pushed on")
    override_prefix: Optional[str] = Field(default=None, description="Operator-supplied seed of an edited model turn")

    @property
    def role(self) -> str:
        return ACTOR_ROLES[self.actor]


class FencedBlock(FrozenModel):
    """A fenced region of a turn's text."""

    tag: str = Field(..., description="Language annotation of the opening fence, trimmed")
    body: str = Field(..., description="Block content with base indentation removed")
    indent: str = Field(default="", description="Leading whitespace of the opening fence")
    fence: str = Field(default="```", description="Backtick run that opened the block")
    closed: bool = Field(default=True, description="False when the closing fence never appeared")

    def to_markdown(self) -> str:
        """Re-join the body with its fence and indentation."""
        lines = [f"{self.indent}{self.fence}{self.tag}"]
        if self.body:
            lines.extend(f"{self.indent}{line}" if line else line for line in self.body.split("\n"))
        if self.closed:
            lines.append(f"{self.indent}{self.fence}")
        return "\n".join(lines)


class Success(CustomBaseModel):
    status: Literal["success"] = "success"
    value: str = Field(..., description="Rendered value of the evaluation")
    output: Optional[str] = Field(default=None, description="Captured standard output, if any")


class Failure(CustomBaseModel):
    status: Literal["failure"] = "failure"
    message: str = Field(..., description="One-line error description")
    trace: str = Field(default="", description="Traceback or diagnostic output")
    output: Optional[str] = Field(default=None, description="Captured standard output, if any")


ExecutionResult = Union[Success, Failure]


def serialize_result(result: ExecutionResult) -> str:
    """Serialize an execution outcome verbatim as the content of an executor turn."""
    return result.model_dump_json(exclude_none=True)
