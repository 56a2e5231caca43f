"""
Shared data models.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True)
class Document:
    text: str  # exactly as uploaded
    value: Any = field(compare=False, repr=False)

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ExecutionResult:
    """
    Outcome of running one snippet in the sandbox.

    A snippet that runs but never assigns the output slot is still a success
    (`assigned` is False). Assigning `None` is a distinct, assigned result.
    """

    status: str  # "ok" | "err"
    value: Any = None
    assigned: bool = False
    error: str | None = None
    stdout: str = ""

    @classmethod
    def ok(cls, value: Any, stdout: str = "") -> ExecutionResult:
        return cls(status="ok", value=value, assigned=True, stdout=stdout)

    @classmethod
    def undefined(cls, stdout: str = "") -> ExecutionResult:
        return cls(status="ok", assigned=False, stdout=stdout)

    @classmethod
    def err(cls, message: str) -> ExecutionResult:
        return cls(status="err", error=message or "Unknown error")

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        if not self.is_ok:
            return {"status": "err", "error": self.error}
        data: dict[str, Any] = {"status": "ok", "assigned": self.assigned}
        if self.assigned:
            data["value"] = self.value
        if self.stdout:
            data["stdout"] = self.stdout
        return data


@dataclass(frozen=True)
class ExecutionRequest:
    code: str
    document: Any


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    tool_name: str
    arguments: str  # raw JSON text as sent by the model
    status: str = "pending"  # "pending" | "completed"
    result: ExecutionResult | None = None

    def complete(self, result: ExecutionResult) -> ToolInvocation:
        if self.status == "completed":
            raise ValueError(f"Tool invocation {self.id} is already completed")
        return replace(self, status="completed", result=result)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "status": self.status,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass(frozen=True)
class Message:
    role: str  # "system" | "user" | "assistant" | "tool"
    content: str | None = None
    tool_invocations: tuple[ToolInvocation, ...] = ()
    tool_call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_invocations:
            data["tool_invocations"] = [t.to_dict() for t in self.tool_invocations]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data


class Conversation:
    """Append-only message history."""

    def __init__(self, messages: list[Message] | tuple[Message, ...] = ()) -> None:
        self._messages: list[Message] = list(messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def extend(self, messages: list[Message] | tuple[Message, ...]) -> None:
        self._messages.extend(messages)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)


# -----------------------------
# Remote model stream items
# -----------------------------
@dataclass(frozen=True)
class ModelTextDelta:
    text: str


@dataclass(frozen=True)
class ModelToolCall:
    call_id: str
    name: str
    arguments: str


# -----------------------------
# Conversation events
# -----------------------------
@dataclass(frozen=True)
class TextDelta:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text_delta", "text": self.text}


@dataclass(frozen=True)
class ToolInvocationRequested:
    invocation: ToolInvocation

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_invocation_requested", "invocation": self.invocation.to_dict()}


@dataclass(frozen=True)
class ToolInvocationCompleted:
    invocation: ToolInvocation

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_invocation_completed", "invocation": self.invocation.to_dict()}


@dataclass(frozen=True)
class RoundLimitReached:
    rounds: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "round_limit_reached", "rounds": self.rounds}


@dataclass(frozen=True)
class TurnComplete:
    messages: tuple[Message, ...]

    @property
    def final_text(self) -> str:
        for message in reversed(self.messages):
            if message.role == "assistant" and message.content:
                return message.content
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "turn_complete",
            "final_text": self.final_text,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass(frozen=True)
class TurnFailed:
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "turn_failed", "error": self.error}


ConversationEvent = (
    TextDelta
    | ToolInvocationRequested
    | ToolInvocationCompleted
    | RoundLimitReached
    | TurnComplete
    | TurnFailed
)
