"""Conversation model: an append-only sequence of messages.

Messages are never edited in place. A stage that needs its own history
takes a :meth:`Conversation.copy` and appends to that copy only, which is how
trace tasks get private conversations after the checkpoint.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Literal

Role = Literal["user", "assistant", "tool"]


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    """One tool call requested by the model within a round.

    Attributes
    ----------
    call_id : str
        Id assigned by the model; batched calls get ``"<id>:<index>"``.
    name : str
        Tool name as requested.
    arguments : Any
        Arguments after canonicalisation (JSON strings decoded).
    result : str | None
        Result text once the call has run.
    """

    call_id: str
    name: str
    arguments: Any
    result: str | None = None


@dataclass(frozen=True, slots=True)
class Message:
    """A single conversation entry.

    Tool results keep the id, name and arguments of the call they answer so
    that model backends can rebuild native tool-call structure.
    """

    role: Role
    text: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_arguments: Any = None

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", text=text)

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role="assistant", text=text)

    @classmethod
    def tool_result(cls, record: ToolCallRecord) -> Message:
        return cls(
            role="tool",
            text=record.result or "",
            tool_call_id=record.call_id,
            tool_name=record.name,
            tool_arguments=record.arguments,
        )

    def flatten(self) -> tuple[str, str]:
        """Return a ``(role, text)`` pair; tool results become user narrative."""
        if self.role == "tool":
            return "user", f"[tool {self.tool_name}] {self.text}"
        return self.role, self.text


class Conversation:
    """Append-only ordered list of :class:`Message` objects."""

    __slots__ = ("_messages",)

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def add_user(self, text: str) -> None:
        self.append(Message.user(text))

    def copy(self) -> Conversation:
        """Return a private copy; appends to it never reach this conversation."""
        return Conversation(self._messages)

    def flatten(self) -> list[tuple[str, str]]:
        """Lossy role+text view used for checkpoints and equality checks."""
        return [m.flatten() for m in self._messages]

    @classmethod
    def from_flat(cls, pairs: Iterable[tuple[str, str]]) -> Conversation:
        out = cls()
        for role, text in pairs:
            out.append(Message(role="assistant" if role == "assistant" else "user", text=text))
        return out

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]


__all__ = ["Conversation", "Message", "Role", "ToolCallRecord"]
