"""Capabilities the engine consumes but does not implement.

A worker capability turns a conversation into text, either incrementally
(``stream_chat``) or in one call (``chat``).  A planner turns a free-text
description into a ``TaskPlan``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator, List, Protocol, runtime_checkable

if TYPE_CHECKING:
    from agentcrew.orchestration.models import TaskPlan


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "system" | "user" | "assistant"
    content: str


@dataclass(frozen=True)
class StreamChunk:
    """One streamed delta; ``done`` marks the end of the stream."""

    content: str = ""
    done: bool = False


@runtime_checkable
class IWorker(Protocol):
    """Interface for a worker's text-generation capability."""

    def stream_chat(self, messages: List[ChatMessage]) -> AsyncIterator[StreamChunk]:
        """Stream a reply as a sequence of deltas.

        Args:
            messages: Conversation to answer

        Returns:
            Async iterator of StreamChunk; raising aborts the attempt
        """
        ...

    async def chat(self, messages: List[ChatMessage]) -> str:
        """Return a complete reply in one call."""
        ...


class ITaskPlanner(Protocol):
    """Interface for turning a description into a decomposed plan."""

    async def plan(self, description: str) -> "TaskPlan":
        ...
