from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from .types import AgentInfo, Message, RunSnapshot


class AgentClient(ABC):
    """Thin async facade over the upstream agent service.

    Implementations hold no state beyond their connection and never retry;
    retry policy belongs to the poller and the session manager.
    """

    @abstractmethod
    async def create_thread(self) -> str:
        """Create an empty conversation thread and return its id."""

    @abstractmethod
    async def post_message(self, thread_id: str, text: str) -> str:
        """Append a user message to the thread and return the message id."""

    @abstractmethod
    async def create_run(self, thread_id: str) -> RunSnapshot:
        """Start the agent against the thread's pending messages."""

    @abstractmethod
    async def get_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        """Read the current status of a run."""

    @abstractmethod
    async def list_messages_since(self, thread_id: str, after_message_id: str) -> Sequence[Message]:
        """Messages created after ``after_message_id``, oldest first."""

    @abstractmethod
    async def get_agent(self, agent_id: str) -> AgentInfo:
        """Fetch agent metadata; used as a cheap reachability check."""

    async def aclose(self) -> None:
        """Release the underlying connection."""
