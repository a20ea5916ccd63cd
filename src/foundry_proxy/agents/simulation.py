"""In-memory stand-in for the agent service, for local development."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from ..errors import NotFoundError
from .base import AgentClient
from .types import AgentInfo, Message, RunSnapshot, RunStatus

logger = logging.getLogger(__name__)

# keyword -> canned reply
CANNED_REPLIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("hello", "hi", "hey"),
        "Hello! I'm running in simulation mode, so my answers are canned. "
        "Configure AI_FOUNDRY_ENDPOINT and AGENT_BACKEND=foundry to talk to the real agent.",
    ),
    (
        ("help", "support"),
        "I can answer questions once connected to the agent service. "
        "For now I'm a local simulation used for development.",
    ),
    (
        ("health", "status"),
        "The proxy is up. Check GET /api/health for upstream connectivity.",
    ),
)

# Each run reports these statuses on successive polls
_PROGRESSION = (RunStatus.QUEUED, RunStatus.IN_PROGRESS, RunStatus.COMPLETED)


def simulated_reply(text: str) -> str:
    lowered = text.lower()
    for keywords, reply in CANNED_REPLIES:
        if any(keyword in lowered for keyword in keywords):
            return reply
    return (
        f"Thank you for your question about '{text}'. "
        "I'm a simulated agent, so I can't give a real answer yet."
    )


@dataclass
class _SimThread:
    messages: list[Message] = field(default_factory=list)
    runs: dict[str, int] = field(default_factory=dict)


class SimulatedAgentClient(AgentClient):
    """In-memory threads, capped at ``max_threads``; the oldest is dropped first."""

    def __init__(
        self,
        agent_id: str = "simulated-agent",
        agent_name: str = "Simulated Agent",
        max_threads: int = 1000,
    ) -> None:
        self._agent = AgentInfo(id=agent_id, name=agent_name, model="simulation")
        self.max_threads = max_threads
        self._threads: dict[str, _SimThread] = {}
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_sim{next(self._ids):06d}"

    def _thread(self, thread_id: str) -> _SimThread:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise NotFoundError(f"Thread {thread_id} not found")
        return thread

    async def create_thread(self) -> str:
        thread_id = self._next_id("thread")
        self._threads[thread_id] = _SimThread()
        while len(self._threads) > self.max_threads:
            evicted = next(iter(self._threads))
            del self._threads[evicted]
            logger.debug("[SIMULATION] Evicted thread %s", evicted)
        logger.info("[SIMULATION] Created thread %s", thread_id)
        return thread_id

    async def post_message(self, thread_id: str, text: str) -> str:
        thread = self._thread(thread_id)
        message = Message(
            id=self._next_id("msg"),
            thread_id=thread_id,
            role="user",
            text=text,
            created_at=datetime.now(timezone.utc),
        )
        thread.messages.append(message)
        return message.id

    async def create_run(self, thread_id: str) -> RunSnapshot:
        thread = self._thread(thread_id)
        run_id = self._next_id("run")
        thread.runs[run_id] = 0
        return RunSnapshot(
            id=run_id,
            thread_id=thread_id,
            status=RunStatus.QUEUED,
            created_at=datetime.now(timezone.utc),
        )

    async def get_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        thread = self._thread(thread_id)
        if run_id not in thread.runs:
            raise NotFoundError(f"Run {run_id} not found")
        step = min(thread.runs[run_id] + 1, len(_PROGRESSION) - 1)
        thread.runs[run_id] = step
        status = _PROGRESSION[step]
        if status is RunStatus.COMPLETED and not any(m.run_id == run_id for m in thread.messages):
            last_user = next((m for m in reversed(thread.messages) if m.role == "user"), None)
            thread.messages.append(
                Message(
                    id=self._next_id("msg"),
                    thread_id=thread_id,
                    role="assistant",
                    text=simulated_reply(last_user.text if last_user else ""),
                    created_at=datetime.now(timezone.utc),
                    run_id=run_id,
                )
            )
        return RunSnapshot(id=run_id, thread_id=thread_id, status=status)

    async def list_messages_since(self, thread_id: str, after_message_id: str) -> Sequence[Message]:
        messages = self._thread(thread_id).messages
        for index, message in enumerate(messages):
            if message.id == after_message_id:
                return list(messages[index + 1 :])
        return list(messages)

    async def get_agent(self, agent_id: str) -> AgentInfo:
        return self._agent
