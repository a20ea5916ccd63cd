"""Shared test helpers: settings builder and an in-memory agent client."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Sequence

from foundry_proxy.agents import AgentClient, AgentInfo, Message, RunError, RunSnapshot, RunStatus
from foundry_proxy.config import Settings
from foundry_proxy.errors import NotFoundError


def make_settings(**overrides: Any) -> Settings:
    """Build Settings from env-style keys without reading the environment file."""
    values: dict[str, Any] = {
        "AI_FOUNDRY_ENDPOINT": "https://foundry.example.com/api/projects/test",
        "AI_FOUNDRY_AGENT_ID": "asst_test",
        "AI_FOUNDRY_AGENT_NAME": "Test Agent",
        "RUN_POLL_INITIAL_INTERVAL": 0.01,
        "RUN_POLL_MAX_INTERVAL": 0.02,
        "RUN_DEADLINE_SECONDS": 1.0,
        "HEALTH_PROBE_TIMEOUT": 0.5,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


class FakeAgentClient(AgentClient):
    """Scriptable AgentClient that records every call.

    ``statuses`` is consumed one entry per ``get_run`` call; the last entry
    repeats forever. An entry may be an exception instance to raise instead.
    """

    def __init__(
        self,
        statuses: Sequence[RunStatus | Exception] = (RunStatus.COMPLETED,),
        replies: Sequence[str] = ("Hello from the agent",),
        *,
        run_error: RunError | None = None,
        get_run_delay: float = 0.0,
    ) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.statuses = list(statuses)
        self.replies = list(replies)
        self.run_error = run_error
        self.get_run_delay = get_run_delay
        self.missing_threads: set[str] = set()
        self.agent = AgentInfo(id="asst_test", name="Test Agent")
        self.agent_error: Exception | None = None
        self.agent_delay = 0.0
        self.closed = False
        self._ids = itertools.count(1)

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def create_thread(self) -> str:
        self.calls.append(("create_thread", ()))
        return f"thread_{next(self._ids)}"

    async def post_message(self, thread_id: str, text: str) -> str:
        self.calls.append(("post_message", (thread_id, text)))
        if thread_id in self.missing_threads:
            raise NotFoundError(f"Not found: /threads/{thread_id}/messages")
        return f"msg_{next(self._ids)}"

    async def create_run(self, thread_id: str) -> RunSnapshot:
        self.calls.append(("create_run", (thread_id,)))
        return RunSnapshot(id=f"run_{next(self._ids)}", thread_id=thread_id, status=RunStatus.QUEUED)

    async def get_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        self.calls.append(("get_run", (thread_id, run_id)))
        if self.get_run_delay:
            await asyncio.sleep(self.get_run_delay)
        entry = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(entry, Exception):
            raise entry
        return RunSnapshot(
            id=run_id,
            thread_id=thread_id,
            status=entry,
            last_error=self.run_error if entry is RunStatus.FAILED else None,
        )

    async def list_messages_since(self, thread_id: str, after_message_id: str) -> Sequence[Message]:
        self.calls.append(("list_messages_since", (thread_id, after_message_id)))
        return [
            Message(id=f"reply_{index}", thread_id=thread_id, role="assistant", text=text)
            for index, text in enumerate(self.replies)
        ]

    async def get_agent(self, agent_id: str) -> AgentInfo:
        self.calls.append(("get_agent", (agent_id,)))
        if self.agent_delay:
            await asyncio.sleep(self.agent_delay)
        if self.agent_error is not None:
            raise self.agent_error
        return self.agent

    async def aclose(self) -> None:
        self.closed = True
