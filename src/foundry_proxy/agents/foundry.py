"""Azure AI Foundry agent client built on the ``azure-ai-agents`` SDK."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Sequence, TypeVar

from azure.ai.agents.aio import AgentsClient
from azure.ai.agents.models import ListSortOrder
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)

from ..errors import NotFoundError, UpstreamAuthError, UpstreamConnectionError
from .base import AgentClient
from .types import AgentInfo, Message, RunError, RunSnapshot, parse_run_status

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _field(obj: Any, name: str) -> Any:
    """Read a model attribute; SDK models also behave as mappings."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _enum_value(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _message_text(content: Any) -> str:
    """Concatenate the text parts of a message; other part types are skipped."""
    parts: list[str] = []
    for item in content or []:
        if _enum_value(_field(item, "type")) != "text":
            continue
        value = _field(_field(item, "text"), "value")
        if isinstance(value, str):
            parts.append(value)
    return "".join(parts)


def _to_snapshot(run: Any, thread_id: str) -> RunSnapshot:
    run_id = _field(run, "id")
    if not run_id:
        raise UpstreamConnectionError("Agent service returned a run without an id")
    raw_status = _enum_value(_field(run, "status"))
    last_error = _field(run, "last_error")
    error = None
    if last_error:
        error = RunError(
            code=_field(last_error, "code"),
            message=_field(last_error, "message") or "No error details provided",
        )
    return RunSnapshot(
        id=run_id,
        thread_id=_field(run, "thread_id") or thread_id,
        status=parse_run_status(raw_status),
        created_at=_timestamp(_field(run, "created_at")),
        last_error=error,
        raw_status=raw_status,
    )


def _to_message(message: Any, thread_id: str) -> Message:
    return Message(
        id=_field(message, "id"),
        thread_id=_field(message, "thread_id") or thread_id,
        role=(_enum_value(_field(message, "role")) or "").lower(),
        text=_message_text(_field(message, "content")),
        created_at=_timestamp(_field(message, "created_at")),
        run_id=_field(message, "run_id"),
    )


class FoundryAgentClient(AgentClient):
    """Talks to the threads/messages/runs operations of a Foundry project."""

    def __init__(
        self,
        client: AgentsClient,
        agent_id: str,
        *,
        credential: Any = None,
        timeout: float = 30.0,
    ) -> None:
        self.agent_id = agent_id
        self._client = client
        self._credential = credential
        self._timeout = timeout

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """
        Await one SDK call and translate its failures.

        Args:
            operation: Short name used in logs and error messages
            awaitable: The pending SDK call

        Returns:
            Whatever the SDK returned
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamConnectionError(
                f"Agent service did not answer {operation} within {self._timeout:g}s", cause=exc
            ) from exc
        except ResourceNotFoundError as exc:
            raise NotFoundError(f"Not found: {operation}", cause=exc) from exc
        except ClientAuthenticationError as exc:
            raise UpstreamAuthError(
                "Agent service rejected credentials", cause=exc, status_code=exc.status_code
            ) from exc
        except HttpResponseError as exc:
            if exc.status_code in (401, 403):
                raise UpstreamAuthError(
                    f"Agent service rejected credentials ({exc.status_code})",
                    cause=exc,
                    status_code=exc.status_code,
                ) from exc
            logger.warning("[FOUNDRY] %s failed (%s): %s", operation, exc.status_code, exc.reason)
            raise UpstreamConnectionError(
                f"Agent service returned {exc.status_code}", cause=exc, status_code=exc.status_code
            ) from exc
        except AzureError as exc:
            raise UpstreamConnectionError(
                f"Agent service request failed: {type(exc).__name__}", cause=exc
            ) from exc

    async def create_thread(self) -> str:
        thread = await self._call("create thread", self._client.threads.create())
        thread_id = _field(thread, "id")
        if not thread_id:
            raise UpstreamConnectionError("Agent service did not return a thread id")
        logger.info("[FOUNDRY] Created thread %s", thread_id)
        return thread_id

    async def post_message(self, thread_id: str, text: str) -> str:
        message = await self._call(
            f"thread {thread_id}",
            self._client.messages.create(thread_id=thread_id, role="user", content=text),
        )
        message_id = _field(message, "id")
        if not message_id:
            raise UpstreamConnectionError("Agent service did not return a message id")
        return message_id

    async def create_run(self, thread_id: str) -> RunSnapshot:
        run = await self._call(
            f"thread {thread_id}",
            self._client.runs.create(thread_id=thread_id, agent_id=self.agent_id),
        )
        return _to_snapshot(run, thread_id)

    async def get_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        run = await self._call(
            f"run {run_id}",
            self._client.runs.get(thread_id=thread_id, run_id=run_id),
        )
        return _to_snapshot(run, thread_id)

    async def _newest_first(self, thread_id: str, after_message_id: str) -> list[Any]:
        collected: list[Any] = []
        pages = self._client.messages.list(thread_id=thread_id, order=ListSortOrder.DESCENDING)
        async for item in pages:
            if _field(item, "id") == after_message_id:
                break
            collected.append(item)
        return collected

    async def list_messages_since(self, thread_id: str, after_message_id: str) -> Sequence[Message]:
        # Newest first until the posted message, so only the new tail is read
        items = await self._call(f"thread {thread_id}", self._newest_first(thread_id, after_message_id))
        try:
            return [_to_message(item, thread_id) for item in reversed(items)]
        except (KeyError, TypeError) as exc:
            raise UpstreamConnectionError("Agent service returned a malformed message", cause=exc) from exc

    async def get_agent(self, agent_id: str) -> AgentInfo:
        agent = await self._call(f"agent {agent_id}", self._client.get_agent(agent_id))
        return AgentInfo(
            id=_field(agent, "id") or agent_id,
            name=_field(agent, "name"),
            model=_field(agent, "model"),
        )

    async def aclose(self) -> None:
        await self._client.close()
        if self._credential is not None:
            await self._credential.close()
