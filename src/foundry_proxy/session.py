"""Conversation turns: thread resolution, per-thread exclusion, reply assembly."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Literal, Sequence

from .agents import AgentClient, Message
from .config import Settings
from .errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    RunFailedError,
    TurnCancelledError,
)
from .poller import PollingPolicy, RunPoller, until_cancelled

logger = logging.getLogger(__name__)

ConflictPolicy = Literal["reject", "wait"]


@dataclass(slots=True, frozen=True)
class TurnResult:
    thread_id: str
    text: str
    run_id: str
    created_thread: bool = False


class ThreadLockRegistry:
    """One ``asyncio.Lock`` per thread id, created on first use.

    Locks are never evicted; the number of distinct thread ids seen by one
    process is expected to stay small.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = self._locks[thread_id] = asyncio.Lock()
        return lock

    def is_busy(self, thread_id: str) -> bool:
        lock = self._locks.get(thread_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(
        self,
        thread_id: str,
        *,
        policy: ConflictPolicy = "reject",
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[None]:
        """Hold the thread's lock for the duration of the block.

        With ``reject`` a busy thread raises :class:`ConflictError` at once;
        with ``wait`` the caller queues for at most ``timeout`` seconds, or
        until ``cancel_event`` is set.
        """
        lock = self._lock_for(thread_id)
        if policy == "reject":
            if lock.locked():
                raise ConflictError(f"A request for thread {thread_id} is already in progress")
            await lock.acquire()
        else:
            await self._wait_for(lock, thread_id, timeout, cancel_event)
        try:
            yield
        finally:
            lock.release()

    @staticmethod
    async def _wait_for(
        lock: asyncio.Lock,
        thread_id: str,
        timeout: float | None,
        cancel_event: asyncio.Event | None,
    ) -> None:
        acquire = asyncio.ensure_future(lock.acquire())
        pending = {acquire}
        stop = None
        if cancel_event is not None:
            stop = asyncio.ensure_future(cancel_event.wait())
            pending.add(stop)
        try:
            await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            if acquire.done() and not acquire.cancelled():
                lock.release()
            raise
        finally:
            if stop is not None and not stop.done():
                stop.cancel()
            if not acquire.done():
                acquire.cancel()

        cancelled = cancel_event is not None and cancel_event.is_set()
        if acquire.done() and not acquire.cancelled():
            # the lock can be granted in the same tick the caller gives up
            if not cancelled:
                return
            lock.release()
        if cancelled:
            raise TurnCancelledError("The request was cancelled")
        raise ConflictError(f"Timed out waiting for the in-progress request on thread {thread_id}")


def assemble_reply(messages: Sequence[Message], run_id: str | None = None) -> str:
    """Join the assistant messages of a run, oldest first, with a blank line between them."""
    replies = [
        message.text
        for message in messages
        if message.role == "assistant"
        and message.text.strip()
        and (run_id is None or message.run_id in (None, run_id))
    ]
    return "\n\n".join(replies)


class ConversationSessionManager:
    """Runs conversation turns against the agent service."""

    def __init__(
        self,
        client: AgentClient,
        poller: RunPoller,
        *,
        max_message_length: int = 4000,
        conflict_policy: ConflictPolicy = "reject",
        locks: ThreadLockRegistry | None = None,
    ) -> None:
        self._client = client
        self._poller = poller
        self.max_message_length = max_message_length
        self.conflict_policy = conflict_policy
        self.locks = locks or ThreadLockRegistry()
        self._active: set[asyncio.Event] = set()
        self._closing = False

    @classmethod
    def from_settings(cls, client: AgentClient, settings: Settings) -> "ConversationSessionManager":
        return cls(
            client,
            RunPoller(client, PollingPolicy.from_settings(settings)),
            max_message_length=settings.max_message_length,
            conflict_policy=settings.conflict_policy,
        )

    def validate_message(self, text: str | None) -> str:
        if text is None or not text.strip():
            raise InvalidInputError("Message is required")
        if len(text) > self.max_message_length:
            raise InvalidInputError(
                f"Message exceeds the maximum length of {self.max_message_length} characters"
            )
        return text

    async def create_thread(self, cancel_event: asyncio.Event | None = None) -> str:
        if self._closing:
            raise TurnCancelledError("The server is shutting down")
        thread_id = await until_cancelled(self._client.create_thread(), cancel_event)
        logger.info("[SESSION] Created thread %s", thread_id)
        return thread_id

    def _remaining(self, started: float) -> float:
        """Seconds left of the turn's deadline, shared by lock wait and polling."""
        return max(self._poller.policy.deadline - (self._poller.clock() - started), 0.0)

    async def converse(
        self,
        thread_id: str | None,
        text: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """
        Run one conversational turn.

        Args:
            thread_id: Existing thread to continue, or empty to start a new one
            text: The user's message
            cancel_event: Set by the caller (e.g. on client disconnect) to abandon the turn

        Returns:
            The thread id and the assistant's reply
        """
        message = self.validate_message(text)
        if self._closing:
            raise TurnCancelledError("The server is shutting down")

        started = self._poller.clock()
        event = cancel_event or asyncio.Event()
        self._active.add(event)
        try:
            thread_id = (thread_id or "").strip()
            created = False
            if not thread_id:
                thread_id = await self.create_thread(event)
                created = True

            async with self.locks.hold(
                thread_id,
                policy=self.conflict_policy,
                timeout=self._remaining(started),
                cancel_event=event,
            ):
                return await self._run_turn(thread_id, message, event, created, started)
        except ConflictError:
            logger.warning("[SESSION] Rejected concurrent turn on thread %s", thread_id)
            raise
        finally:
            self._active.discard(event)

    async def _run_turn(
        self,
        thread_id: str,
        text: str,
        cancel_event: asyncio.Event,
        created: bool,
        started: float,
    ) -> TurnResult:
        self._checkpoint(cancel_event)
        logger.info("[SESSION] Posting message (%d chars) to thread %s", len(text), thread_id)
        try:
            message_id = await until_cancelled(
                self._client.post_message(thread_id, text), cancel_event
            )
            run = await until_cancelled(self._client.create_run(thread_id), cancel_event)
        except NotFoundError as exc:
            raise NotFoundError(f"Thread {thread_id} was not found", cause=exc) from exc
        logger.info("[SESSION] Started run %s on thread %s", run.id, thread_id)

        await self._poller.wait_for_completion(
            thread_id,
            run.id,
            cancel_event=cancel_event,
            initial=run,
            budget=self._remaining(started),
        )

        messages = await until_cancelled(
            self._client.list_messages_since(thread_id, message_id), cancel_event
        )
        reply = assemble_reply(messages, run.id)
        if not reply:
            logger.warning(
                "[SESSION] Run %s completed but %d new messages held no assistant text",
                run.id,
                len(messages),
            )
            raise RunFailedError("Run completed without an assistant response", run_id=run.id)

        logger.info("[SESSION] Run %s produced a %d char reply", run.id, len(reply))
        return TurnResult(thread_id=thread_id, text=reply, run_id=run.id, created_thread=created)

    @staticmethod
    def _checkpoint(cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            raise TurnCancelledError("The request was cancelled")

    @property
    def active_turns(self) -> int:
        return len(self._active)

    async def shutdown(self) -> None:
        """Cancel in-flight turns and refuse new ones."""
        self._closing = True
        if self._active:
            logger.info("[SESSION] Cancelling %d in-flight turns", len(self._active))
        for event in list(self._active):
            event.set()
