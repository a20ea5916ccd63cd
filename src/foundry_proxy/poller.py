"""Drive a single agent run to a terminal status.

The agent service executes runs asynchronously: the proxy creates a run and
then reads its status until it completes, fails, or the local deadline
passes. Polling is always scoped to the request that started the run; there
is no background task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, TypeVar

from .agents import AgentClient, RunSnapshot, RunStatus
from .config import Settings
from .errors import (
    RunFailedError,
    RunTimeoutError,
    TurnCancelledError,
    UpstreamAuthError,
    UpstreamConnectionError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _discard_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


async def until_cancelled(
    awaitable: Awaitable[T],
    cancel_event: asyncio.Event | None,
    *,
    timeout: float | None = None,
) -> T:
    """
    Await ``awaitable`` unless ``cancel_event`` is set first.

    The losing side is cancelled, so an in-flight upstream call never holds
    the turn open after the caller has gone.

    Raises:
        TurnCancelledError: ``cancel_event`` was set before the call finished
        asyncio.TimeoutError: ``timeout`` seconds passed first
    """
    if cancel_event is None:
        return await asyncio.wait_for(awaitable, timeout=timeout)

    call = asyncio.ensure_future(awaitable)
    if cancel_event.is_set():
        call.cancel()
        raise TurnCancelledError("The request was cancelled")

    stop = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {call, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (call, stop):
            if not task.done():
                task.cancel()
                task.add_done_callback(_discard_result)

    if stop in done:
        if call.done():
            _discard_result(call)
        raise TurnCancelledError("The request was cancelled")
    if call in done:
        return call.result()
    raise asyncio.TimeoutError()


@dataclass(slots=True, frozen=True)
class PollingPolicy:
    """Interval schedule and wall-clock budget for one run."""

    initial_interval: float = 1.0
    max_interval: float = 4.0
    backoff_factor: float = 1.5
    deadline: float = 90.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "PollingPolicy":
        return cls(
            initial_interval=settings.poll_initial_interval,
            max_interval=settings.poll_max_interval,
            backoff_factor=settings.poll_backoff_factor,
            deadline=settings.run_deadline,
        )

    def intervals(self) -> Iterator[float]:
        """initial, initial*factor, ... capped at max_interval."""
        interval = min(self.initial_interval, self.max_interval)
        while True:
            yield interval
            interval = min(interval * self.backoff_factor, self.max_interval)


class RunPoller:
    """Polls run status through an :class:`AgentClient` until it is terminal."""

    def __init__(
        self,
        client: AgentClient,
        policy: PollingPolicy,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.policy = policy
        self.clock = clock

    async def wait_for_completion(
        self,
        thread_id: str,
        run_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
        initial: RunSnapshot | None = None,
        budget: float | None = None,
    ) -> RunSnapshot:
        """
        Wait until the run reaches a terminal status.

        Args:
            thread_id: Thread that owns the run
            run_id: Run to watch
            cancel_event: Set by the caller to abandon the turn
            initial: Snapshot returned when the run was created, if any
            budget: Seconds left for this wait; defaults to the policy deadline

        Returns:
            The completed run snapshot

        Raises:
            RunFailedError: the run failed or was cancelled upstream
            RunTimeoutError: the deadline passed or the run expired upstream
            TurnCancelledError: ``cancel_event`` was set
        """
        started = self.clock()
        deadline = started + (self.policy.deadline if budget is None else budget)
        intervals = self.policy.intervals()
        snapshot = initial
        previous = initial.status if initial else RunStatus.CREATED
        polls = 0

        while snapshot is None or not snapshot.status.is_terminal:
            self._raise_if_cancelled(cancel_event, run_id)
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise self._expired(run_id, polls, started)

            await self._sleep(min(next(intervals), remaining), cancel_event, run_id)

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise self._expired(run_id, polls, started)

            try:
                snapshot = await until_cancelled(
                    self._client.get_run(thread_id, run_id), cancel_event, timeout=remaining
                )
            except asyncio.TimeoutError:
                raise self._expired(run_id, polls, started) from None
            except TurnCancelledError:
                logger.info("[RUN_POLLER] Status read for run %s abandoned on cancel", run_id)
                raise
            except UpstreamAuthError:
                raise
            except UpstreamConnectionError as exc:
                # Status reads are safe to repeat; try again on the next tick.
                logger.warning("[RUN_POLLER] Status read for run %s failed: %s", run_id, exc.message)
                continue
            finally:
                polls += 1

            if snapshot.status is not previous:
                logger.info(
                    "[RUN_POLLER] Run %s status change: %s -> %s at %.1fs",
                    run_id,
                    previous.value,
                    snapshot.status.value,
                    self.clock() - started,
                )
                previous = snapshot.status

        logger.info(
            "[RUN_POLLER] Polling finished for run %s after %d polls in %.1fs. Final status: %s",
            run_id,
            polls,
            self.clock() - started,
            snapshot.status.value,
        )
        return self._settle(snapshot)

    def _settle(self, snapshot: RunSnapshot) -> RunSnapshot:
        if snapshot.status is RunStatus.COMPLETED:
            return snapshot
        if snapshot.status is RunStatus.FAILED:
            error = snapshot.last_error
            detail = error.message if error else "No error details provided"
            code = error.code if error else None
            logger.error("[RUN_POLLER] Run %s failed: code=%s message=%s", snapshot.id, code, detail)
            raise RunFailedError(detail, code=code, run_id=snapshot.id)
        if snapshot.status is RunStatus.CANCELLED:
            logger.warning("[RUN_POLLER] Run %s was cancelled upstream", snapshot.id)
            raise RunFailedError("Run was cancelled", code="cancelled", run_id=snapshot.id)
        logger.warning("[RUN_POLLER] Run %s expired upstream", snapshot.id)
        raise RunTimeoutError("The agent run expired before completing", run_id=snapshot.id)

    def _expired(self, run_id: str, polls: int, started: float) -> RunTimeoutError:
        elapsed = self.clock() - started
        logger.warning(
            "[RUN_POLLER] Run %s still running after %.1fs (%d polls); giving up",
            run_id,
            elapsed,
            polls,
        )
        return RunTimeoutError(
            f"The agent did not respond within {self.policy.deadline:g} seconds",
            run_id=run_id,
        )

    @staticmethod
    def _raise_if_cancelled(cancel_event: asyncio.Event | None, run_id: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("[RUN_POLLER] Polling for run %s cancelled", run_id)
            raise TurnCancelledError("The request was cancelled")

    async def _sleep(self, seconds: float, cancel_event: asyncio.Event | None, run_id: str) -> None:
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self._raise_if_cancelled(cancel_event, run_id)
