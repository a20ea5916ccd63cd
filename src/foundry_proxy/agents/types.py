from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    CREATED = "created"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.EXPIRED}
)

# Normalized upstream spelling -> local status
_STATUS_ALIASES: dict[str, RunStatus] = {
    "created": RunStatus.CREATED,
    "queued": RunStatus.QUEUED,
    "inprogress": RunStatus.IN_PROGRESS,
    "running": RunStatus.IN_PROGRESS,
    "requiresaction": RunStatus.IN_PROGRESS,
    "cancelling": RunStatus.IN_PROGRESS,
    "canceling": RunStatus.IN_PROGRESS,
    "completed": RunStatus.COMPLETED,
    "failed": RunStatus.FAILED,
    "incomplete": RunStatus.FAILED,
    "cancelled": RunStatus.CANCELLED,
    "canceled": RunStatus.CANCELLED,
    "expired": RunStatus.EXPIRED,
}


def parse_run_status(raw: str | None) -> RunStatus:
    """Map an upstream status string onto :class:`RunStatus`.

    Matching ignores case and separators, so ``in_progress``, ``InProgress``
    and ``IN-PROGRESS`` are the same status. Unknown values are treated as
    still running; the poller's deadline bounds how long that can last.
    """
    key = re.sub(r"[\s_\-]", "", (raw or "").lower())
    status = _STATUS_ALIASES.get(key)
    if status is None:
        logger.warning("Unknown run status %r - treating as in progress", raw)
        return RunStatus.IN_PROGRESS
    return status


@dataclass(slots=True, frozen=True)
class RunError:
    code: Optional[str]
    message: str


@dataclass(slots=True, frozen=True)
class RunSnapshot:
    id: str
    thread_id: str
    status: RunStatus
    created_at: Optional[datetime] = None
    last_error: Optional[RunError] = None
    raw_status: Optional[str] = None


@dataclass(slots=True, frozen=True)
class Message:
    id: str
    thread_id: str
    role: str
    text: str
    created_at: Optional[datetime] = None
    run_id: Optional[str] = None


@dataclass(slots=True, frozen=True)
class AgentInfo:
    id: str
    name: Optional[str] = None
    model: Optional[str] = None
