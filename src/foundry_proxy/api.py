from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from .config import Settings
from .health import HealthProber
from .schemas import ChatRequest, ChatResponse, ThreadResponse
from .session import ConversationSessionManager

router = APIRouter()

logger = logging.getLogger(__name__)

DISCONNECT_POLL_INTERVAL = 0.5


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_manager(request: Request) -> ConversationSessionManager:
    return request.app.state.sessions


def get_health_prober(request: Request) -> HealthProber:
    return request.app.state.prober


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set ``cancel_event`` once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling turn")
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


@router.post("/api/chat", response_model=ChatResponse)
@router.post("/chat", response_model=ChatResponse, include_in_schema=False)
async def chat(
    payload: ChatRequest,
    request: Request,
    settings: Settings = Depends(get_app_settings),
    sessions: ConversationSessionManager = Depends(get_session_manager),
) -> ChatResponse:
    logger.info("Chat request received (thread: %s)", payload.thread_id or "new")

    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        result = await sessions.converse(payload.thread_id, payload.message, cancel_event=cancel_event)
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass

    return ChatResponse(
        thread_id=result.thread_id,
        response=result.text,
        agent_name=settings.agent_name,
        timestamp=datetime.now(timezone.utc),
    )


@router.post("/api/createThread", response_model=ThreadResponse)
@router.post("/createThread", response_model=ThreadResponse, include_in_schema=False)
async def create_thread(
    sessions: ConversationSessionManager = Depends(get_session_manager),
) -> ThreadResponse:
    thread_id = await sessions.create_thread()
    return ThreadResponse(thread_id=thread_id)


@router.get("/api/health")
@router.get("/health", include_in_schema=False)
async def health(prober: HealthProber = Depends(get_health_prober)) -> JSONResponse:
    try:
        report = await prober.probe()
    except Exception as exc:
        logger.exception("Error during health check")
        return JSONResponse(
            {
                "status": "Unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "details": {"exception": type(exc).__name__},
            },
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    status_code = status.HTTP_200_OK if report.is_healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(report.to_dict(), status_code=status_code)
