from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .agents import AgentClient, build_agent_client
from .api import router
from .config import Settings, get_settings
from .errors import ProxyError
from .health import EnvironmentIdentityProbe, HealthProber, IdentityProbe
from .schemas import ErrorBody, ErrorResponse
from .session import ConversationSessionManager

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    """Configure logging for the entire foundry_proxy package."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("foundry_proxy").setLevel(logging.DEBUG if debug else logging.INFO)


def _error_response(request: Request, kind: str, message: str, status_code: int) -> JSONResponse:
    settings: Settings | None = getattr(request.app.state, "settings", None)
    body = ErrorResponse(
        error=ErrorBody(kind=kind, message=message),
        agent_name=settings.agent_name if settings else None,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(body.model_dump(mode="json", by_alias=True), status_code=status_code)


async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "%s %s failed with %s: %s",
            request.method,
            request.url.path,
            exc.kind,
            exc.message,
            exc_info=exc.cause,
        )
    else:
        logger.info("%s %s rejected with %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return _error_response(request, exc.kind, exc.message, exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("%s %s invalid body: %s", request.method, request.url.path, exc.errors())
    return _error_response(request, "invalid_input", "Request body is not valid JSON for this endpoint", 400)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error processing %s %s", request.method, request.url.path)
    return _error_response(request, "internal_error", "An error occurred processing your request", 500)


def create_app(
    settings: Settings | None = None,
    client: AgentClient | None = None,
    identity_probe: IdentityProbe | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``client`` and ``identity_probe`` are built from settings when omitted.
    """
    settings = settings or get_settings()
    configure_logging(settings.debug)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        agent_client = client or build_agent_client(settings)
        app.state.sessions = ConversationSessionManager.from_settings(agent_client, settings)
        app.state.prober = HealthProber.from_settings(
            agent_client, settings, identity_probe or EnvironmentIdentityProbe()
        )
        logger.info("Foundry proxy started - agent %s (%s)", settings.agent_name, settings.agent_id)

        yield

        logger.info("Foundry proxy shutting down...")
        await app.state.sessions.shutdown()
        try:
            await asyncio.wait_for(agent_client.aclose(), timeout=2.0)
        except asyncio.TimeoutError:
            logger.warning("Agent client close timed out")
        except Exception as e:
            logger.warning(f"Error closing agent client: {e}")
        logger.info("Foundry proxy shutdown complete")

    app = FastAPI(
        title="Foundry Proxy",
        description="Browser chat proxy for an Azure AI Foundry agent",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.add_exception_handler(ProxyError, proxy_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(router)
    return app
