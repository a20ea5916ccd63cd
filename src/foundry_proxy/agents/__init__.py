from __future__ import annotations

import logging

from azure.ai.agents.aio import AgentsClient
from azure.identity.aio import DefaultAzureCredential

from ..config import Settings
from .base import AgentClient
from .foundry import FoundryAgentClient
from .simulation import SimulatedAgentClient
from .types import AgentInfo, Message, RunError, RunSnapshot, RunStatus, parse_run_status

logger = logging.getLogger(__name__)


def build_agent_client(settings: Settings) -> AgentClient:
    """Create the agent client selected by ``AGENT_BACKEND``."""
    if settings.agent_backend == "simulation":
        logger.info("[FOUNDRY] Using simulated agent backend")
        return SimulatedAgentClient(agent_id=settings.agent_id, agent_name=settings.agent_name)

    logger.info("[FOUNDRY] Azure AI Foundry connection details:")
    logger.info("[FOUNDRY]   Project endpoint: %s", settings.project_endpoint)
    logger.info("[FOUNDRY]   Workspace: %s", settings.workspace_name)
    logger.info("[FOUNDRY]   Agent: %s (%s)", settings.agent_name, settings.agent_id)

    # Managed identity when deployed, Azure CLI or environment credentials locally
    credential = DefaultAzureCredential(managed_identity_client_id=settings.azure_client_id)
    options = {"credential_scopes": [settings.token_scope]}
    if settings.api_version:
        options["api_version"] = settings.api_version
    client = AgentsClient(endpoint=settings.project_endpoint, credential=credential, **options)
    return FoundryAgentClient(
        client,
        settings.agent_id,
        credential=credential,
        timeout=settings.request_timeout,
    )


__all__ = [
    "AgentClient",
    "AgentInfo",
    "FoundryAgentClient",
    "Message",
    "RunError",
    "RunSnapshot",
    "RunStatus",
    "SimulatedAgentClient",
    "build_agent_client",
    "parse_run_status",
]
