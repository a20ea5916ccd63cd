"""Connectivity health probe for readiness checks.

The probe never raises: every failure becomes a field of the report, so the
health endpoint always has something to return to the monitoring system.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Protocol

from .agents import AgentClient
from .config import Settings
from .errors import NotFoundError, UpstreamAuthError

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    # Reserved; no probe outcome currently maps here.
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"


class IdentityState(str, Enum):
    ACTIVE = "Active"
    LOCAL_DEVELOPMENT = "LocalDevelopment"
    INACTIVE = "Inactive"


class AccessState(str, Enum):
    AUTHORIZED = "Authorized"
    UNAUTHORIZED = "Unauthorized"
    ERROR = "Error"


@dataclass(slots=True, frozen=True)
class IdentityCheck:
    state: IdentityState
    detail: str

    def describe(self) -> str:
        return f"{self.state.value} - {self.detail}"


@dataclass(slots=True, frozen=True)
class AccessCheck:
    state: AccessState
    detail: str

    def describe(self) -> str:
        return f"{self.state.value} - {self.detail}"


class IdentityProbe(Protocol):
    def check(self) -> IdentityCheck: ...


class EnvironmentIdentityProbe:
    """Infer the ambient Azure identity from well-known environment variables."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ

    def _has(self, name: str) -> bool:
        return bool(self._environ.get(name))

    def check(self) -> IdentityCheck:
        if (self._has("MSI_ENDPOINT") and self._has("MSI_SECRET")) or (
            self._has("IDENTITY_ENDPOINT") and self._has("IDENTITY_HEADER")
        ):
            return IdentityCheck(IdentityState.ACTIVE, "System-assigned managed identity available")
        if self._has("AZURE_CLIENT_ID"):
            return IdentityCheck(IdentityState.ACTIVE, "User-assigned managed identity configured")
        if self._has("AZURE_TENANT_ID") or self._has("USERPROFILE"):
            return IdentityCheck(IdentityState.LOCAL_DEVELOPMENT, "Azure CLI credentials")
        return IdentityCheck(IdentityState.INACTIVE, "No identity detected")


@dataclass(slots=True, frozen=True)
class HealthReport:
    status: HealthStatus
    timestamp: datetime
    identity: IdentityCheck
    access: AccessCheck
    version: str = "Unknown"
    environment: str = "Unknown"
    endpoint: str = ""
    agent_name: str = ""
    agent_id: str = ""

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    @property
    def connection_status(self) -> str:
        if self.access.state is AccessState.AUTHORIZED:
            return f"Connected - {self.access.detail}"
        return f"Disconnected - {self.access.detail}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "environment": self.environment,
            "aiFoundryEndpoint": self.endpoint,
            "agentName": self.agent_name,
            "agentId": self.agent_id,
            "connectionStatus": self.connection_status,
            "details": {
                "managedIdentity": self.identity.describe(),
                "aiFoundryAccess": self.access.describe(),
                "lastHealthCheck": self.timestamp.isoformat(),
            },
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_status(identity: IdentityCheck, access: AccessCheck) -> HealthStatus:
    if identity.state is not IdentityState.INACTIVE and access.state is AccessState.AUTHORIZED:
        return HealthStatus.HEALTHY
    return HealthStatus.UNHEALTHY


class HealthProber:
    def __init__(
        self,
        client: AgentClient,
        identity_probe: IdentityProbe,
        *,
        agent_id: str,
        agent_name: str = "",
        endpoint: str = "",
        version: str = "Unknown",
        environment: str = "Unknown",
        timeout: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._identity_probe = identity_probe
        self.agent_id = agent_id
        self.agent_name = agent_name
        self.endpoint = endpoint
        self.version = version
        self.environment = environment
        self.timeout = timeout
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        client: AgentClient,
        settings: Settings,
        identity_probe: IdentityProbe | None = None,
    ) -> "HealthProber":
        return cls(
            client,
            identity_probe or EnvironmentIdentityProbe(),
            agent_id=settings.agent_id,
            agent_name=settings.agent_name,
            endpoint=settings.project_endpoint,
            version=settings.app_version,
            environment=settings.app_environment,
            timeout=settings.health_probe_timeout,
        )

    def _check_identity(self) -> IdentityCheck:
        try:
            return self._identity_probe.check()
        except Exception as exc:
            logger.warning("[HEALTH] Identity probe failed: %s", exc)
            return IdentityCheck(IdentityState.INACTIVE, f"Error - {type(exc).__name__}: {exc}")

    async def _check_access(self) -> AccessCheck:
        try:
            agent = await asyncio.wait_for(self._client.get_agent(self.agent_id), timeout=self.timeout)
        except asyncio.TimeoutError:
            return AccessCheck(AccessState.ERROR, f"TimeoutError: no response within {self.timeout:g}s")
        except UpstreamAuthError:
            return AccessCheck(AccessState.UNAUTHORIZED, "Authentication failed")
        except NotFoundError:
            return AccessCheck(AccessState.UNAUTHORIZED, "Agent not accessible")
        except Exception as exc:
            logger.warning("[HEALTH] Agent reachability check failed", exc_info=True)
            return AccessCheck(AccessState.ERROR, f"{type(exc).__name__}: {exc}")
        name = agent.name or agent.id
        return AccessCheck(AccessState.AUTHORIZED, f"Agent '{name}' accessible")

    async def probe(self) -> HealthReport:
        identity = self._check_identity()
        access = await self._check_access()
        status = derive_status(identity, access)
        report = HealthReport(
            status=status,
            timestamp=self._clock(),
            identity=identity,
            access=access,
            version=self.version,
            environment=self.environment,
            endpoint=self.endpoint,
            agent_name=self.agent_name,
            agent_id=self.agent_id,
        )
        log = logger.info if report.is_healthy else logger.warning
        log(
            "[HEALTH] %s (identity=%s, access=%s)",
            status.value,
            identity.state.value,
            access.state.value,
        )
        return report
