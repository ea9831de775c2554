"""Interface every storage backend implements.

Backends do not inherit from :class:`LTIStorage`; they only need to match its
methods. ``tests/test_storage_contract.py`` runs the same suite against each.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from ..models import (
    Client,
    ClientCreate,
    ClientUpdate,
    Deployment,
    DeploymentCreate,
    DeploymentUpdate,
    LaunchConfig,
    RegistrationSession,
)
from ..session import Session


DEFAULT_DEPLOYMENT_ID = "default"


@runtime_checkable
class LTIStorage(Protocol):
    async def list_clients(self) -> list[Client]: ...

    async def get_client_by_id(self, client_id: str) -> Client | None: ...

    async def add_client(self, client: ClientCreate) -> str: ...

    async def update_client(self, client_id: str, update: ClientUpdate) -> None: ...

    async def delete_client(self, client_id: str) -> None: ...

    async def list_deployments(self, client_id: str) -> list[Deployment]: ...

    async def get_deployment(self, client_id: str, deployment_id: str) -> Deployment | None: ...

    async def add_deployment(self, client_id: str, deployment: DeploymentCreate) -> str: ...

    async def update_deployment(self, client_id: str, deployment_id: str, update: DeploymentUpdate) -> None: ...

    async def delete_deployment(self, client_id: str, deployment_id: str) -> None: ...

    async def get_session(self, session_id: str) -> Session | None: ...

    async def add_session(self, session: Session, ttl_seconds: int | None = None) -> str: ...

    async def store_nonce(self, nonce: str, expires_at: datetime) -> None: ...

    async def validate_nonce(self, nonce: str) -> bool:
        """Consume ``nonce`` atomically; ``True`` only for the first caller."""
        ...

    async def get_launch_config(self, iss: str, client_id: str, deployment_id: str) -> LaunchConfig | None:
        """Exact match, then the ``"default"`` deployment of the same platform."""
        ...

    async def save_launch_config(self, launch_config: LaunchConfig) -> None: ...

    async def set_registration_session(self, session_id: str, session: RegistrationSession) -> None: ...

    async def get_registration_session(self, session_id: str) -> RegistrationSession | None: ...

    async def delete_registration_session(self, session_id: str) -> bool:
        """Remove the session; ``True`` only for the caller that removed it."""
        ...


__all__ = ["DEFAULT_DEPLOYMENT_ID", "LTIStorage"]
