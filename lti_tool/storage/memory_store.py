"""In-process storage backend.

Everything lives in dictionaries guarded by a re-entrant lock, which makes the
nonce check-and-delete atomic for all coroutines and threads of one process.
Use it for tests, development and single-process deployments only.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable

from ..config import DEFAULT_SESSION_TTL
from ..errors import StorageError
from ..models import (
    Client,
    ClientCreate,
    ClientUpdate,
    Deployment,
    DeploymentCreate,
    DeploymentUpdate,
    LaunchConfig,
    RegistrationSession,
    launch_config_key,
    utc_now,
)
from ..session import Session
from .contract import DEFAULT_DEPLOYMENT_ID


logger = logging.getLogger(__name__)


class MemoryStorage:
    def __init__(
        self,
        *,
        session_ttl_seconds: int = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_ttl = timedelta(seconds=session_ttl_seconds)
        self._clock = clock
        self._lock = threading.RLock()
        self._clients: dict[str, Client] = {}
        self._deployments: dict[str, dict[str, Deployment]] = {}
        self._launch_configs: dict[str, LaunchConfig] = {}
        self._sessions: dict[str, tuple[Session, datetime]] = {}
        self._nonces: dict[str, datetime] = {}
        self._registration_sessions: dict[str, RegistrationSession] = {}

    # clients -----------------------------------------------------------------

    def _require_client(self, client_id: str) -> Client:
        client = self._clients.get(client_id)
        if client is None:
            raise StorageError(f"Client LTI {client_id!r} introuvable.")
        return client

    def _with_deployments(self, client: Client) -> Client:
        deployments = list(self._deployments.get(client.id, {}).values())
        return client.model_copy(update={"deployments": deployments}, deep=True)

    def _find_by_identity(self, iss: str, lms_client_id: str) -> Client | None:
        for client in self._clients.values():
            if client.iss == iss and client.client_id == lms_client_id:
                return client
        return None

    async def list_clients(self) -> list[Client]:
        with self._lock:
            return [client.model_copy(deep=True) for client in self._clients.values()]

    async def get_client_by_id(self, client_id: str) -> Client | None:
        with self._lock:
            client = self._clients.get(client_id)
            return self._with_deployments(client) if client else None

    async def add_client(self, client: ClientCreate) -> str:
        with self._lock:
            if self._find_by_identity(client.iss, client.client_id):
                raise StorageError(
                    f"Un client existe déjà pour {client.iss} (client_id={client.client_id}).",
                    issuer=client.iss,
                    client_id=client.client_id,
                )
            internal_id = str(uuid.uuid4())
            self._clients[internal_id] = Client(id=internal_id, **client.model_dump())
            self._deployments[internal_id] = {}
        logger.info("Client LTI %s ajouté pour %s", internal_id, client.iss)
        return internal_id

    async def update_client(self, client_id: str, update: ClientUpdate) -> None:
        with self._lock:
            current = self._require_client(client_id)
            updated = current.model_copy(update=update.changes())
            if (updated.iss, updated.client_id) != (current.iss, current.client_id):
                other = self._find_by_identity(updated.iss, updated.client_id)
                if other is not None and other.id != client_id:
                    raise StorageError(
                        f"Un client existe déjà pour {updated.iss} (client_id={updated.client_id}).",
                        issuer=updated.iss,
                        client_id=updated.client_id,
                    )
            self._drop_launch_configs(current.iss, current.client_id)
            self._clients[client_id] = updated
            for deployment in self._deployments.get(client_id, {}).values():
                self._store_launch_config(LaunchConfig.for_deployment(updated, deployment))
        logger.info("Client LTI %s mis à jour", client_id)

    async def delete_client(self, client_id: str) -> None:
        with self._lock:
            client = self._clients.pop(client_id, None)
            if client is None:
                logger.debug("Suppression ignorée: client LTI %s absent", client_id)
                return
            self._deployments.pop(client_id, None)
            self._drop_launch_configs(client.iss, client.client_id)
        logger.info("Client LTI %s supprimé", client_id)

    # deployments -------------------------------------------------------------

    async def list_deployments(self, client_id: str) -> list[Deployment]:
        with self._lock:
            self._require_client(client_id)
            return [item.model_copy() for item in self._deployments[client_id].values()]

    async def get_deployment(self, client_id: str, deployment_id: str) -> Deployment | None:
        with self._lock:
            deployment = self._deployments.get(client_id, {}).get(deployment_id)
            return deployment.model_copy() if deployment else None

    async def add_deployment(self, client_id: str, deployment: DeploymentCreate) -> str:
        with self._lock:
            client = self._require_client(client_id)
            bucket = self._deployments[client_id]
            if any(item.deployment_id == deployment.deployment_id for item in bucket.values()):
                raise StorageError(
                    f"Le déploiement {deployment.deployment_id!r} existe déjà pour ce client.",
                    issuer=client.iss,
                    client_id=client.client_id,
                )
            internal_id = str(uuid.uuid4())
            record = Deployment(id=internal_id, **deployment.model_dump())
            bucket[internal_id] = record
            self._store_launch_config(LaunchConfig.for_deployment(client, record))
        logger.info("Déploiement %s ajouté au client %s", deployment.deployment_id, client_id)
        return internal_id

    async def update_deployment(self, client_id: str, deployment_id: str, update: DeploymentUpdate) -> None:
        with self._lock:
            client = self._require_client(client_id)
            bucket = self._deployments[client_id]
            current = bucket.get(deployment_id)
            if current is None:
                raise StorageError(f"Déploiement {deployment_id!r} introuvable.", client_id=client.client_id)
            updated = current.model_copy(update=update.changes())
            if updated.deployment_id != current.deployment_id:
                if any(
                    item.deployment_id == updated.deployment_id and item.id != deployment_id
                    for item in bucket.values()
                ):
                    raise StorageError(
                        f"Le déploiement {updated.deployment_id!r} existe déjà pour ce client.",
                        client_id=client.client_id,
                    )
                self._launch_configs.pop(
                    launch_config_key(client.iss, client.client_id, current.deployment_id), None
                )
            bucket[deployment_id] = updated
            self._store_launch_config(LaunchConfig.for_deployment(client, updated))

    async def delete_deployment(self, client_id: str, deployment_id: str) -> None:
        with self._lock:
            client = self._clients.get(client_id)
            deployment = self._deployments.get(client_id, {}).pop(deployment_id, None)
            if client is None or deployment is None:
                logger.debug("Suppression ignorée: déploiement %s absent", deployment_id)
                return
            self._launch_configs.pop(
                launch_config_key(client.iss, client.client_id, deployment.deployment_id), None
            )
        logger.info("Déploiement %s supprimé du client %s", deployment.deployment_id, client_id)

    # sessions ----------------------------------------------------------------

    def _session_lifetime(self, ttl_seconds: int | None) -> timedelta:
        return self._session_ttl if ttl_seconds is None else timedelta(seconds=ttl_seconds)

    async def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            item = self._sessions.get(session_id)
            if item is None:
                return None
            session, expires_at = item
            if expires_at <= self._clock():
                del self._sessions[session_id]
                return None
            return session

    async def add_session(self, session: Session, ttl_seconds: int | None = None) -> str:
        with self._lock:
            self._sessions[session.id] = (session, self._clock() + self._session_lifetime(ttl_seconds))
        return session.id

    # nonces ------------------------------------------------------------------

    async def store_nonce(self, nonce: str, expires_at: datetime) -> None:
        with self._lock:
            self._nonces[nonce] = expires_at

    async def validate_nonce(self, nonce: str) -> bool:
        with self._lock:
            expires_at = self._nonces.pop(nonce, None)
        if expires_at is None:
            return False
        return expires_at > self._clock()

    # launch configs ----------------------------------------------------------

    def _store_launch_config(self, launch_config: LaunchConfig) -> None:
        self._launch_configs[launch_config.key] = launch_config

    def _drop_launch_configs(self, iss: str, lms_client_id: str) -> None:
        stale = [
            key
            for key, config in self._launch_configs.items()
            if config.iss == iss and config.client_id == lms_client_id
        ]
        for key in stale:
            del self._launch_configs[key]

    async def get_launch_config(self, iss: str, client_id: str, deployment_id: str) -> LaunchConfig | None:
        with self._lock:
            config = self._launch_configs.get(launch_config_key(iss, client_id, deployment_id))
            if config is None and deployment_id != DEFAULT_DEPLOYMENT_ID:
                config = self._launch_configs.get(launch_config_key(iss, client_id, DEFAULT_DEPLOYMENT_ID))
            return config

    async def save_launch_config(self, launch_config: LaunchConfig) -> None:
        with self._lock:
            self._store_launch_config(launch_config)

    # registration sessions ---------------------------------------------------

    async def set_registration_session(self, session_id: str, session: RegistrationSession) -> None:
        with self._lock:
            self._registration_sessions[session_id] = session

    async def get_registration_session(self, session_id: str) -> RegistrationSession | None:
        with self._lock:
            session = self._registration_sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired(self._clock()):
                del self._registration_sessions[session_id]
                return None
            return session

    async def delete_registration_session(self, session_id: str) -> bool:
        with self._lock:
            return self._registration_sessions.pop(session_id, None) is not None

    # maintenance -------------------------------------------------------------

    def purge_expired(self) -> int:
        """Drop expired nonces, sessions and registration sessions."""

        now = self._clock()
        with self._lock:
            nonces = [key for key, expires_at in self._nonces.items() if expires_at <= now]
            sessions = [key for key, (_, expires_at) in self._sessions.items() if expires_at <= now]
            registrations = [key for key, item in self._registration_sessions.items() if item.is_expired(now)]
            for key in nonces:
                del self._nonces[key]
            for key in sessions:
                del self._sessions[key]
            for key in registrations:
                del self._registration_sessions[key]
        return len(nonces) + len(sessions) + len(registrations)


__all__ = ["MemoryStorage"]
