"""The tool facade: one explicitly constructed object per application.

:class:`LTITool` owns the caches (remote key sets, launch configs through the
storage backend) and wires the login, launch, session and token components to
a single storage backend. Nothing here is module-global; create one instance
at application start-up and pass it where it is needed.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .claims import LaunchClaims
from .config import ToolConfig
from .deep_linking import DeepLinkingResponder
from .errors import ConfigurationError, MalformedTokenError, SchemaValidationError
from .jwks import RemoteKeySetCache
from .launch import LaunchVerifier
from .launch_config import LaunchConfigResolver
from .login import LoginInitiator, LoginRequest
from .models import (
    Client,
    ClientCreate,
    ClientUpdate,
    Deployment,
    DeploymentCreate,
    DeploymentUpdate,
)
from .registration import DynamicRegistrationService, ToolRegistrationSettings
from .session import Session, create_session
from .storage.contract import LTIStorage
from .token import ServiceTokenBroker


logger = logging.getLogger(__name__)


ModelT = TypeVar("ModelT", bound=BaseModel)


def _validated(model: type[ModelT], data: ModelT | dict[str, Any]) -> ModelT:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise SchemaValidationError(
            f"Données {model.__name__} invalides: {', '.join(fields)}", fields=fields
        ) from exc


class LTITool:
    def __init__(
        self,
        config: ToolConfig,
        storage: LTIStorage,
        *,
        registration: ToolRegistrationSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.resolver = LaunchConfigResolver(storage)
        self.key_sets = RemoteKeySetCache(timeout=config.http_timeout_seconds, transport=transport)
        self.login_initiator = LoginInitiator(config, storage, self.resolver)
        self.verifier = LaunchVerifier(config, storage, self.resolver, self.key_sets)
        self.token_broker = ServiceTokenBroker(
            config.keys,
            self.resolver,
            timeout=config.http_timeout_seconds,
            transport=transport,
        )
        self.deep_linking = DeepLinkingResponder(config.keys)
        self.registration = (
            DynamicRegistrationService(
                storage,
                registration,
                timeout=config.http_timeout_seconds,
                transport=transport,
            )
            if registration
            else None
        )

    @classmethod
    def from_env(cls, storage: LTIStorage, **kwargs: Any) -> "LTITool":
        return cls(ToolConfig.from_env(), storage, **kwargs)

    # protocol ----------------------------------------------------------------

    async def handle_login(self, request: LoginRequest | dict[str, Any]) -> str:
        return await self.login_initiator.initiate(request)

    async def verify_launch(self, id_token: str, state: str) -> LaunchClaims:
        return await self.verifier.verify(id_token, state)

    def get_jwks(self) -> dict[str, Any]:
        return self.config.keys.jwks_document()

    async def create_session(self, claims: LaunchClaims | dict[str, Any]) -> Session:
        session = create_session(claims)
        await self.storage.add_session(session, self.config.session_ttl_seconds)
        logger.debug("Session LTI %s créée pour %s", session.id, session.platform.issuer)
        return session

    async def get_session(self, session_id: str) -> Session | None:
        if not session_id:
            raise MalformedTokenError("Identifiant de session LTI manquant.", phase="session")
        session = await self.storage.get_session(session_id)
        if session is None:
            logger.warning("Session LTI %s introuvable ou expirée", session_id)
        return session

    async def get_bearer_token(self, session: Session, scope: str | Iterable[str]) -> str:
        return await self.token_broker.get_bearer_token_for_session(session, scope)

    def create_deep_linking_response(self, session: Session, content_items: Iterable[dict[str, Any]]) -> str:
        return self.deep_linking.create_response_jwt(session, content_items)

    def require_registration(self) -> DynamicRegistrationService:
        if self.registration is None:
            raise ConfigurationError("Enregistrement dynamique non configuré pour cet outil.", phase="registration")
        return self.registration

    # administration ----------------------------------------------------------

    async def list_clients(self) -> list[Client]:
        return await self.storage.list_clients()

    async def get_client(self, client_id: str) -> Client | None:
        return await self.storage.get_client_by_id(client_id)

    async def add_client(self, client: ClientCreate | dict[str, Any]) -> str:
        return await self.storage.add_client(_validated(ClientCreate, client))

    async def update_client(self, client_id: str, update: ClientUpdate | dict[str, Any]) -> None:
        await self.storage.update_client(client_id, _validated(ClientUpdate, update))

    async def delete_client(self, client_id: str) -> None:
        await self.storage.delete_client(client_id)

    async def list_deployments(self, client_id: str) -> list[Deployment]:
        return await self.storage.list_deployments(client_id)

    async def get_deployment(self, client_id: str, deployment_id: str) -> Deployment | None:
        return await self.storage.get_deployment(client_id, deployment_id)

    async def add_deployment(self, client_id: str, deployment: DeploymentCreate | dict[str, Any]) -> str:
        return await self.storage.add_deployment(client_id, _validated(DeploymentCreate, deployment))

    async def update_deployment(
        self, client_id: str, deployment_id: str, update: DeploymentUpdate | dict[str, Any]
    ) -> None:
        await self.storage.update_deployment(client_id, deployment_id, _validated(DeploymentUpdate, update))

    async def delete_deployment(self, client_id: str, deployment_id: str) -> None:
        await self.storage.delete_deployment(client_id, deployment_id)


__all__ = ["LTITool"]
