"""LTI Dynamic Registration.

The platform opens the tool's registration page with an ``openid_configuration``
URL (and optionally a ``registration_token``). The tool fetches the platform
discovery document, keeps it in a short-lived registration session, then on
completion posts its own configuration to the platform's registration endpoint
and records the resulting client and deployment.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable
from urllib.parse import urlsplit

import httpx
from pydantic import ValidationError

from .claims import DEEP_LINKING_REQUEST, RESOURCE_LINK_REQUEST
from .errors import RegistrationError
from .models import (
    LTI_TOOL_CONFIGURATION_CLAIM,
    ClientCreate,
    DeploymentCreate,
    OpenIDConfiguration,
    RegistrationResponse,
    RegistrationSession,
    utc_now,
)
from .storage.contract import DEFAULT_DEPLOYMENT_ID, LTIStorage


logger = logging.getLogger(__name__)


REGISTRATION_SESSION_TTL = 15 * 60

AGS_SCOPES = (
    "https://purl.imsglobal.org/spec/lti-ags/scope/lineitem",
    "https://purl.imsglobal.org/spec/lti-ags/scope/result.readonly",
    "https://purl.imsglobal.org/spec/lti-ags/scope/score",
)
NRPS_SCOPES = ("https://purl.imsglobal.org/spec/lti-nrps/scope/contextmembership.readonly",)


@dataclass(slots=True)
class ToolRegistrationSettings:
    """How the tool describes itself to a registering platform."""

    url: str
    name: str
    description: str | None = None
    logo: str | None = None
    deep_linking_uri: str | None = None
    jwks_uri: str | None = None
    launch_uri: str | None = None
    login_uri: str | None = None
    redirect_uris: list[str] = field(default_factory=list)

    def _endpoint(self, explicit: str | None, path: str) -> str:
        return explicit or f"{self.url.rstrip('/')}{path}"

    @property
    def resolved_deep_linking_uri(self) -> str:
        return self._endpoint(self.deep_linking_uri, "/lti/deep-linking")

    @property
    def resolved_jwks_uri(self) -> str:
        return self._endpoint(self.jwks_uri, "/lti/jwks")

    @property
    def resolved_launch_uri(self) -> str:
        return self._endpoint(self.launch_uri, "/lti/launch")

    @property
    def resolved_login_uri(self) -> str:
        return self._endpoint(self.login_uri, "/lti/login")


@dataclass(slots=True)
class RegistrationResult:
    client_id: str
    deployment_id: str
    response: RegistrationResponse


def has_ags_support(config: OpenIDConfiguration) -> bool:
    return any("lti-ags/scope" in scope for scope in config.scopes_supported)


def has_nrps_support(config: OpenIDConfiguration) -> bool:
    return any("lti-nrps/scope" in scope for scope in config.scopes_supported)


def has_deep_linking_support(config: OpenIDConfiguration) -> bool:
    messages = config.platform_configuration.messages_supported
    return any(message.type == DEEP_LINKING_REQUEST for message in messages)


def ags_scopes(config: OpenIDConfiguration) -> list[str]:
    return [scope for scope in config.scopes_supported if "lti-ags/scope" in scope]


def _error_detail(response: httpx.Response) -> str:
    try:
        return str(response.json())
    except ValueError:
        return response.text.strip()


class DynamicRegistrationService:
    def __init__(
        self,
        storage: LTIStorage,
        settings: ToolRegistrationSettings,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage = storage
        self._settings = settings
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, follow_redirects=True, transport=self._transport)

    async def fetch_platform_configuration(
        self, openid_configuration_url: str, registration_token: str | None = None
    ) -> OpenIDConfiguration:
        headers = {"Accept": "application/json"}
        if registration_token:
            headers["Authorization"] = f"Bearer {registration_token}"
        try:
            async with self._client() as client:
                response = await client.get(openid_configuration_url, headers=headers)
        except httpx.HTTPError as exc:
            raise RegistrationError(
                f"Configuration OpenID injoignable: {openid_configuration_url}", phase="registration"
            ) from exc
        if not response.is_success:
            logger.error(
                "Récupération de la configuration OpenID refusée (%s): %s",
                response.status_code,
                _error_detail(response),
            )
            raise RegistrationError(
                f"Récupération de la configuration OpenID refusée ({response.status_code}).",
                phase="registration",
            )
        try:
            configuration = OpenIDConfiguration.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise RegistrationError("Configuration OpenID de la plateforme invalide.", phase="registration") from exc

        endpoint_host = urlsplit(openid_configuration_url).hostname
        issuer_host = urlsplit(configuration.issuer).hostname
        if endpoint_host != issuer_host:
            logger.error(
                "Hôte de la configuration OpenID (%s) différent de celui de l'issuer (%s)",
                endpoint_host,
                issuer_host,
            )
            raise RegistrationError(
                "L'URL de configuration OpenID et l'issuer ne partagent pas le même hôte.",
                phase="registration",
                issuer=configuration.issuer,
            )
        return configuration

    async def initiate(
        self, openid_configuration_url: str, registration_token: str | None = None
    ) -> tuple[str, OpenIDConfiguration]:
        """Fetch the platform configuration and open a registration session."""

        configuration = await self.fetch_platform_configuration(openid_configuration_url, registration_token)
        session_token = str(uuid.uuid4())
        await self._storage.set_registration_session(
            session_token,
            RegistrationSession(
                openid_configuration=configuration,
                registration_token=registration_token,
                expires_at=utc_now() + timedelta(seconds=REGISTRATION_SESSION_TTL),
            ),
        )
        logger.debug("Session d'enregistrement ouverte pour %s", configuration.issuer)
        return session_token, configuration

    async def consume_session(self, session_token: str) -> RegistrationSession | None:
        session = await self._storage.get_registration_session(session_token)
        if session is None or not await self._storage.delete_registration_session(session_token):
            return None
        return session

    def build_messages(self, services: Iterable[str]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [{"type": RESOURCE_LINK_REQUEST}]
        if "deep_linking" in services:
            messages.append(
                {
                    "type": DEEP_LINKING_REQUEST,
                    "target_link_uri": self._settings.resolved_deep_linking_uri,
                    "label": "Content Selection",
                    "placements": ["ContentArea"],
                    "supported_types": ["ltiResourceLink"],
                }
            )
        return messages

    @staticmethod
    def build_scopes(services: Iterable[str]) -> list[str]:
        services = set(services)
        scopes: list[str] = []
        if "ags" in services:
            scopes.extend(AGS_SCOPES)
        if "nrps" in services:
            scopes.extend(NRPS_SCOPES)
        return scopes

    def build_registration_payload(self, services: Iterable[str]) -> dict[str, Any]:
        services = list(services)
        settings = self._settings
        payload: dict[str, Any] = {
            "application_type": "web",
            "response_types": ["id_token"],
            "grant_types": ["implicit", "client_credentials"],
            "initiate_login_uri": settings.resolved_login_uri,
            "redirect_uris": [settings.url, settings.resolved_launch_uri, *settings.redirect_uris],
            "client_name": settings.name,
            "jwks_uri": settings.resolved_jwks_uri,
            "scope": " ".join(self.build_scopes(services)),
            "token_endpoint_auth_method": "private_key_jwt",
            LTI_TOOL_CONFIGURATION_CLAIM: {
                "domain": urlsplit(settings.url).hostname,
                "target_link_uri": settings.url,
                "claims": ["iss", "sub", "name", "email"],
                "messages": self.build_messages(services),
            },
        }
        if settings.logo:
            payload["logo_uri"] = settings.logo
        if settings.description:
            payload[LTI_TOOL_CONFIGURATION_CLAIM]["description"] = settings.description
        return payload

    async def _post_registration(
        self, registration_endpoint: str, payload: dict[str, Any], registration_token: str | None
    ) -> RegistrationResponse:
        headers = {"Content-Type": "application/json"}
        if registration_token:
            headers["Authorization"] = f"Bearer {registration_token}"
        try:
            async with self._client() as client:
                response = await client.post(registration_endpoint, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise RegistrationError(
                f"Endpoint d'enregistrement injoignable: {registration_endpoint}", phase="registration"
            ) from exc
        if not response.is_success:
            logger.error("Enregistrement dynamique refusé (%s): %s", response.status_code, _error_detail(response))
            raise RegistrationError(
                f"Enregistrement dynamique refusé par la plateforme ({response.status_code}).",
                phase="registration",
            )
        try:
            return RegistrationResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise RegistrationError("Réponse d'enregistrement de la plateforme invalide.", phase="registration") from exc

    async def complete(self, session_token: str, services: Iterable[str] = ()) -> RegistrationResult:
        session = await self.consume_session(session_token)
        if session is None:
            raise RegistrationError("Session d'enregistrement invalide ou expirée.", phase="registration")

        configuration = session.openid_configuration
        payload = self.build_registration_payload(services)
        response = await self._post_registration(
            configuration.registration_endpoint, payload, session.registration_token
        )

        client_id = await self._storage.add_client(
            ClientCreate(
                name=response.client_name or self._settings.name,
                iss=configuration.issuer,
                client_id=response.client_id,
                auth_url=configuration.authorization_endpoint,
                token_url=configuration.token_endpoint,
                jwks_url=configuration.jwks_uri,
            )
        )
        platform_deployment = response.tool_configuration.deployment_id
        if platform_deployment:
            deployment = DeploymentCreate(
                deployment_id=platform_deployment,
                name="Déploiement fourni par l'enregistrement dynamique",
            )
        else:
            deployment = DeploymentCreate(
                deployment_id=DEFAULT_DEPLOYMENT_ID,
                name="Déploiement par défaut (sans deployment_id plateforme)",
            )
        deployment_id = await self._storage.add_deployment(client_id, deployment)
        logger.info(
            "Enregistrement dynamique terminé pour %s (client_id=%s, deployment_id=%s)",
            configuration.issuer,
            response.client_id,
            deployment.deployment_id,
        )
        return RegistrationResult(client_id=client_id, deployment_id=deployment_id, response=response)


__all__ = [
    "AGS_SCOPES",
    "DynamicRegistrationService",
    "NRPS_SCOPES",
    "REGISTRATION_SESSION_TTL",
    "RegistrationResult",
    "ToolRegistrationSettings",
    "ags_scopes",
    "has_ags_support",
    "has_deep_linking_support",
    "has_nrps_support",
]
