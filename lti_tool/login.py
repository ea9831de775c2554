"""Third-party initiated OIDC login: builds the platform authorization redirect."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import ToolConfig
from .errors import ConfigurationError, SchemaValidationError
from .launch_config import LaunchConfigResolver
from .models import HttpUrlStr, NonEmptyStr, utc_now
from .state import sign_state
from .storage.contract import LTIStorage


logger = logging.getLogger(__name__)


class LoginRequest(BaseModel):
    """Login initiation parameters, accepted by field name or OIDC form name."""

    model_config = ConfigDict(populate_by_name=True)

    iss: NonEmptyStr
    client_id: NonEmptyStr
    login_hint: NonEmptyStr
    target_link_uri: HttpUrlStr
    launch_url: HttpUrlStr = Field(alias="launchUrl")
    deployment_id: NonEmptyStr = Field(alias="lti_deployment_id")
    message_hint: str | None = Field(default=None, alias="lti_message_hint")


def parse_login_request(data: dict[str, Any]) -> LoginRequest:
    try:
        return LoginRequest.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise SchemaValidationError(
            f"Requête de login LTI invalide: {', '.join(fields)}",
            fields=fields,
            phase="login",
        ) from exc


def append_query(url: str, params: dict[str, str]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


class LoginInitiator:
    def __init__(self, config: ToolConfig, storage: LTIStorage, resolver: LaunchConfigResolver) -> None:
        self._config = config
        self._storage = storage
        self._resolver = resolver

    async def initiate(self, request: LoginRequest | dict[str, Any]) -> str:
        """Return the platform authorization URL for this login.

        The nonce is persisted before anything else so that a launch can never
        arrive ahead of it.
        """

        if not isinstance(request, LoginRequest):
            request = parse_login_request(request)

        nonce = str(uuid.uuid4())
        await self._storage.store_nonce(
            nonce,
            utc_now() + timedelta(seconds=self._config.nonce_expiration_seconds),
        )

        state = sign_state(
            self._config.state_secret,
            nonce=nonce,
            iss=request.iss,
            client_id=request.client_id,
            target_link_uri=request.target_link_uri,
            expires_in=self._config.state_expiration_seconds,
        )

        try:
            launch_config = await self._resolver.resolve(
                request.iss, request.client_id, request.deployment_id, phase="login"
            )
        except ConfigurationError:
            logger.info(
                "Login LTI refusé: plateforme %s (client_id=%s, deployment_id=%s) non enregistrée",
                request.iss,
                request.client_id,
                request.deployment_id,
            )
            raise

        params = {
            "scope": "openid",
            "response_type": "id_token",
            "response_mode": "form_post",
            "prompt": "none",
            "client_id": request.client_id,
            "redirect_uri": request.launch_url,
            "login_hint": request.login_hint,
            "state": state,
            "nonce": nonce,
            "lti_deployment_id": request.deployment_id,
        }
        if request.message_hint:
            params["lti_message_hint"] = request.message_hint

        return append_query(launch_config.auth_url, params)


__all__ = ["LoginInitiator", "LoginRequest", "append_query", "parse_login_request"]
