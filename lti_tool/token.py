"""OAuth2 client-credentials grant with a signed JWT assertion (RFC 7523).

Used to obtain the bearer tokens required by AGS and NRPS calls. Tokens are
not cached here; each service call asks for a fresh one.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Iterable

import httpx

from .errors import TokenRequestFailedError, TokenResponseMalformedError
from .keys import KeyMaterial
from .launch_config import LaunchConfigResolver
from .session import Session


logger = logging.getLogger(__name__)


CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
ASSERTION_LIFETIME = 300
USER_AGENT = "lti-tool/0.1"


class ServiceTokenBroker:
    def __init__(
        self,
        keys: KeyMaterial,
        resolver: LaunchConfigResolver | None = None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        user_agent: str = USER_AGENT,
    ) -> None:
        self._keys = keys
        self._resolver = resolver
        self._timeout = timeout
        self._transport = transport
        self._user_agent = user_agent

    def create_client_assertion(self, client_id: str, token_url: str, *, now: int | None = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "iss": client_id,
            "sub": client_id,
            "aud": token_url,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME,
            "jti": str(uuid.uuid4()),
        }
        return self._keys.sign(payload)

    async def get_bearer_token(self, client_id: str, token_url: str, scope: str | Iterable[str]) -> str:
        if not isinstance(scope, str):
            scope = " ".join(scope)
        form_data = {
            "grant_type": "client_credentials",
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": self.create_client_assertion(client_id, token_url),
            "scope": scope,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
                headers={"User-Agent": self._user_agent},
            ) as client:
                response = await client.post(token_url, data=form_data)
        except httpx.HTTPError as exc:
            logger.error("Appel du token_endpoint %s impossible: %s", token_url, exc)
            raise TokenRequestFailedError(
                f"token_endpoint injoignable: {token_url}", phase="token", client_id=client_id
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            logger.error("Erreur token_endpoint (%s) pour client_id=%s", response.status_code, client_id)
            raise TokenRequestFailedError(
                f"Erreur token_endpoint ({response.status_code}): {response.text.strip()}",
                status_code=response.status_code,
                phase="token",
                client_id=client_id,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TokenResponseMalformedError(
                "Réponse du token_endpoint illisible (JSON attendu).", phase="token", client_id=client_id
            ) from exc
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise TokenResponseMalformedError(
                "La plateforme n'a pas renvoyé d'access_token.", phase="token", client_id=client_id
            )
        return access_token

    async def get_bearer_token_for_session(self, session: Session, scope: str | Iterable[str]) -> str:
        """Request a token for the platform that launched ``session``."""

        if self._resolver is None:
            raise RuntimeError("ServiceTokenBroker created without a LaunchConfigResolver")
        platform = session.platform
        launch_config = await self._resolver.resolve(
            platform.issuer, platform.client_id, platform.deployment_id, phase="token"
        )
        return await self.get_bearer_token(launch_config.client_id, launch_config.token_url, scope)


__all__ = ["CLIENT_ASSERTION_TYPE", "ServiceTokenBroker"]
