"""Launch verification.

The checks run in a fixed order and the first failure aborts the launch:

1. read ``iss`` (and ``aud``/``deployment_id``) from the unverified id_token
2. resolve the launch config for that platform and deployment
3. verify the id_token signature against the platform JWKS
4. verify the state token issued at login
5. validate the LTI claim set
6. compare the audience with the registered client id
7. compare the launch nonce with the state nonce
8. consume the nonce

The nonce is consumed last. Once consumed it stays spent, whatever happens next.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt
from jwt import PyJWTError

from .claims import DEPLOYMENT_ID_CLAIM, LaunchClaims, validate_launch_claims
from .config import ToolConfig
from .errors import (
    ClientMismatchError,
    ConfigurationError,
    InvalidSignatureError,
    LTIError,
    LTISecurityError,
    MalformedTokenError,
    NonceMismatchError,
    NonceReplayError,
)
from .jwks import RemoteKeySetCache
from .launch_config import LaunchConfigResolver
from .state import verify_state
from .storage.contract import LTIStorage


logger = logging.getLogger(__name__)


ID_TOKEN_ALGORITHMS = ["RS256"]


def _first_audience(aud: Any) -> str | None:
    if isinstance(aud, list):
        aud = aud[0] if aud else None
    return aud if isinstance(aud, str) and aud else None


def read_unverified_claims(id_token: str) -> dict[str, Any]:
    if not id_token:
        raise MalformedTokenError("id_token manquant dans la requête de lancement.", phase="decode")
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except PyJWTError as exc:
        raise MalformedTokenError("id_token illisible (JWT mal formé).", phase="decode") from exc
    if not isinstance(claims.get("iss"), str) or not claims["iss"]:
        raise MalformedTokenError("Claim 'iss' absent de l'id_token.", phase="decode")
    return claims


class LaunchVerifier:
    def __init__(
        self,
        config: ToolConfig,
        storage: LTIStorage,
        resolver: LaunchConfigResolver,
        key_sets: RemoteKeySetCache,
    ) -> None:
        self._config = config
        self._storage = storage
        self._resolver = resolver
        self._key_sets = key_sets

    async def verify(self, id_token: str, state: str) -> LaunchClaims:
        """Run every launch check and return the validated claims."""

        issuer: str | None = None
        client_id: str | None = None
        try:
            unverified = read_unverified_claims(id_token)
            issuer = unverified["iss"]
            client_id = _first_audience(unverified.get("aud"))
            deployment_id = unverified.get(DEPLOYMENT_ID_CLAIM)
            if client_id is None or not isinstance(deployment_id, str) or not deployment_id:
                raise MalformedTokenError("Claims 'aud' ou 'deployment_id' absents de l'id_token.", phase="decode")

            launch_config = await self._resolver.resolve(issuer, client_id, deployment_id, phase="launch_config")
            payload = await self._verify_signature(id_token, launch_config.jwks_url)
            login_state = verify_state(self._config.state_secret, state)
            claims = validate_launch_claims(payload)

            if claims.audience != launch_config.client_id:
                raise ClientMismatchError(
                    "L'audience de l'id_token ne correspond pas au client enregistré.", phase="audience"
                )
            if claims.nonce != login_state.nonce:
                raise NonceMismatchError("nonce du lancement différent de celui du state.", phase="nonce")
            if not await self._storage.validate_nonce(claims.nonce):
                raise NonceReplayError("nonce déjà utilisé ou expiré.", phase="nonce")
        except LTIError as exc:
            exc.with_context(issuer=issuer, client_id=client_id)
            if isinstance(exc, LTISecurityError):
                logger.warning(
                    "Lancement LTI rejeté (%s) iss=%s client_id=%s phase=%s",
                    exc.kind.value,
                    issuer,
                    client_id,
                    exc.phase,
                )
            elif isinstance(exc, ConfigurationError):
                logger.info("Lancement LTI pour une plateforme inconnue: iss=%s client_id=%s", issuer, client_id)
            else:
                logger.info("Lancement LTI invalide (%s): %s", exc.kind.value, exc)
            raise

        logger.info(
            "Lancement LTI validé: iss=%s client_id=%s deployment_id=%s",
            claims.iss,
            launch_config.client_id,
            claims.deployment_id,
        )
        return claims

    async def _verify_signature(self, id_token: str, jwks_url: str) -> dict[str, Any]:
        try:
            header = jwt.get_unverified_header(id_token)
        except PyJWTError as exc:
            raise MalformedTokenError("En-tête JWT de l'id_token illisible.", phase="decode") from exc

        key_set = self._key_sets.get(jwks_url)
        signing_key = await key_set.get_signing_key(header.get("kid"))
        try:
            return jwt.decode(
                id_token,
                key=signing_key.key,
                algorithms=ID_TOKEN_ALGORITHMS,
                leeway=self._config.clock_skew_seconds,
                options={"verify_aud": False, "require": ["exp", "iat"]},
            )
        except PyJWTError as exc:
            raise InvalidSignatureError(
                "id_token rejeté par la vérification cryptographique.", phase="signature"
            ) from exc


__all__ = ["ID_TOKEN_ALGORITHMS", "LaunchVerifier", "read_unverified_claims"]
