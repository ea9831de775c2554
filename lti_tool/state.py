"""Self-contained HMAC state tokens binding a login to its launch."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import jwt
from jwt import PyJWTError

from .errors import InvalidStateError


STATE_ALGORITHM = "HS256"


@dataclass(slots=True)
class LoginState:
    nonce: str
    iss: str
    client_id: str
    target_link_uri: str
    exp: int


def sign_state(
    secret: bytes,
    *,
    nonce: str,
    iss: str,
    client_id: str,
    target_link_uri: str,
    expires_in: int,
    now: int | None = None,
) -> str:
    issued_at = int(now if now is not None else time.time())
    payload: dict[str, Any] = {
        "nonce": nonce,
        "iss": iss,
        "client_id": client_id,
        "target_link_uri": target_link_uri,
        "iat": issued_at,
        "exp": issued_at + expires_in,
    }
    return jwt.encode(payload, secret, algorithm=STATE_ALGORITHM)


def verify_state(secret: bytes, token: str) -> LoginState:
    """Check signature and expiry of a state token and return its content."""

    if not token:
        raise InvalidStateError("state manquant dans la requête de lancement.", phase="state")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[STATE_ALGORITHM],
            options={"require": ["exp", "nonce"]},
        )
    except PyJWTError as exc:
        raise InvalidStateError("state expiré ou invalide. Relance l'authentification LTI.", phase="state") from exc
    return LoginState(
        nonce=str(claims["nonce"]),
        iss=str(claims.get("iss", "")),
        client_id=str(claims.get("client_id", "")),
        target_link_uri=str(claims.get("target_link_uri", "")),
        exp=int(claims["exp"]),
    )


__all__ = ["LoginState", "STATE_ALGORITHM", "sign_state", "verify_state"]
