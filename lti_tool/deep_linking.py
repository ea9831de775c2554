from __future__ import annotations

import time
import uuid
from typing import Any, Iterable

from .claims import DEPLOYMENT_ID_CLAIM, LTI_VERSION, MESSAGE_TYPE_CLAIM, VERSION_CLAIM
from .errors import ConfigurationError
from .keys import KeyMaterial
from .session import Session


CONTENT_ITEMS_CLAIM = "https://purl.imsglobal.org/spec/lti-dl/claim/content_items"
DATA_CLAIM = "https://purl.imsglobal.org/spec/lti-dl/claim/data"
DEEP_LINKING_RESPONSE = "LtiDeepLinkingResponse"
RESPONSE_LIFETIME = 600


class DeepLinkingResponder:
    """Signs the ``LtiDeepLinkingResponse`` sent back to the platform."""

    def __init__(self, keys: KeyMaterial) -> None:
        self._keys = keys

    def create_response_jwt(
        self,
        session: Session,
        content_items: Iterable[dict[str, Any]],
        *,
        now: int | None = None,
    ) -> str:
        settings = session.services.deep_linking if session.services else None
        if settings is None:
            raise ConfigurationError(
                "Cette session ne provient pas d'une requête de deep linking.",
                phase="deep_linking",
                issuer=session.platform.issuer,
                client_id=session.platform.client_id,
            )

        issued_at = int(now if now is not None else time.time())
        payload: dict[str, Any] = {
            "iss": session.platform.client_id,
            "aud": session.platform.issuer,
            "iat": issued_at,
            "exp": issued_at + RESPONSE_LIFETIME,
            "nonce": str(uuid.uuid4()),
            MESSAGE_TYPE_CLAIM: DEEP_LINKING_RESPONSE,
            VERSION_CLAIM: LTI_VERSION,
            DEPLOYMENT_ID_CLAIM: session.platform.deployment_id,
            CONTENT_ITEMS_CLAIM: list(content_items),
        }
        if settings.data:
            payload[DATA_CLAIM] = settings.data
        return self._keys.sign(payload)

    def return_url(self, session: Session) -> str:
        settings = session.services.deep_linking if session.services else None
        if settings is None:
            raise ConfigurationError("Aucune URL de retour de deep linking dans cette session.", phase="deep_linking")
        return settings.return_url


__all__ = ["CONTENT_ITEMS_CLAIM", "DATA_CLAIM", "DeepLinkingResponder"]
