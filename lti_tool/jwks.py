"""Remote platform key sets, fetched lazily and shared per JWKS URL."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

import httpx
import jwt
from jwt import PyJWTError

from .errors import InvalidSignatureError, KeySetUnavailableError


logger = logging.getLogger(__name__)


DEFAULT_MAX_AGE = 600.0
DEFAULT_REFETCH_COOLDOWN = 30.0


class RemoteKeySet:
    """Public keys published at one platform JWKS URL.

    Keys are reloaded once ``max_age`` has elapsed, or when a token names a
    ``kid`` the cached set does not know (at most once per ``refetch_cooldown``
    so unknown key ids cannot be used to hammer the platform).
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        max_age: float = DEFAULT_MAX_AGE,
        refetch_cooldown: float = DEFAULT_REFETCH_COOLDOWN,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._max_age = max_age
        self._refetch_cooldown = refetch_cooldown
        self._transport = transport
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: list[jwt.PyJWK] = []
        self._fetched_at: float | None = None

    @property
    def keys(self) -> list[jwt.PyJWK]:
        with self._lock:
            return list(self._keys)

    def _is_stale(self) -> bool:
        return self._fetched_at is None or self._clock() - self._fetched_at >= self._max_age

    def _can_refetch(self) -> bool:
        return self._fetched_at is None or self._clock() - self._fetched_at >= self._refetch_cooldown

    async def _retrieve(self) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(self.url, headers={"Accept": "application/json"})
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as exc:
            raise KeySetUnavailableError(
                f"JWKS de la plateforme indisponible ({self.url}).", phase="signature"
            ) from exc
        except ValueError as exc:
            raise KeySetUnavailableError(
                f"JWKS de la plateforme illisible ({self.url}).", phase="signature"
            ) from exc

    async def refresh(self) -> list[jwt.PyJWK]:
        document = await self._retrieve()
        entries = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(entries, list):
            raise KeySetUnavailableError(f"JWKS invalide (format inattendu) sur {self.url}.", phase="signature")

        keys: list[jwt.PyJWK] = []
        for entry in entries:
            if not isinstance(entry, dict) or entry.get("use", "sig") != "sig":
                continue
            try:
                keys.append(jwt.PyJWK(entry))
            except PyJWTError as exc:
                logger.debug("Clé JWKS ignorée (kid=%s): %s", entry.get("kid"), exc)

        with self._lock:
            self._keys = keys
            self._fetched_at = self._clock()
        logger.debug("JWKS %s chargé (%d clés)", self.url, len(keys))
        return keys

    @staticmethod
    def _select(keys: list[jwt.PyJWK], kid: str | None) -> jwt.PyJWK | None:
        if kid is None:
            return keys[0] if len(keys) == 1 else None
        for key in keys:
            if key.key_id == kid:
                return key
        return None

    async def get_signing_key(self, kid: str | None) -> jwt.PyJWK:
        keys = await self.refresh() if self._is_stale() else self.keys
        key = self._select(keys, kid)
        if key is None and kid is not None and self._can_refetch():
            logger.debug("kid %s inconnu, rechargement du JWKS %s", kid, self.url)
            key = self._select(await self.refresh(), kid)
        if key is None:
            raise InvalidSignatureError(
                "Clé de signature introuvable dans le JWKS de la plateforme.", phase="signature"
            )
        return key


class RemoteKeySetCache:
    """One :class:`RemoteKeySet` per JWKS URL, created on first use."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        max_age: float = DEFAULT_MAX_AGE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._max_age = max_age
        self._transport = transport
        self._lock = threading.Lock()
        self._sets: dict[str, RemoteKeySet] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sets)

    def get(self, url: str) -> RemoteKeySet:
        with self._lock:
            key_set = self._sets.get(url)
            if key_set is None:
                key_set = RemoteKeySet(
                    url,
                    timeout=self._timeout,
                    max_age=self._max_age,
                    transport=self._transport,
                )
                self._sets[url] = key_set
            return key_set

    def clear(self) -> None:
        with self._lock:
            self._sets.clear()


__all__ = ["RemoteKeySet", "RemoteKeySetCache"]
