"""Redis-backed storage.

Entities are stored as JSON documents under a common key prefix. TTL-bearing
records (sessions, nonces, registration sessions) use Redis expiry and also
carry their own ``expiresAt`` which reads check again. Nonce consumption is a
single ``GETDEL`` so only one concurrent caller can observe the stored value.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from redis.asyncio import Redis

from ..cache import (
    LAUNCH_CONFIG_CACHE_SIZE,
    LAUNCH_CONFIG_CACHE_TTL,
    SESSION_CACHE_SIZE,
    SESSION_CACHE_TTL,
    TTLCache,
)
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


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _ttl_ms(expires_at: datetime, now: datetime) -> int:
    return max(1, math.ceil((expires_at - now).total_seconds() * 1000))


class RedisStorage:
    def __init__(
        self,
        redis_client: Redis,
        *,
        key_prefix: str = "lti:",
        session_ttl_seconds: int = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._redis = redis_client
        self._prefix = key_prefix
        self._session_ttl = timedelta(seconds=session_ttl_seconds)
        self._clock = clock
        self._launch_configs: TTLCache[LaunchConfig] = TTLCache(LAUNCH_CONFIG_CACHE_SIZE, LAUNCH_CONFIG_CACHE_TTL)
        self._sessions: TTLCache[tuple[Session, datetime]] = TTLCache(SESSION_CACHE_SIZE, SESSION_CACHE_TTL)

    @classmethod
    def from_url(cls, redis_url: str = "redis://localhost:6379/0", **kwargs: Any) -> "RedisStorage":
        return cls(Redis.from_url(redis_url, decode_responses=True), **kwargs)

    def _key(self, *parts: str) -> str:
        return self._prefix + ":".join(parts)

    def _client_key(self, client_id: str) -> str:
        return self._key("client", client_id)

    def _identity_key(self, iss: str, lms_client_id: str) -> str:
        return self._key("client-identity", f"{iss}#{lms_client_id}")

    def _deployments_key(self, client_id: str) -> str:
        return self._key("deployments", client_id)

    def _launch_key(self, iss: str, lms_client_id: str, deployment_id: str) -> str:
        return self._key("launch", launch_config_key(iss, lms_client_id, deployment_id))

    def _launch_index_key(self, iss: str, lms_client_id: str) -> str:
        return self._key("launch-index", f"{iss}#{lms_client_id}")

    async def _read_json(self, key: str) -> dict[str, Any] | None:
        raw = _text(await self._redis.get(key))
        if raw is None:
            return None
        return json.loads(raw)

    # clients -----------------------------------------------------------------

    async def _load_client(self, client_id: str) -> Client | None:
        document = await self._read_json(self._client_key(client_id))
        return Client.model_validate(document) if document else None

    async def _require_client(self, client_id: str) -> Client:
        client = await self._load_client(client_id)
        if client is None:
            raise StorageError(f"Client LTI {client_id!r} introuvable.")
        return client

    async def _load_deployments(self, client_id: str) -> dict[str, Deployment]:
        raw = await self._redis.hgetall(self._deployments_key(client_id))
        return {
            _text(key): Deployment.model_validate_json(_text(value))
            for key, value in raw.items()
        }

    async def list_clients(self) -> list[Client]:
        ids = sorted(_text(item) for item in await self._redis.smembers(self._key("clients")))
        clients: list[Client] = []
        for client_id in ids:
            client = await self._load_client(client_id)
            if client is not None:
                clients.append(client)
        return clients

    async def get_client_by_id(self, client_id: str) -> Client | None:
        client = await self._load_client(client_id)
        if client is None:
            return None
        deployments = await self._load_deployments(client_id)
        return client.model_copy(update={"deployments": list(deployments.values())})

    async def add_client(self, client: ClientCreate) -> str:
        internal_id = str(uuid.uuid4())
        claimed = await self._redis.set(self._identity_key(client.iss, client.client_id), internal_id, nx=True)
        if not claimed:
            raise StorageError(
                f"Un client existe déjà pour {client.iss} (client_id={client.client_id}).",
                issuer=client.iss,
                client_id=client.client_id,
            )
        record = Client(id=internal_id, **client.model_dump())
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._client_key(internal_id), json.dumps(record.to_document()))
            pipe.sadd(self._key("clients"), internal_id)
            await pipe.execute()
        logger.info("Client LTI %s ajouté pour %s", internal_id, client.iss)
        return internal_id

    async def update_client(self, client_id: str, update: ClientUpdate) -> None:
        current = await self._require_client(client_id)
        updated = current.model_copy(update=update.changes())
        identity_changed = (updated.iss, updated.client_id) != (current.iss, current.client_id)
        if identity_changed:
            claimed = await self._redis.set(
                self._identity_key(updated.iss, updated.client_id), client_id, nx=True
            )
            if not claimed:
                raise StorageError(
                    f"Un client existe déjà pour {updated.iss} (client_id={updated.client_id}).",
                    issuer=updated.iss,
                    client_id=updated.client_id,
                )
            await self._redis.delete(self._identity_key(current.iss, current.client_id))

        await self._drop_launch_configs(current.iss, current.client_id)
        await self._redis.set(self._client_key(client_id), json.dumps(updated.to_document()))
        for deployment in (await self._load_deployments(client_id)).values():
            await self.save_launch_config(LaunchConfig.for_deployment(updated, deployment))
        logger.info("Client LTI %s mis à jour", client_id)

    async def delete_client(self, client_id: str) -> None:
        client = await self._load_client(client_id)
        if client is None:
            logger.debug("Suppression ignorée: client LTI %s absent", client_id)
            return
        await self._drop_launch_configs(client.iss, client.client_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._client_key(client_id))
            pipe.delete(self._deployments_key(client_id))
            pipe.delete(self._identity_key(client.iss, client.client_id))
            pipe.srem(self._key("clients"), client_id)
            await pipe.execute()
        logger.info("Client LTI %s supprimé", client_id)

    # deployments -------------------------------------------------------------

    async def list_deployments(self, client_id: str) -> list[Deployment]:
        await self._require_client(client_id)
        return list((await self._load_deployments(client_id)).values())

    async def get_deployment(self, client_id: str, deployment_id: str) -> Deployment | None:
        raw = _text(await self._redis.hget(self._deployments_key(client_id), deployment_id))
        return Deployment.model_validate_json(raw) if raw else None

    async def add_deployment(self, client_id: str, deployment: DeploymentCreate) -> str:
        client = await self._require_client(client_id)
        existing = await self._load_deployments(client_id)
        if any(item.deployment_id == deployment.deployment_id for item in existing.values()):
            raise StorageError(
                f"Le déploiement {deployment.deployment_id!r} existe déjà pour ce client.",
                issuer=client.iss,
                client_id=client.client_id,
            )
        internal_id = str(uuid.uuid4())
        record = Deployment(id=internal_id, **deployment.model_dump())
        await self._redis.hset(self._deployments_key(client_id), internal_id, json.dumps(record.to_document()))
        await self.save_launch_config(LaunchConfig.for_deployment(client, record))
        logger.info("Déploiement %s ajouté au client %s", deployment.deployment_id, client_id)
        return internal_id

    async def update_deployment(self, client_id: str, deployment_id: str, update: DeploymentUpdate) -> None:
        client = await self._require_client(client_id)
        existing = await self._load_deployments(client_id)
        current = existing.get(deployment_id)
        if current is None:
            raise StorageError(f"Déploiement {deployment_id!r} introuvable.", client_id=client.client_id)
        updated = current.model_copy(update=update.changes())
        if updated.deployment_id != current.deployment_id:
            if any(
                item.deployment_id == updated.deployment_id and item.id != deployment_id
                for item in existing.values()
            ):
                raise StorageError(
                    f"Le déploiement {updated.deployment_id!r} existe déjà pour ce client.",
                    client_id=client.client_id,
                )
            await self._delete_launch_config(client.iss, client.client_id, current.deployment_id)
        await self._redis.hset(self._deployments_key(client_id), deployment_id, json.dumps(updated.to_document()))
        await self.save_launch_config(LaunchConfig.for_deployment(client, updated))

    async def delete_deployment(self, client_id: str, deployment_id: str) -> None:
        client = await self._load_client(client_id)
        deployment = await self.get_deployment(client_id, deployment_id)
        if client is None or deployment is None:
            logger.debug("Suppression ignorée: déploiement %s absent", deployment_id)
            return
        await self._redis.hdel(self._deployments_key(client_id), deployment_id)
        await self._delete_launch_config(client.iss, client.client_id, deployment.deployment_id)
        logger.info("Déploiement %s supprimé du client %s", deployment.deployment_id, client_id)

    # sessions ----------------------------------------------------------------

    def _session_lifetime(self, ttl_seconds: int | None) -> timedelta:
        return self._session_ttl if ttl_seconds is None else timedelta(seconds=ttl_seconds)

    async def get_session(self, session_id: str) -> Session | None:
        now = self._clock()
        cached = self._sessions.get(session_id)
        if cached is not None:
            if cached.value is None:
                return None
            session, expires_at = cached.value
            if expires_at > now:
                return session
            self._sessions.delete(session_id)

        document = await self._read_json(self._key("session", session_id))
        if document is None:
            self._sessions.set_absent(session_id)
            return None
        expires_at = datetime.fromisoformat(document["expiresAt"])
        if expires_at <= now:
            await self._redis.delete(self._key("session", session_id))
            self._sessions.set_absent(session_id)
            return None
        session = Session.from_document(document["session"])
        self._sessions.set(session_id, (session, expires_at))
        return session

    async def add_session(self, session: Session, ttl_seconds: int | None = None) -> str:
        now = self._clock()
        expires_at = now + self._session_lifetime(ttl_seconds)
        document = {"expiresAt": expires_at.isoformat(), "session": session.to_document()}
        await self._redis.set(
            self._key("session", session.id),
            json.dumps(document),
            px=_ttl_ms(expires_at, now),
        )
        self._sessions.set(session.id, (session, expires_at))
        return session.id

    # nonces ------------------------------------------------------------------

    async def store_nonce(self, nonce: str, expires_at: datetime) -> None:
        now = self._clock()
        await self._redis.set(self._key("nonce", nonce), expires_at.isoformat(), px=_ttl_ms(expires_at, now))

    async def validate_nonce(self, nonce: str) -> bool:
        raw = _text(await self._redis.getdel(self._key("nonce", nonce)))
        if raw is None:
            return False
        return datetime.fromisoformat(raw) > self._clock()

    # launch configs ----------------------------------------------------------

    def _evict_platform(self, iss: str, lms_client_id: str) -> None:
        prefix = launch_config_key(iss, lms_client_id, "")
        self._launch_configs.delete_where(lambda key: key.startswith(prefix))

    async def _delete_launch_config(self, iss: str, lms_client_id: str, deployment_id: str) -> None:
        key = self._launch_key(iss, lms_client_id, deployment_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.srem(self._launch_index_key(iss, lms_client_id), key)
            await pipe.execute()
        self._evict_platform(iss, lms_client_id)

    async def _drop_launch_configs(self, iss: str, lms_client_id: str) -> None:
        index_key = self._launch_index_key(iss, lms_client_id)
        keys = [_text(item) for item in await self._redis.smembers(index_key)]
        if keys:
            await self._redis.delete(*keys)
        await self._redis.delete(index_key)
        self._evict_platform(iss, lms_client_id)

    async def _fetch_launch_config(self, iss: str, client_id: str, deployment_id: str) -> LaunchConfig | None:
        document = await self._read_json(self._launch_key(iss, client_id, deployment_id))
        return LaunchConfig.model_validate(document) if document else None

    async def get_launch_config(self, iss: str, client_id: str, deployment_id: str) -> LaunchConfig | None:
        cache_key = launch_config_key(iss, client_id, deployment_id)
        cached = self._launch_configs.get(cache_key)
        if cached is not None:
            logger.debug("Launch config %s servie depuis le cache", cache_key)
            return cached.value

        config = await self._fetch_launch_config(iss, client_id, deployment_id)
        if config is None and deployment_id != DEFAULT_DEPLOYMENT_ID:
            config = await self._fetch_launch_config(iss, client_id, DEFAULT_DEPLOYMENT_ID)
        self._launch_configs.set(cache_key, config)
        return config

    async def save_launch_config(self, launch_config: LaunchConfig) -> None:
        key = self._launch_key(launch_config.iss, launch_config.client_id, launch_config.deployment_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(key, json.dumps(launch_config.to_document()))
            pipe.sadd(self._launch_index_key(launch_config.iss, launch_config.client_id), key)
            await pipe.execute()
        self._evict_platform(launch_config.iss, launch_config.client_id)

    # registration sessions ---------------------------------------------------

    async def set_registration_session(self, session_id: str, session: RegistrationSession) -> None:
        await self._redis.set(
            self._key("registration", session_id),
            json.dumps(session.to_document()),
            px=_ttl_ms(session.expires_at, self._clock()),
        )

    async def get_registration_session(self, session_id: str) -> RegistrationSession | None:
        document = await self._read_json(self._key("registration", session_id))
        if document is None:
            return None
        session = RegistrationSession.model_validate(document)
        if session.is_expired(self._clock()):
            await self.delete_registration_session(session_id)
            return None
        return session

    async def delete_registration_session(self, session_id: str) -> bool:
        return await self._redis.delete(self._key("registration", session_id)) == 1


__all__ = ["RedisStorage"]
