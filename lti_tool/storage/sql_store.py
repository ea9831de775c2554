"""Relational storage on SQLAlchemy 2.0 (async engine).

Works with any async driver SQLAlchemy supports (``postgresql+asyncpg``,
``mysql+aiomysql``, ``sqlite+aiosqlite``). Nonces are consumed with a single
conditional ``DELETE`` and the affected row count decides the outcome, so the
database serializes concurrent consumers.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import DateTime, ForeignKey, MetaData, String, Text, UniqueConstraint, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

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


convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)


class ClientRow(Base):
    __tablename__ = "lti_clients"
    __table_args__ = (UniqueConstraint("iss", "client_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    iss: Mapped[str] = mapped_column(String(512))
    client_id: Mapped[str] = mapped_column(String(255))
    auth_url: Mapped[str] = mapped_column(String(1024))
    token_url: Mapped[str] = mapped_column(String(1024))
    jwks_url: Mapped[str] = mapped_column(String(1024))

    deployments: Mapped[list["DeploymentRow"]] = relationship(
        back_populates="client",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DeploymentRow.deployment_id",
    )

    def to_model(self, *, with_deployments: bool = False) -> Client:
        return Client(
            id=self.id,
            name=self.name,
            iss=self.iss,
            client_id=self.client_id,
            auth_url=self.auth_url,
            token_url=self.token_url,
            jwks_url=self.jwks_url,
            deployments=[row.to_model() for row in self.deployments] if with_deployments else [],
        )


class DeploymentRow(Base):
    __tablename__ = "lti_deployments"
    __table_args__ = (UniqueConstraint("client_pk", "deployment_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    client_pk: Mapped[str] = mapped_column(ForeignKey("lti_clients.id", ondelete="CASCADE"))
    deployment_id: Mapped[str] = mapped_column(String(255))
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    client: Mapped[ClientRow] = relationship(back_populates="deployments")

    def to_model(self) -> Deployment:
        return Deployment(
            id=self.id,
            deployment_id=self.deployment_id,
            name=self.name,
            description=self.description,
        )


class LaunchConfigRow(Base):
    __tablename__ = "lti_launch_configs"

    iss: Mapped[str] = mapped_column(String(512), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    deployment_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    auth_url: Mapped[str] = mapped_column(String(1024))
    token_url: Mapped[str] = mapped_column(String(1024))
    jwks_url: Mapped[str] = mapped_column(String(1024))

    def to_model(self) -> LaunchConfig:
        return LaunchConfig(
            iss=self.iss,
            client_id=self.client_id,
            deployment_id=self.deployment_id,
            auth_url=self.auth_url,
            token_url=self.token_url,
            jwks_url=self.jwks_url,
        )


class NonceRow(Base):
    __tablename__ = "lti_nonces"

    nonce: Mapped[str] = mapped_column(String(255), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class SessionRow(Base):
    __tablename__ = "lti_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    data: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class RegistrationSessionRow(Base):
    __tablename__ = "lti_registration_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlStorage:
    def __init__(
        self,
        engine: AsyncEngine,
        *,
        session_ttl_seconds: int = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self._session_ttl = timedelta(seconds=session_ttl_seconds)
        self._clock = clock
        self._launch_configs: TTLCache[LaunchConfig] = TTLCache(LAUNCH_CONFIG_CACHE_SIZE, LAUNCH_CONFIG_CACHE_TTL)
        self._sessions: TTLCache[tuple[Session, datetime]] = TTLCache(SESSION_CACHE_SIZE, SESSION_CACHE_TTL)

    @classmethod
    def from_url(cls, database_url: str, **kwargs: Any) -> "SqlStorage":
        return cls(create_async_engine(database_url, pool_pre_ping=True), **kwargs)

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    def _now(self) -> datetime:
        return _as_utc(self._clock())

    # clients -----------------------------------------------------------------

    async def _require_client(self, db: AsyncSession, client_id: str) -> ClientRow:
        row = await db.get(ClientRow, client_id)
        if row is None:
            raise StorageError(f"Client LTI {client_id!r} introuvable.")
        return row

    async def list_clients(self) -> list[Client]:
        async with self._session_factory() as db:
            rows = (await db.scalars(select(ClientRow).order_by(ClientRow.name))).all()
            return [row.to_model() for row in rows]

    async def get_client_by_id(self, client_id: str) -> Client | None:
        async with self._session_factory() as db:
            row = await db.get(ClientRow, client_id)
            return row.to_model(with_deployments=True) if row else None

    async def add_client(self, client: ClientCreate) -> str:
        internal_id = str(uuid.uuid4())
        async with self._session_factory() as db:
            db.add(ClientRow(id=internal_id, **client.model_dump()))
            try:
                await db.commit()
            except IntegrityError as exc:
                raise StorageError(
                    f"Un client existe déjà pour {client.iss} (client_id={client.client_id}).",
                    issuer=client.iss,
                    client_id=client.client_id,
                ) from exc
        logger.info("Client LTI %s ajouté pour %s", internal_id, client.iss)
        return internal_id

    async def update_client(self, client_id: str, update: ClientUpdate) -> None:
        async with self._session_factory() as db:
            row = await self._require_client(db, client_id)
            old_identity = (row.iss, row.client_id)
            changes = update.changes()
            for field, value in changes.items():
                setattr(row, field, value)
            client = row.to_model()
            try:
                await db.execute(
                    delete(LaunchConfigRow).where(
                        LaunchConfigRow.iss == old_identity[0],
                        LaunchConfigRow.client_id == old_identity[1],
                    )
                )
                for deployment in row.deployments:
                    db.add(self._launch_row(LaunchConfig.for_deployment(client, deployment.to_model())))
                await db.commit()
            except IntegrityError as exc:
                raise StorageError(
                    f"Un client existe déjà pour {client.iss} (client_id={client.client_id}).",
                    issuer=client.iss,
                    client_id=client.client_id,
                ) from exc
        self._evict_platform(*old_identity)
        self._evict_platform(client.iss, client.client_id)
        logger.info("Client LTI %s mis à jour", client_id)

    async def delete_client(self, client_id: str) -> None:
        async with self._session_factory() as db:
            row = await db.get(ClientRow, client_id)
            if row is None:
                logger.debug("Suppression ignorée: client LTI %s absent", client_id)
                return
            identity = (row.iss, row.client_id)
            await db.execute(
                delete(LaunchConfigRow).where(
                    LaunchConfigRow.iss == identity[0],
                    LaunchConfigRow.client_id == identity[1],
                )
            )
            await db.delete(row)
            await db.commit()
        self._evict_platform(*identity)
        logger.info("Client LTI %s supprimé", client_id)

    # deployments -------------------------------------------------------------

    async def list_deployments(self, client_id: str) -> list[Deployment]:
        async with self._session_factory() as db:
            row = await self._require_client(db, client_id)
            return [deployment.to_model() for deployment in row.deployments]

    async def get_deployment(self, client_id: str, deployment_id: str) -> Deployment | None:
        async with self._session_factory() as db:
            row = await db.get(DeploymentRow, deployment_id)
            if row is None or row.client_pk != client_id:
                return None
            return row.to_model()

    async def add_deployment(self, client_id: str, deployment: DeploymentCreate) -> str:
        internal_id = str(uuid.uuid4())
        async with self._session_factory() as db:
            client_row = await self._require_client(db, client_id)
            client = client_row.to_model()
            row = DeploymentRow(id=internal_id, client_pk=client_id, **deployment.model_dump())
            try:
                db.add(row)
                await db.merge(self._launch_row(LaunchConfig.for_deployment(client, row.to_model())))
                await db.commit()
            except IntegrityError as exc:
                raise StorageError(
                    f"Le déploiement {deployment.deployment_id!r} existe déjà pour ce client.",
                    issuer=client.iss,
                    client_id=client.client_id,
                ) from exc
        self._evict_platform(client.iss, client.client_id)
        logger.info("Déploiement %s ajouté au client %s", deployment.deployment_id, client_id)
        return internal_id

    async def update_deployment(self, client_id: str, deployment_id: str, update: DeploymentUpdate) -> None:
        async with self._session_factory() as db:
            client_row = await self._require_client(db, client_id)
            row = await db.get(DeploymentRow, deployment_id)
            if row is None or row.client_pk != client_id:
                raise StorageError(f"Déploiement {deployment_id!r} introuvable.", client_id=client_row.client_id)
            old_deployment_id = row.deployment_id
            client = client_row.to_model()
            try:
                for field, value in update.changes().items():
                    setattr(row, field, value)
                if row.deployment_id != old_deployment_id:
                    await db.execute(
                        delete(LaunchConfigRow).where(
                            LaunchConfigRow.iss == client.iss,
                            LaunchConfigRow.client_id == client.client_id,
                            LaunchConfigRow.deployment_id == old_deployment_id,
                        )
                    )
                await db.merge(self._launch_row(LaunchConfig.for_deployment(client, row.to_model())))
                await db.commit()
            except IntegrityError as exc:
                raise StorageError(
                    f"Le déploiement {row.deployment_id!r} existe déjà pour ce client.",
                    client_id=client.client_id,
                ) from exc
        self._evict_platform(client.iss, client.client_id)

    async def delete_deployment(self, client_id: str, deployment_id: str) -> None:
        async with self._session_factory() as db:
            row = await db.get(DeploymentRow, deployment_id)
            if row is None or row.client_pk != client_id:
                logger.debug("Suppression ignorée: déploiement %s absent", deployment_id)
                return
            client_row = await self._require_client(db, client_id)
            identity = (client_row.iss, client_row.client_id)
            lms_deployment_id = row.deployment_id
            await db.execute(
                delete(LaunchConfigRow).where(
                    LaunchConfigRow.iss == identity[0],
                    LaunchConfigRow.client_id == identity[1],
                    LaunchConfigRow.deployment_id == lms_deployment_id,
                )
            )
            await db.delete(row)
            await db.commit()
        self._evict_platform(*identity)
        logger.info("Déploiement %s supprimé du client %s", lms_deployment_id, client_id)

    # sessions ----------------------------------------------------------------

    def _session_lifetime(self, ttl_seconds: int | None) -> timedelta:
        return self._session_ttl if ttl_seconds is None else timedelta(seconds=ttl_seconds)

    async def get_session(self, session_id: str) -> Session | None:
        now = self._now()
        cached = self._sessions.get(session_id)
        if cached is not None:
            if cached.value is None:
                return None
            session, expires_at = cached.value
            if expires_at > now:
                return session
            self._sessions.delete(session_id)

        async with self._session_factory() as db:
            row = await db.get(SessionRow, session_id)
            if row is None:
                self._sessions.set_absent(session_id)
                return None
            expires_at = _as_utc(row.expires_at)
            if expires_at <= now:
                await db.delete(row)
                await db.commit()
                self._sessions.set_absent(session_id)
                return None
            session = Session.from_document(json.loads(row.data))
        self._sessions.set(session_id, (session, expires_at))
        return session

    async def add_session(self, session: Session, ttl_seconds: int | None = None) -> str:
        expires_at = self._now() + self._session_lifetime(ttl_seconds)
        async with self._session_factory() as db:
            db.add(SessionRow(id=session.id, data=json.dumps(session.to_document()), expires_at=expires_at))
            await db.commit()
        self._sessions.set(session.id, (session, expires_at))
        return session.id

    # nonces ------------------------------------------------------------------

    async def store_nonce(self, nonce: str, expires_at: datetime) -> None:
        async with self._session_factory() as db:
            await db.merge(NonceRow(nonce=nonce, expires_at=_as_utc(expires_at)))
            await db.commit()

    async def validate_nonce(self, nonce: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                delete(NonceRow).where(NonceRow.nonce == nonce, NonceRow.expires_at > self._now())
            )
            await db.commit()
        return result.rowcount == 1

    # launch configs ----------------------------------------------------------

    @staticmethod
    def _launch_row(config: LaunchConfig) -> LaunchConfigRow:
        return LaunchConfigRow(
            iss=config.iss,
            client_id=config.client_id,
            deployment_id=config.deployment_id,
            auth_url=config.auth_url,
            token_url=config.token_url,
            jwks_url=config.jwks_url,
        )

    def _evict_platform(self, iss: str, lms_client_id: str) -> None:
        prefix = launch_config_key(iss, lms_client_id, "")
        self._launch_configs.delete_where(lambda key: key.startswith(prefix))

    async def get_launch_config(self, iss: str, client_id: str, deployment_id: str) -> LaunchConfig | None:
        cache_key = launch_config_key(iss, client_id, deployment_id)
        cached = self._launch_configs.get(cache_key)
        if cached is not None:
            logger.debug("Launch config %s servie depuis le cache", cache_key)
            return cached.value

        async with self._session_factory() as db:
            row = await db.get(LaunchConfigRow, (iss, client_id, deployment_id))
            if row is None and deployment_id != DEFAULT_DEPLOYMENT_ID:
                row = await db.get(LaunchConfigRow, (iss, client_id, DEFAULT_DEPLOYMENT_ID))
            config = row.to_model() if row else None
        self._launch_configs.set(cache_key, config)
        return config

    async def save_launch_config(self, launch_config: LaunchConfig) -> None:
        async with self._session_factory() as db:
            await db.merge(self._launch_row(launch_config))
            await db.commit()
        self._evict_platform(launch_config.iss, launch_config.client_id)

    # registration sessions ---------------------------------------------------

    async def set_registration_session(self, session_id: str, session: RegistrationSession) -> None:
        async with self._session_factory() as db:
            await db.merge(
                RegistrationSessionRow(
                    id=session_id,
                    data=json.dumps(session.to_document()),
                    expires_at=_as_utc(session.expires_at),
                )
            )
            await db.commit()

    async def get_registration_session(self, session_id: str) -> RegistrationSession | None:
        async with self._session_factory() as db:
            row = await db.get(RegistrationSessionRow, session_id)
            if row is None:
                return None
            if _as_utc(row.expires_at) <= self._now():
                await db.delete(row)
                await db.commit()
                return None
            return RegistrationSession.model_validate(json.loads(row.data))

    async def delete_registration_session(self, session_id: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(delete(RegistrationSessionRow).where(RegistrationSessionRow.id == session_id))
            await db.commit()
        return result.rowcount == 1

    # maintenance -------------------------------------------------------------

    async def purge_expired(self) -> int:
        now = self._now()
        removed = 0
        async with self._session_factory() as db:
            for model in (NonceRow, SessionRow, RegistrationSessionRow):
                result = await db.execute(delete(model).where(model.expires_at <= now))
                removed += result.rowcount or 0
            await db.commit()
        return removed


__all__ = ["Base", "SqlStorage"]
