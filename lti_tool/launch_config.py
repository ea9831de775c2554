from __future__ import annotations

import logging

from .errors import ConfigurationError
from .models import LaunchConfig
from .storage.contract import LTIStorage


logger = logging.getLogger(__name__)


class LaunchConfigResolver:
    """Look up the platform endpoints for an (issuer, client id, deployment id)."""

    def __init__(self, storage: LTIStorage) -> None:
        self._storage = storage

    async def find(self, iss: str, client_id: str, deployment_id: str) -> LaunchConfig | None:
        return await self._storage.get_launch_config(iss, client_id, deployment_id)

    async def resolve(self, iss: str, client_id: str, deployment_id: str, *, phase: str | None = None) -> LaunchConfig:
        config = await self.find(iss, client_id, deployment_id)
        if config is None:
            raise ConfigurationError(
                "Plateforme ou déploiement LTI non enregistré.",
                phase=phase,
                issuer=iss,
                client_id=client_id,
            )
        if config.deployment_id != deployment_id:
            logger.debug(
                "Déploiement %s résolu via la configuration %r de %s",
                deployment_id,
                config.deployment_id,
                iss,
            )
        return config


__all__ = ["LaunchConfigResolver"]
