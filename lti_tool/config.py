"""Tool configuration loaded from the environment.

Secrets and keys follow the ``NAME`` / ``NAME_PATH`` convention: the value can
be inlined in the variable (``\\n`` escapes allowed) or read from a file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError
from .keys import DEFAULT_KEY_ID, KeyMaterial


logger = logging.getLogger(__name__)


MIN_STATE_SECRET_BYTES = 32
DEFAULT_STATE_EXPIRATION = 600
DEFAULT_NONCE_EXPIRATION = 600
DEFAULT_HTTP_TIMEOUT = 10.0
DEFAULT_SESSION_TTL = 24 * 60 * 60
DEFAULT_CLOCK_SKEW = 30


def _env_path_or_none(name: str) -> Path | None:
    value = os.getenv(name)
    if not value:
        return None
    path = Path(value)
    if not path.exists():
        raise ConfigurationError(f"Le chemin {value!r} défini par {name} est introuvable.")
    return path


def _read_env_or_file(name: str, fallback_path_env: str | None = None, *, required: bool = True) -> str | None:
    raw_value = os.getenv(name)
    if raw_value:
        return raw_value.replace("\\n", "\n").strip()

    if fallback_path_env:
        path = _env_path_or_none(fallback_path_env)
        if path:
            return path.read_text(encoding="utf-8")

    if not required:
        return None
    hint = f"{name} ou {fallback_path_env}" if fallback_path_env else name
    raise ConfigurationError(f"Configurer {hint} pour activer l'intégration LTI.")


def _env_number(name: str, default: float, cast: type = int) -> float:
    raw_value = os.getenv(name)
    if not raw_value:
        return default
    try:
        value = cast(raw_value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} doit être numérique (reçu {raw_value!r}).") from exc
    if value <= 0:
        raise ConfigurationError(f"{name} doit être strictement positif.")
    return value


@dataclass(slots=True)
class ToolConfig:
    state_secret: bytes
    keys: KeyMaterial
    state_expiration_seconds: int = DEFAULT_STATE_EXPIRATION
    nonce_expiration_seconds: int = DEFAULT_NONCE_EXPIRATION
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT
    session_ttl_seconds: int = DEFAULT_SESSION_TTL
    clock_skew_seconds: int = DEFAULT_CLOCK_SKEW

    def __post_init__(self) -> None:
        if isinstance(self.state_secret, str):
            self.state_secret = self.state_secret.encode("utf-8")
        if not self.state_secret:
            raise ConfigurationError("Le secret de state LTI est vide.")
        if len(self.state_secret) < MIN_STATE_SECRET_BYTES:
            logger.warning(
                "Le secret de state LTI fait %d octets, %d sont recommandés",
                len(self.state_secret),
                MIN_STATE_SECRET_BYTES,
            )

    @property
    def key_id(self) -> str:
        return self.keys.key_id

    @classmethod
    def from_env(cls) -> "ToolConfig":
        state_secret = _read_env_or_file("LTI_STATE_SECRET", "LTI_STATE_SECRET_PATH")
        private_pem = _read_env_or_file("LTI_PRIVATE_KEY", "LTI_PRIVATE_KEY_PATH")
        public_pem = _read_env_or_file("LTI_PUBLIC_KEY", "LTI_PUBLIC_KEY_PATH", required=False)
        keys = KeyMaterial.from_pem(
            private_pem,
            public_pem,
            key_id=os.getenv("LTI_KEY_ID", DEFAULT_KEY_ID),
        )
        return cls(
            state_secret=state_secret.encode("utf-8"),
            keys=keys,
            state_expiration_seconds=int(_env_number("LTI_STATE_TTL", DEFAULT_STATE_EXPIRATION)),
            nonce_expiration_seconds=int(_env_number("LTI_NONCE_TTL", DEFAULT_NONCE_EXPIRATION)),
            http_timeout_seconds=float(_env_number("LTI_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT, float)),
            session_ttl_seconds=int(_env_number("LTI_SESSION_TTL", DEFAULT_SESSION_TTL)),
            clock_skew_seconds=int(_env_number("LTI_CLOCK_SKEW", DEFAULT_CLOCK_SKEW)),
        )


__all__ = ["ToolConfig"]
