"""Signing key material for the tool: RS256 signing and JWKS publication."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from typing import Any

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from .errors import ConfigurationError


DEFAULT_KEY_ID = "main"


def base64url_uint(value: int) -> str:
    data = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def compute_key_id(public_key: RSAPublicKey) -> str:
    """Stable identifier derived from the RSA modulus."""

    numbers = public_key.public_numbers()
    modulus_bytes = numbers.n.to_bytes((numbers.n.bit_length() + 7) // 8, "big")
    return hashlib.sha256(modulus_bytes).hexdigest()[:16]


def load_private_key_pem(pem: str | bytes) -> RSAPrivateKey:
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("Impossible de charger la clé privée LTI (format PEM invalide).") from exc
    if not isinstance(key, RSAPrivateKey):
        raise ConfigurationError("La clé privée LTI doit être de type RSA.")
    return key


def load_public_key_pem(pem: str | bytes) -> RSAPublicKey:
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_public_key(data)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("Impossible de charger la clé publique LTI (format PEM invalide).") from exc
    if not isinstance(key, RSAPublicKey):
        raise ConfigurationError("La clé publique LTI doit être de type RSA.")
    return key


@dataclass(slots=True)
class KeyMaterial:
    private_key: RSAPrivateKey
    public_key: RSAPublicKey
    key_id: str = DEFAULT_KEY_ID

    @classmethod
    def from_pem(
        cls,
        private_key_pem: str | bytes,
        public_key_pem: str | bytes | None = None,
        *,
        key_id: str | None = None,
    ) -> "KeyMaterial":
        private_key = load_private_key_pem(private_key_pem)
        public_key = load_public_key_pem(public_key_pem) if public_key_pem else private_key.public_key()
        return cls(private_key=private_key, public_key=public_key, key_id=key_id or DEFAULT_KEY_ID)

    @classmethod
    def generate(cls, *, key_id: str | None = None, key_size: int = 2048) -> "KeyMaterial":
        """Create a throwaway key pair, for development and tests."""

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        public_key = private_key.public_key()
        return cls(private_key=private_key, public_key=public_key, key_id=key_id or compute_key_id(public_key))

    @property
    def private_key_pem(self) -> str:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")

    @property
    def public_key_pem(self) -> str:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("utf-8")

    def public_jwk(self) -> dict[str, Any]:
        numbers = self.public_key.public_numbers()
        return {
            "kty": "RSA",
            "n": base64url_uint(numbers.n),
            "e": base64url_uint(numbers.e),
            "use": "sig",
            "alg": "RS256",
            "kid": self.key_id,
        }

    def jwks_document(self) -> dict[str, Any]:
        return {"keys": [self.public_jwk()]}

    def sign(self, payload: dict[str, Any]) -> str:
        """Encode ``payload`` as an RS256 JWT carrying this key's ``kid``."""

        headers = {"kid": self.key_id, "alg": "RS256", "typ": "JWT"}
        return jwt.encode(payload, self.private_key, algorithm="RS256", headers=headers)


__all__ = [
    "DEFAULT_KEY_ID",
    "KeyMaterial",
    "base64url_uint",
    "compute_key_id",
    "load_private_key_pem",
    "load_public_key_pem",
]
