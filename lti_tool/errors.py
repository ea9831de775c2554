"""Error taxonomy shared by the login, launch and service-token flows.

Every failure raised by the protocol layer is an :class:`LTIError` carrying a
machine readable :class:`ErrorKind`, so HTTP bindings and callers can branch on
``error.kind`` instead of parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    MALFORMED_TOKEN = "malformed_token"
    SCHEMA_VALIDATION = "schema_validation"
    INVALID_SIGNATURE = "invalid_signature"
    KEY_SET_UNAVAILABLE = "key_set_unavailable"
    INVALID_STATE = "invalid_state"
    CLIENT_MISMATCH = "client_mismatch"
    NONCE_MISMATCH = "nonce_mismatch"
    NONCE_REPLAY = "nonce_replay"
    TOKEN_REQUEST_FAILED = "token_request_failed"
    TOKEN_RESPONSE_MALFORMED = "token_response_malformed"
    REGISTRATION = "registration"
    STORAGE = "storage"


class LTIError(RuntimeError):
    """Base class for every LTI failure."""

    kind: ErrorKind = ErrorKind.CONFIGURATION

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        issuer: str | None = None,
        client_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.issuer = issuer
        self.client_id = client_id

    def with_context(
        self,
        *,
        phase: str | None = None,
        issuer: str | None = None,
        client_id: str | None = None,
    ) -> "LTIError":
        if phase and not self.phase:
            self.phase = phase
        if issuer and not self.issuer:
            self.issuer = issuer
        if client_id and not self.client_id:
            self.client_id = client_id
        return self

    def __str__(self) -> str:
        details = [
            f"{label}={value}"
            for label, value in (("phase", self.phase), ("iss", self.issuer), ("client_id", self.client_id))
            if value
        ]
        if not details:
            return self.message
        return f"{self.message} ({', '.join(details)})"


class LTISecurityError(LTIError):
    """Raised for failures that may indicate a forged or replayed launch."""


class ConfigurationError(LTIError):
    """Raised when a platform, deployment or tool setting is missing."""

    kind = ErrorKind.CONFIGURATION


class MalformedTokenError(LTIError):
    """Raised when a token cannot be parsed at all."""

    kind = ErrorKind.MALFORMED_TOKEN


class SchemaValidationError(LTIError):
    """Raised when a payload does not match the expected claim set."""

    kind = ErrorKind.SCHEMA_VALIDATION

    def __init__(self, message: str, *, fields: Iterable[str] = (), **context: str | None) -> None:
        super().__init__(message, **context)
        self.fields = list(fields)


class InvalidSignatureError(LTISecurityError):
    """Raised when the launch id_token signature or its claims timing is invalid."""

    kind = ErrorKind.INVALID_SIGNATURE


class KeySetUnavailableError(InvalidSignatureError):
    """Raised when the platform key set cannot be fetched."""

    kind = ErrorKind.KEY_SET_UNAVAILABLE


class InvalidStateError(LTISecurityError):
    """Raised when the login state token cannot be verified."""

    kind = ErrorKind.INVALID_STATE


class ClientMismatchError(LTISecurityError):
    """Raised when the launch audience is not the registered client id."""

    kind = ErrorKind.CLIENT_MISMATCH


class NonceMismatchError(LTISecurityError):
    """Raised when the launch nonce differs from the state nonce."""

    kind = ErrorKind.NONCE_MISMATCH


class NonceReplayError(LTISecurityError):
    """Raised when a nonce was already consumed, expired or never issued."""

    kind = ErrorKind.NONCE_REPLAY


class ServiceTokenError(LTIError):
    """Base class for service token acquisition failures."""


class TokenRequestFailedError(ServiceTokenError):
    kind = ErrorKind.TOKEN_REQUEST_FAILED

    def __init__(self, message: str, *, status_code: int | None = None, **context: str | None) -> None:
        super().__init__(message, **context)
        self.status_code = status_code


class TokenResponseMalformedError(ServiceTokenError):
    kind = ErrorKind.TOKEN_RESPONSE_MALFORMED


class RegistrationError(LTIError):
    """Raised when dynamic registration cannot be completed."""

    kind = ErrorKind.REGISTRATION


class StorageError(LTIError):
    """Raised when a storage operation targets a missing parent entity."""

    kind = ErrorKind.STORAGE


__all__ = [
    "ClientMismatchError",
    "ConfigurationError",
    "ErrorKind",
    "InvalidSignatureError",
    "InvalidStateError",
    "KeySetUnavailableError",
    "LTIError",
    "LTISecurityError",
    "MalformedTokenError",
    "NonceMismatchError",
    "NonceReplayError",
    "RegistrationError",
    "SchemaValidationError",
    "ServiceTokenError",
    "StorageError",
    "TokenRequestFailedError",
    "TokenResponseMalformedError",
]
