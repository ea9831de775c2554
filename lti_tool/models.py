"""Registration entities: platforms (clients), deployments and launch configs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import AfterValidator, AnyUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


_ANY_URL = TypeAdapter(AnyUrl)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _absolute_http_url(value: str) -> str:
    value = value.strip()
    try:
        parsed = _ANY_URL.validate_python(value)
    except ValidationError as exc:
        raise ValueError(f"URL invalide: {value!r}") from exc
    if parsed.scheme not in {"http", "https"} or not parsed.host:
        raise ValueError(f"URL http(s) absolue attendue: {value!r}")
    # keep the caller's spelling, issuers are compared as opaque strings
    return value


HttpUrlStr = Annotated[str, AfterValidator(_absolute_http_url)]
NonEmptyStr = Annotated[str, Field(min_length=1)]


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Deployment(_Model):
    id: str
    deployment_id: str = Field(alias="deploymentId")
    name: str | None = None
    description: str | None = None


class Client(_Model):
    id: str
    name: str
    iss: str
    client_id: str = Field(alias="clientId")
    auth_url: str = Field(alias="authUrl")
    token_url: str = Field(alias="tokenUrl")
    jwks_url: str = Field(alias="jwksUrl")
    deployments: list[Deployment] = Field(default_factory=list)


class ClientCreate(_Model):
    name: NonEmptyStr
    iss: HttpUrlStr
    client_id: NonEmptyStr = Field(alias="clientId")
    auth_url: HttpUrlStr = Field(alias="authUrl")
    token_url: HttpUrlStr = Field(alias="tokenUrl")
    jwks_url: HttpUrlStr = Field(alias="jwksUrl")


class ClientUpdate(_Model):
    name: NonEmptyStr | None = None
    iss: HttpUrlStr | None = None
    client_id: NonEmptyStr | None = Field(default=None, alias="clientId")
    auth_url: HttpUrlStr | None = Field(default=None, alias="authUrl")
    token_url: HttpUrlStr | None = Field(default=None, alias="tokenUrl")
    jwks_url: HttpUrlStr | None = Field(default=None, alias="jwksUrl")

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class DeploymentCreate(_Model):
    deployment_id: NonEmptyStr = Field(alias="deploymentId")
    name: str | None = None
    description: str | None = None


class DeploymentUpdate(_Model):
    deployment_id: NonEmptyStr | None = Field(default=None, alias="deploymentId")
    name: str | None = None
    description: str | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class LaunchConfig(_Model):
    """Platform endpoints for one (issuer, client id, deployment id) triple."""

    iss: str
    client_id: str = Field(alias="clientId")
    deployment_id: str = Field(alias="deploymentId")
    auth_url: str = Field(alias="authUrl")
    token_url: str = Field(alias="tokenUrl")
    jwks_url: str = Field(alias="jwksUrl")

    @property
    def key(self) -> str:
        return launch_config_key(self.iss, self.client_id, self.deployment_id)

    @classmethod
    def for_deployment(cls, client: Client, deployment: Deployment) -> "LaunchConfig":
        return cls(
            iss=client.iss,
            client_id=client.client_id,
            deployment_id=deployment.deployment_id,
            auth_url=client.auth_url,
            token_url=client.token_url,
            jwks_url=client.jwks_url,
        )


def launch_config_key(iss: str, client_id: str, deployment_id: str) -> str:
    return f"{iss}#{client_id}#{deployment_id}"


LTI_PLATFORM_CONFIGURATION_CLAIM = "https://purl.imsglobal.org/spec/lti-platform-configuration"
LTI_TOOL_CONFIGURATION_CLAIM = "https://purl.imsglobal.org/spec/lti-tool-configuration"


class SupportedMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    placements: list[str] | None = None


class PlatformConfiguration(BaseModel):
    model_config = ConfigDict(extra="allow")

    product_family_code: str
    version: str
    messages_supported: list[SupportedMessage]
    variables: list[str] | None = None


class OpenIDConfiguration(BaseModel):
    """Platform discovery document used during dynamic registration."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    issuer: HttpUrlStr
    authorization_endpoint: HttpUrlStr
    registration_endpoint: HttpUrlStr
    jwks_uri: HttpUrlStr
    token_endpoint: HttpUrlStr
    token_endpoint_auth_methods_supported: list[str]
    token_endpoint_auth_signing_alg_values_supported: list[str]
    scopes_supported: list[str]
    response_types_supported: list[str]
    id_token_signing_alg_values_supported: list[str]
    claims_supported: list[str]
    subject_types_supported: list[str]
    authorization_server: str | None = None
    platform_configuration: PlatformConfiguration = Field(alias=LTI_PLATFORM_CONFIGURATION_CLAIM)


class ToolConfigurationResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    domain: str
    claims: list[str] = Field(default_factory=list)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    deployment_id: str | None = None
    target_link_uri: str | None = None
    description: str | None = None


class RegistrationResponse(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    client_id: NonEmptyStr
    client_name: str | None = None
    tool_configuration: ToolConfigurationResponse = Field(alias=LTI_TOOL_CONFIGURATION_CLAIM)


class RegistrationSession(_Model):
    openid_configuration: OpenIDConfiguration = Field(alias="openIdConfiguration")
    registration_token: str | None = Field(default=None, alias="registrationToken")
    expires_at: datetime = Field(alias="expiresAt")

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utc_now())


__all__ = [
    "Client",
    "ClientCreate",
    "ClientUpdate",
    "Deployment",
    "DeploymentCreate",
    "DeploymentUpdate",
    "HttpUrlStr",
    "LTI_PLATFORM_CONFIGURATION_CLAIM",
    "LTI_TOOL_CONFIGURATION_CLAIM",
    "LaunchConfig",
    "OpenIDConfiguration",
    "PlatformConfiguration",
    "RegistrationResponse",
    "RegistrationSession",
    "SupportedMessage",
    "ToolConfigurationResponse",
    "launch_config_key",
    "utc_now",
]
