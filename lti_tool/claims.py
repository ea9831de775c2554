"""LTI 1.3 launch claim schema."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import SchemaValidationError


LTI_CLAIM = "https://purl.imsglobal.org/spec/lti/claim/"
AGS_ENDPOINT_CLAIM = "https://purl.imsglobal.org/spec/lti-ags/claim/endpoint"
NRPS_CLAIM = "https://purl.imsglobal.org/spec/lti-nrps/claim/namesroleservice"
DEEP_LINKING_SETTINGS_CLAIM = "https://purl.imsglobal.org/spec/lti-dl/claim/deep_linking_settings"

MESSAGE_TYPE_CLAIM = LTI_CLAIM + "message_type"
VERSION_CLAIM = LTI_CLAIM + "version"
DEPLOYMENT_ID_CLAIM = LTI_CLAIM + "deployment_id"
TARGET_LINK_URI_CLAIM = LTI_CLAIM + "target_link_uri"
ROLES_CLAIM = LTI_CLAIM + "roles"

RESOURCE_LINK_REQUEST = "LtiResourceLinkRequest"
DEEP_LINKING_REQUEST = "LtiDeepLinkingRequest"
LTI_VERSION = "1.3.0"


class _Claim(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ResourceLinkClaim(_Claim):
    id: str
    title: str | None = None
    description: str | None = None


class ContextClaim(_Claim):
    id: str
    label: str | None = None
    title: str | None = None
    type: list[str] | None = None


class ToolPlatformClaim(_Claim):
    guid: str
    name: str | None = None
    description: str | None = None
    url: str | None = None
    product_family_code: str | None = None
    contact_email: str | None = None
    version: str | None = None


class LisClaim(_Claim):
    person_sourcedid: str | None = None
    course_offering_sourcedid: str | None = None
    course_section_sourcedid: str | None = None


class LaunchPresentationClaim(_Claim):
    document_target: str | None = None
    return_url: str | None = None
    target: str | None = None
    url: str | None = None
    locale: str | None = None
    height: int | None = None
    width: int | None = None


class AgsEndpointClaim(_Claim):
    scope: list[str]
    lineitem: str | None = None
    lineitems: str | None = None


class NrpsClaim(_Claim):
    context_memberships_url: str
    service_versions: list[str] | None = None


class DeepLinkingSettingsClaim(_Claim):
    deep_link_return_url: str
    accept_types: list[str]
    accept_presentation_document_targets: list[str]
    accept_media_types: str | None = None
    accept_multiple: bool | None = None
    accept_lineitem: bool | None = None
    auto_create: bool | None = None
    title: str | None = None
    text: str | None = None
    data: str | None = None


class LaunchClaims(_Claim):
    """Verified id_token payload of a resource link or deep linking launch."""

    iss: str = Field(min_length=1)
    sub: str = Field(min_length=1)
    aud: str | list[str]
    exp: int
    iat: int
    nbf: int | None = None
    nonce: str = Field(min_length=1)

    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    middle_name: str | None = None
    email: str | None = None
    picture: str | None = None
    locale: str | None = None

    message_type: Literal["LtiResourceLinkRequest", "LtiDeepLinkingRequest"] = Field(alias=MESSAGE_TYPE_CLAIM)
    version: Literal["1.3.0"] = Field(alias=VERSION_CLAIM)
    deployment_id: str = Field(min_length=1, alias=DEPLOYMENT_ID_CLAIM)
    target_link_uri: str = Field(min_length=1, alias=TARGET_LINK_URI_CLAIM)
    roles: list[str] = Field(default_factory=list, alias=ROLES_CLAIM)
    role_scope_mentor: list[str] | None = Field(default=None, alias=LTI_CLAIM + "role_scope_mentor")

    resource_link: ResourceLinkClaim | None = Field(default=None, alias=LTI_CLAIM + "resource_link")
    context: ContextClaim | None = Field(default=None, alias=LTI_CLAIM + "context")
    tool_platform: ToolPlatformClaim | None = Field(default=None, alias=LTI_CLAIM + "tool_platform")
    lis: LisClaim | None = Field(default=None, alias=LTI_CLAIM + "lis")
    launch_presentation: LaunchPresentationClaim | None = Field(
        default=None, alias=LTI_CLAIM + "launch_presentation"
    )
    custom: dict[str, Any] | None = Field(default=None, alias=LTI_CLAIM + "custom")

    ags_endpoint: AgsEndpointClaim | None = Field(default=None, alias=AGS_ENDPOINT_CLAIM)
    nrps: NrpsClaim | None = Field(default=None, alias=NRPS_CLAIM)
    deep_linking_settings: DeepLinkingSettingsClaim | None = Field(
        default=None, alias=DEEP_LINKING_SETTINGS_CLAIM
    )

    @property
    def audience(self) -> str:
        """Audience compared against the client id.

        Only the first entry of a list-valued ``aud`` is considered.
        """

        if isinstance(self.aud, list):
            return self.aud[0] if self.aud else ""
        return self.aud

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def validate_launch_claims(payload: dict[str, Any]) -> LaunchClaims:
    try:
        return LaunchClaims.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise SchemaValidationError(
            f"Claims LTI invalides: {', '.join(fields)}",
            fields=fields,
        ) from exc


__all__ = [
    "AGS_ENDPOINT_CLAIM",
    "AgsEndpointClaim",
    "ContextClaim",
    "DEEP_LINKING_REQUEST",
    "DEEP_LINKING_SETTINGS_CLAIM",
    "DEPLOYMENT_ID_CLAIM",
    "DeepLinkingSettingsClaim",
    "LTI_CLAIM",
    "LTI_VERSION",
    "LaunchClaims",
    "LaunchPresentationClaim",
    "LisClaim",
    "MESSAGE_TYPE_CLAIM",
    "NRPS_CLAIM",
    "NrpsClaim",
    "RESOURCE_LINK_REQUEST",
    "ROLES_CLAIM",
    "ResourceLinkClaim",
    "TARGET_LINK_URI_CLAIM",
    "ToolPlatformClaim",
    "VERSION_CLAIM",
    "validate_launch_claims",
]
