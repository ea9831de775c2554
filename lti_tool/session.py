"""Session entity built from a verified launch."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .claims import LaunchClaims, validate_launch_claims


class _SessionPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SessionUser(_SessionPart):
    id: str
    name: str | None = None
    email: str | None = None
    family_name: str | None = Field(default=None, alias="familyName")
    given_name: str | None = Field(default=None, alias="givenName")
    roles: list[str] = Field(default_factory=list)


class SessionContext(_SessionPart):
    id: str = ""
    label: str = ""
    title: str = ""


class SessionPlatform(_SessionPart):
    issuer: str
    client_id: str = Field(alias="clientId")
    deployment_id: str = Field(alias="deploymentId")
    name: str


class SessionLaunch(_SessionPart):
    target: str


class SessionResourceLink(_SessionPart):
    id: str
    title: str | None = None


class AgsService(_SessionPart):
    lineitem: str | None = None
    lineitems: str | None = None
    scopes: list[str] = Field(default_factory=list)


class NrpsService(_SessionPart):
    membership_url: str = Field(alias="membershipUrl")
    versions: list[str] = Field(default_factory=list)


class DeepLinkingService(_SessionPart):
    return_url: str = Field(alias="returnUrl")
    accept_types: list[str] = Field(default_factory=list, alias="acceptTypes")
    accept_presentation_document_targets: list[str] = Field(
        default_factory=list, alias="acceptPresentationDocumentTargets"
    )
    accept_media_types: str | None = Field(default=None, alias="acceptMediaTypes")
    accept_multiple: bool | None = Field(default=None, alias="acceptMultiple")
    auto_create: bool | None = Field(default=None, alias="autoCreate")
    data: str | None = None


class SessionServices(_SessionPart):
    ags: AgsService | None = None
    nrps: NrpsService | None = None
    deep_linking: DeepLinkingService | None = Field(default=None, alias="deepLinking")


class Session(_SessionPart):
    """Result of a successful launch. Never mutated once created."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    jwt_payload: dict[str, Any] = Field(alias="jwtPayload")
    user: SessionUser
    context: SessionContext
    platform: SessionPlatform
    launch: SessionLaunch
    resource_link: SessionResourceLink | None = Field(default=None, alias="resourceLink")
    custom_parameters: dict[str, Any] = Field(default_factory=dict, alias="customParameters")
    services: SessionServices | None = None
    is_admin: bool = Field(default=False, alias="isAdmin")
    is_instructor: bool = Field(default=False, alias="isInstructor")
    is_student: bool = Field(default=False, alias="isStudent")
    is_assignment_and_grades_available: bool = Field(default=False, alias="isAssignmentAndGradesAvailable")
    is_deep_linking_available: bool = Field(default=False, alias="isDeepLinkingAvailable")
    is_name_and_roles_available: bool = Field(default=False, alias="isNameAndRolesAvailable")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Session":
        return cls.model_validate(document)


# (vocabulary fragment, simplified role), scanned in this order
_ROLE_MAP: tuple[tuple[str, str], ...] = (
    ("Instructor", "instructor"),
    ("Learner", "student"),
    ("Administrator", "admin"),
    ("ContentDeveloper", "content-developer"),
    ("Member", "member"),
)


def simplify_roles(roles: list[str]) -> list[str]:
    simplified: list[str] = []
    for role in roles:
        for fragment, name in _ROLE_MAP:
            if fragment in role and name not in simplified:
                simplified.append(name)
    return simplified


def _has_role(roles: list[str], fragment: str) -> bool:
    return any(fragment in role for role in roles)


def _build_services(claims: LaunchClaims) -> SessionServices | None:
    ags = nrps = deep_linking = None
    if claims.ags_endpoint is not None:
        ags = AgsService(
            lineitem=claims.ags_endpoint.lineitem,
            lineitems=claims.ags_endpoint.lineitems,
            scopes=list(claims.ags_endpoint.scope or []),
        )
    if claims.nrps is not None:
        nrps = NrpsService(
            membership_url=claims.nrps.context_memberships_url,
            versions=list(claims.nrps.service_versions or []),
        )
    settings = claims.deep_linking_settings
    if settings is not None:
        deep_linking = DeepLinkingService(
            return_url=settings.deep_link_return_url,
            accept_types=list(settings.accept_types or []),
            accept_presentation_document_targets=list(settings.accept_presentation_document_targets or []),
            accept_media_types=settings.accept_media_types,
            accept_multiple=settings.accept_multiple,
            auto_create=settings.auto_create,
            data=settings.data,
        )
    if ags is None and nrps is None and deep_linking is None:
        return None
    return SessionServices(ags=ags, nrps=nrps, deep_linking=deep_linking)


def create_session(claims: LaunchClaims | dict[str, Any]) -> Session:
    """Map a verified launch payload to a new :class:`Session`.

    Pure function: persisting the session is left to the caller.
    """

    if not isinstance(claims, LaunchClaims):
        claims = validate_launch_claims(claims)

    roles = list(claims.roles or [])
    context = claims.context
    context_id = context.id if context else ""
    tool_platform = claims.tool_platform

    return Session(
        id=str(uuid.uuid4()),
        jwt_payload=claims.to_payload(),
        user=SessionUser(
            id=claims.sub,
            name=claims.name,
            email=claims.email,
            family_name=claims.family_name,
            given_name=claims.given_name,
            roles=simplify_roles(roles),
        ),
        context=SessionContext(
            id=context_id,
            label=(context.label if context else None) or context_id or "",
            title=(context.title if context else None) or context_id or "",
        ),
        platform=SessionPlatform(
            issuer=claims.iss,
            client_id=claims.audience,
            deployment_id=claims.deployment_id,
            name=(tool_platform.name if tool_platform else None) or claims.iss,
        ),
        launch=SessionLaunch(target=claims.target_link_uri),
        resource_link=(
            SessionResourceLink(id=claims.resource_link.id, title=claims.resource_link.title)
            if claims.resource_link
            else None
        ),
        custom_parameters=dict(claims.custom or {}),
        services=_build_services(claims),
        is_admin=_has_role(roles, "Administrator"),
        is_instructor=_has_role(roles, "Instructor"),
        is_student=_has_role(roles, "Learner"),
        is_assignment_and_grades_available=claims.ags_endpoint is not None,
        is_deep_linking_available=claims.deep_linking_settings is not None,
        is_name_and_roles_available=claims.nrps is not None,
    )


__all__ = [
    "AgsService",
    "DeepLinkingService",
    "NrpsService",
    "Session",
    "SessionContext",
    "SessionLaunch",
    "SessionPlatform",
    "SessionResourceLink",
    "SessionServices",
    "SessionUser",
    "create_session",
    "simplify_roles",
]
