"""Tests for the session built from a verified launch."""

from __future__ import annotations

import asyncio

import pytest

from lti_tool.claims import (
    AGS_ENDPOINT_CLAIM,
    DEEP_LINKING_SETTINGS_CLAIM,
    LTI_CLAIM,
    NRPS_CLAIM,
    validate_launch_claims,
)
from lti_tool.errors import MalformedTokenError, SchemaValidationError
from lti_tool.session import Session, create_session, simplify_roles
from lti_tool.storage.memory_store import MemoryStorage
from lti_tool.tool import LTITool

from conftest import (
    CLIENT_ID,
    INSTRUCTOR_ROLE,
    LEARNER_ROLE,
    PLATFORM_ISS,
    STATE_SECRET,
    TARGET_LINK_URI,
    FakeClock,
    launch_payload,
)


ADMIN_ROLE = "http://purl.imsglobal.org/vocab/lis/v2/institution/person#Administrator"


def test_session_maps_user_context_and_platform():
    session = create_session(launch_payload("n-1"))

    assert session.id
    assert session.user.id == "u1"
    assert session.user.name == "Ada Lovelace"
    assert session.user.given_name == "Ada"
    assert session.user.email == "ada@example.com"
    assert session.user.roles == ["instructor"]
    assert session.context.id == "course-1"
    assert session.context.label == "CS101"
    assert session.platform.issuer == PLATFORM_ISS
    assert session.platform.client_id == CLIENT_ID
    assert session.platform.deployment_id == "d1"
    assert session.platform.name == "Example LMS"
    assert session.launch.target == TARGET_LINK_URI
    assert session.resource_link.title == "Week 1"
    assert session.custom_parameters == {"activity": "quiz-1"}
    assert session.jwt_payload["nonce"] == "n-1"
    assert session.is_instructor
    assert not session.is_student
    assert not session.is_admin


def test_sessions_get_distinct_ids():
    payload = launch_payload("n-1")

    assert create_session(payload).id != create_session(payload).id


def test_role_flags_and_simplified_roles():
    session = create_session(
        launch_payload("n-1", **{LTI_CLAIM + "roles": [LEARNER_ROLE, ADMIN_ROLE, LEARNER_ROLE]})
    )

    assert session.user.roles == ["student", "admin"]
    assert session.is_student
    assert session.is_admin
    assert not session.is_instructor


def test_simplify_roles_ignores_unknown_roles():
    assert simplify_roles(["urn:custom:role", INSTRUCTOR_ROLE]) == ["instructor"]
    assert simplify_roles([]) == []


def test_session_without_service_claims_has_no_services():
    session = create_session(launch_payload("n-1"))

    assert session.services is None
    assert not session.is_assignment_and_grades_available
    assert not session.is_name_and_roles_available
    assert not session.is_deep_linking_available


def test_ags_only_launch_exposes_only_ags():
    session = create_session(
        launch_payload(
            "n-1",
            **{
                AGS_ENDPOINT_CLAIM: {
                    "scope": ["https://purl.imsglobal.org/spec/lti-ags/scope/score"],
                    "lineitem": "https://platform.example/lineitems/1",
                }
            },
        )
    )

    assert session.is_assignment_and_grades_available
    assert session.services.ags.lineitem == "https://platform.example/lineitems/1"
    assert session.services.ags.scopes == ["https://purl.imsglobal.org/spec/lti-ags/scope/score"]
    assert session.services.nrps is None
    assert session.services.deep_linking is None


def test_nrps_and_deep_linking_services():
    session = create_session(
        launch_payload(
            "n-1",
            **{
                LTI_CLAIM + "message_type": "LtiDeepLinkingRequest",
                NRPS_CLAIM: {
                    "context_memberships_url": "https://platform.example/memberships",
                    "service_versions": ["2.0"],
                },
                DEEP_LINKING_SETTINGS_CLAIM: {
                    "deep_link_return_url": "https://platform.example/deep-link/return",
                    "accept_types": ["ltiResourceLink"],
                    "accept_presentation_document_targets": ["iframe"],
                    "data": "opaque",
                },
            },
        )
    )

    assert session.is_name_and_roles_available
    assert session.is_deep_linking_available
    assert session.services.nrps.membership_url == "https://platform.example/memberships"
    assert session.services.deep_linking.return_url == "https://platform.example/deep-link/return"
    assert session.services.deep_linking.data == "opaque"


def test_context_label_and_title_fall_back_to_id():
    session = create_session(launch_payload("n-1", **{LTI_CLAIM + "context": {"id": "course-9"}}))

    assert session.context.label == "course-9"
    assert session.context.title == "course-9"


def test_missing_context_and_platform_name():
    session = create_session(
        launch_payload("n-1", **{LTI_CLAIM + "context": None, LTI_CLAIM + "tool_platform": None})
    )

    assert session.context.id == ""
    assert session.context.label == ""
    assert session.platform.name == PLATFORM_ISS


def test_session_document_round_trip_uses_camel_case():
    session = create_session(launch_payload("n-1"))
    document = session.to_document()

    assert document["platform"]["clientId"] == CLIENT_ID
    assert document["isInstructor"] is True
    assert "jwtPayload" in document
    assert Session.from_document(document) == session


def test_invalid_payload_cannot_become_a_session():
    with pytest.raises(SchemaValidationError):
        create_session(launch_payload("n-1", sub=None))


def test_validated_claims_are_accepted_directly():
    claims = validate_launch_claims(launch_payload("n-1"))

    assert create_session(claims).user.id == "u1"


def test_tool_persists_and_reads_sessions(tool):
    session = asyncio.run(tool.create_session(launch_payload("n-1")))

    assert asyncio.run(tool.get_session(session.id)) == session
    assert asyncio.run(tool.get_session("unknown")) is None
    with pytest.raises(MalformedTokenError):
        asyncio.run(tool.get_session(""))


def test_tool_sessions_expire_after_configured_ttl(monkeypatch, tool_keys):
    monkeypatch.setenv("LTI_STATE_SECRET", STATE_SECRET.decode())
    monkeypatch.setenv("LTI_PRIVATE_KEY", tool_keys.private_key_pem)
    monkeypatch.setenv("LTI_SESSION_TTL", "60")
    clock = FakeClock()
    tool = LTITool.from_env(MemoryStorage(clock=clock))

    session = asyncio.run(tool.create_session(launch_payload("n-1")))
    clock.advance(seconds=30)
    assert asyncio.run(tool.get_session(session.id)) == session

    clock.advance(seconds=31)
    assert asyncio.run(tool.get_session(session.id)) is None
