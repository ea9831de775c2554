"""FastAPI binding for the login, launch and JWKS endpoints."""

from __future__ import annotations

import logging
import re
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from .errors import (
    ConfigurationError,
    LTIError,
    LTISecurityError,
    MalformedTokenError,
    SchemaValidationError,
)
from .login import append_query
from .tool import LTITool


logger = logging.getLogger(__name__)


SESSION_QUERY_PARAM = "ltiSessionId"

_LOGIN_FIELDS = (
    "iss",
    "login_hint",
    "target_link_uri",
    "client_id",
    "lti_deployment_id",
    "lti_message_hint",
)


def _http_error(exc: LTIError) -> HTTPException | None:
    if isinstance(exc, LTISecurityError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    if isinstance(exc, (ConfigurationError, MalformedTokenError, SchemaValidationError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return None


async def _request_params(request: Request) -> dict[str, Any]:
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        form_data = await request.form()
        params.update({key: value for key, value in form_data.items() if isinstance(value, str)})
    return params


def launch_url_for(request: Request) -> str:
    launch_path = re.sub(r"/login$", "/launch", request.url.path)
    return str(request.url.replace(path=launch_path, query="", fragment=""))


def create_lti_router(tool: LTITool, prefix: str = "/lti") -> APIRouter:
    router = APIRouter(prefix=prefix, tags=["lti"])

    @router.get("/login")
    @router.post("/login")
    async def lti_login(request: Request) -> RedirectResponse:
        """Handle OIDC third-party initiated login from the platform."""
        params = await _request_params(request)
        login_data: dict[str, Any] = {name: params[name] for name in _LOGIN_FIELDS if params.get(name)}
        login_data["launchUrl"] = launch_url_for(request)
        try:
            redirect_url = await tool.handle_login(login_data)
        except LTIError as exc:
            error = _http_error(exc)
            if error is None:
                raise
            raise error from exc
        return RedirectResponse(url=redirect_url, status_code=status.HTTP_302_FOUND)

    @router.post("/launch")
    async def lti_launch(request: Request) -> RedirectResponse:
        """Verify the launch, store the session and redirect to the target link."""
        form_data = await request.form()
        id_token = form_data.get("id_token")
        state = form_data.get("state")
        try:
            claims = await tool.verify_launch(
                id_token if isinstance(id_token, str) else "",
                state if isinstance(state, str) else "",
            )
            session = await tool.create_session(claims)
        except LTIError as exc:
            error = _http_error(exc)
            if error is None:
                raise
            raise error from exc
        target = append_query(session.launch.target, {SESSION_QUERY_PARAM: session.id})
        return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)

    @router.get("/jwks")
    def lti_jwks() -> JSONResponse:
        """Expose the tool public key in JWKS format."""
        return JSONResponse(content=tool.get_jwks())

    return router


__all__ = ["SESSION_QUERY_PARAM", "create_lti_router", "launch_url_for"]
