"""
auth/dependencies.py -- FastAPI Depends() helpers for the HTTP layer.

The HTTP layer itself (routes, body parsing, CORS, rate limiting) lives
outside this project. These helpers are the seam it plugs into:

  get_auth_service()     -- the AuthService stored on app.state at start-up.
  try_get_current_user() -- soft variant, returns None on any failure.
  get_current_user()     -- Authorization: Bearer <access token>, 401 otherwise.
  require_permission()   -- dependency factory, 403 unless check_permission passes.
  raise_http()           -- maps an AuthError onto an HTTPException.

Error detail shape matches the rest of the API: {"code": ..., "message": ...}.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import AuthError
from auth.models import User
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def raise_http(exc: AuthError) -> None:
    """Re-raise an AuthError as the equivalent HTTPException."""
    raise HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": exc.message},
    ) from exc


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via its Bearer access token. Never raises."""
    token = _bearer_token(request)
    if not token:
        return None
    return get_auth_service(request).get_user_for_token(token)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_permission(action: str, scope_from: Callable[[Request], tuple | None] | None = None):
    """Build a dependency that requires `action` (a codename or "role:<codename>").

    scope_from, when given, extracts a (scope_type, scope_id) pair from the
    request -- typically from path parameters.

        @router.post("/projects/{project_id}/publish")
        async def publish(
            user: User = Depends(
                require_permission(
                    "articles.publish",
                    scope_from=lambda r: ("project", int(r.path_params["project_id"])),
                )
            ),
        ): ...
    """

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        scope = scope_from(request) if scope_from is not None else None
        try:
            allowed = get_auth_service(request).check_permission(user, action, scope)
        except AuthError as exc:
            raise_http(exc)
        if not allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Permission denied."},
            )
        return user

    return dependency
