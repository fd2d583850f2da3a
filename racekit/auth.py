from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request, HTTPException, Depends
from itsdangerous import URLSafeTimedSerializer, BadSignature
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from . import models
from .db import get_session
from .errors import PermissionDenied
from .settings import settings

COOKIE_NAME = "racekit_auth"


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.RACEKIT_SECRET_KEY, salt="racekit-auth")


def _max_age() -> int:
    return int(settings.RACEKIT_SESSION_HOURS * 3600)


@dataclass
class CurrentUser:
    id: int
    username: str
    role: str  # "admin" | "distributor" | "viewer"
    can_distribute_kits: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def may_distribute(self) -> bool:
        return self.is_admin or self.can_distribute_kits


def set_login_cookie(request: Request, user: models.User) -> None:
    request.state._set_auth_cookie = _serializer().dumps(
        {"id": user.id, "u": user.username, "r": user.role, "k": bool(user.can_distribute_kits)}
    )


def clear_login_cookie(request: Request) -> None:
    request.state._clear_auth_cookie = True


def get_current_user(request: Request) -> Optional[CurrentUser]:
    raw = request.cookies.get(COOKIE_NAME)
    if not raw:
        return None
    try:
        data = _serializer().loads(raw, max_age=_max_age())
    except BadSignature:  # includes SignatureExpired
        return None
    try:
        return CurrentUser(
            id=int(data["id"]),
            username=str(data.get("u") or ""),
            role=str(data.get("r") or ""),
            can_distribute_kits=bool(data.get("k")),
        )
    except (KeyError, TypeError, ValueError):
        return None


def staff_required(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user:
        raise HTTPException(status_code=401, detail="Login required")
    return user


def admin_required(user: CurrentUser = Depends(staff_required)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin required")
    return user


def kit_distributor_required(user: CurrentUser = Depends(staff_required), session=Depends(get_session)) -> CurrentUser:
    # the cookie may predate a revoked flag or a deactivated account
    row = session.get(models.User, user.id)
    if row is None or not row.is_active:
        raise PermissionDenied()
    current = CurrentUser(
        id=row.id, username=row.username, role=row.role, can_distribute_kits=bool(row.can_distribute_kits)
    )
    if not current.may_distribute:
        raise PermissionDenied()
    return current


class AuthCookieMiddleware(BaseHTTPMiddleware):
    """Applies cookie changes queued on ``request.state`` by the login routes."""

    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        token = getattr(request.state, "_set_auth_cookie", None)
        if token:
            response.set_cookie(
                COOKIE_NAME,
                token,
                httponly=True,
                samesite="lax",
                secure=settings.RACEKIT_SECURE_COOKIES,
                max_age=_max_age(),
            )
        if getattr(request.state, "_clear_auth_cookie", False):
            response.delete_cookie(COOKIE_NAME)
        return response
