from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

from .errors import UserNotFound
from .services import ServiceContainer


@dataclass(frozen=True)
class CurrentUser:
    id: str
    username: str
    is_admin: bool


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        return ""
    return authorization[len("Bearer "):].strip()


async def _load_user(token: str) -> CurrentUser:
    auth_service = ServiceContainer.get_auth_service()
    username = await auth_service.resolve_session(token)
    if not username:
        raise HTTPException(status_code=401, detail="Session expired")

    try:
        user = await auth_service.get_user(username)
    except UserNotFound:
        raise HTTPException(status_code=401, detail="User not found")
    if user.banned:
        raise HTTPException(status_code=403, detail="account banned")

    return CurrentUser(id=user.id, username=user.username, is_admin=user.is_admin)


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return await _load_user(token)


async def get_optional_user(authorization: Optional[str] = Header(default=None)) -> Optional[CurrentUser]:
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        return await _load_user(token)
    except HTTPException:
        return None


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="admin required")
    return user
