from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from ..auth import CurrentUser, get_current_user
from ..errors import AccountBanned, InvalidCredentials, UserAlreadyExists
from ..rate_limit import rate_limit
from ..services import ServiceContainer

router = APIRouter(prefix="/auth", tags=["Auth"])

USERNAME_MIN = 3
PASSWORD_MIN = 6


class AuthRequest(BaseModel):
    username: str = ""
    password: str = ""
    captchaId: str = ""
    captchaCode: str = ""


async def _check_captcha(payload: AuthRequest) -> str:
    captcha_id = payload.captchaId.strip()
    auth_service = ServiceContainer.get_auth_service()
    ok = await auth_service.verify_captcha(captcha_id, payload.captchaCode.strip())
    if not ok:
        raise HTTPException(status_code=400, detail="invalid captcha")
    return captcha_id


@router.get("/captcha")
async def get_captcha():
    auth_service = ServiceContainer.get_auth_service()
    captcha_id, code = await auth_service.create_captcha()
    return {"captchaId": captcha_id, "code": code}


@router.post("/register", status_code=201, dependencies=[Depends(rate_limit)])
async def register(payload: AuthRequest):
    username = payload.username.strip()
    if len(username) < USERNAME_MIN or len(payload.password) < PASSWORD_MIN:
        raise HTTPException(status_code=400, detail="username min 3 chars, password min 6 chars")
    captcha_id = await _check_captcha(payload)

    auth_service = ServiceContainer.get_auth_service()
    try:
        user = await auth_service.register(username, payload.password)
    except UserAlreadyExists as e:
        raise HTTPException(status_code=400, detail=str(e))
    await auth_service.delete_captcha(captcha_id)

    return {"id": user.id, "username": user.username}


@router.post("/login", dependencies=[Depends(rate_limit)])
async def login(payload: AuthRequest):
    captcha_id = await _check_captcha(payload)

    auth_service = ServiceContainer.get_auth_service()
    try:
        user = await auth_service.authenticate(payload.username.strip(), payload.password)
    except InvalidCredentials:
        raise HTTPException(status_code=401, detail="invalid credentials")
    except AccountBanned:
        raise HTTPException(status_code=403, detail="account banned")
    await auth_service.delete_captcha(captcha_id)

    token = await auth_service.create_session(user.username)
    return {
        "token": token,
        "id": user.id,
        "username": user.username,
        "isAdmin": user.is_admin,
    }


@router.post("/logout")
async def logout(
    user: CurrentUser = Depends(get_current_user),
    authorization: Optional[str] = Header(default=None),
):
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if token:
            await ServiceContainer.get_auth_service().delete_session(token)

    return {"success": True}


@router.get("/me")
async def me(user: CurrentUser = Depends(get_current_user)):
    return {
        "id": user.id,
        "username": user.username,
        "isAdmin": user.is_admin,
    }
