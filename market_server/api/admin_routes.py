"""
管理 API
用户管理、按代码删除价格、反馈处理、手动清理、管理日志
"""
import logging
from typing import Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ..auth import CurrentUser, require_admin
from ..errors import (
    FeedStoreError,
    FeedbackAlreadyResolved,
    FeedbackNotFound,
    PartialRemovalError,
    UserAlreadyExists,
    UserNotFound,
)
from ..models import AdminLogEntry
from ..services import ServiceContainer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["Admin"])

USERNAME_MIN = 3
PASSWORD_MIN = 6
RESOLVE_ACTIONS = {"keep", "delete"}


class CreateUserRequest(BaseModel):
    username: str = ""
    password: str = ""
    isAdmin: bool = False


class BanRequest(BaseModel):
    banned: bool


class ResolveFeedbackRequest(BaseModel):
    action: str = ""


async def _audit(entry_type: str, message: str, actor: str, metadata: Optional[dict] = None):
    await ServiceContainer.get_admin_service().try_append_log(AdminLogEntry(
        type=entry_type,
        message=message,
        actor=actor,
        metadata=metadata or {},
    ))


# ============================================
# 用户管理
# ============================================

@router.get("/users")
async def list_users(admin: CurrentUser = Depends(require_admin)):
    users = await ServiceContainer.get_auth_service().list_users()
    return [user.to_public() for user in users]


@router.post("/users", status_code=201)
async def create_user(payload: CreateUserRequest, admin: CurrentUser = Depends(require_admin)):
    username = payload.username.strip()
    if len(username) < USERNAME_MIN or len(payload.password) < PASSWORD_MIN:
        raise HTTPException(status_code=400, detail="username min 3 chars, password min 6 chars")

    try:
        user = await ServiceContainer.get_auth_service().create_user(username, payload.password, payload.isAdmin)
    except UserAlreadyExists as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _audit("user_created", "admin created user", admin.username, {
        "username": username,
        "isAdmin": "true" if payload.isAdmin else "false",
    })
    return user.to_public()


@router.patch("/users/{username}/ban")
async def set_user_ban(username: str, payload: BanRequest, admin: CurrentUser = Depends(require_admin)):
    username = username.strip()
    if not username:
        raise HTTPException(status_code=400, detail="missing username")

    try:
        user = await ServiceContainer.get_auth_service().set_banned(username, payload.banned)
    except UserNotFound:
        raise HTTPException(status_code=404, detail="user not found")

    await _audit("user_ban_changed", "admin changed user ban state", admin.username, {
        "username": username,
        "banned": "true" if payload.banned else "false",
    })
    return user.to_public()


@router.delete("/users/{username}")
async def delete_user(username: str, admin: CurrentUser = Depends(require_admin)):
    username = username.strip()
    if not username:
        raise HTTPException(status_code=400, detail="missing username")

    try:
        await ServiceContainer.get_auth_service().delete_user(username)
    except Exception as e:
        logger.error(f"删除用户失败 {username}: {e}")
        raise HTTPException(status_code=500, detail="failed to delete user")

    await _audit("user_deleted", "admin deleted user", admin.username, {"username": username})
    return {"status": "ok"}


# ============================================
# 价格删除 / 清理
# ============================================

@router.delete("/prices/{code}")
async def delete_price_by_code(code: str, admin: CurrentUser = Depends(require_admin)):
    code = unquote(code).strip().upper()
    if not code:
        raise HTTPException(status_code=400, detail="missing code")

    service = ServiceContainer.get_price_service()
    try:
        counts = await service.delete_by_code(code)
    except PartialRemovalError as e:
        await _audit("price_delete_failed", "admin delete of code partially failed", admin.username, {
            "code": code,
            "removedTime": str(e.counts.time),
            "removedPrice": str(e.counts.price),
        })
        raise HTTPException(status_code=500, detail="failed to delete code")
    except FeedStoreError:
        raise HTTPException(status_code=500, detail="failed to delete code")

    await _audit("price_deleted", "admin deleted code from market feed", admin.username, {
        "code": code,
        "removedTime": str(counts.time),
        "removedPrice": str(counts.price),
    })
    return {"status": "ok", "removed_time": counts.time, "removed_price": counts.price}


@router.post("/prices/cleanup")
async def run_cleanup(admin: CurrentUser = Depends(require_admin)):
    """立即执行一次每日清理"""
    scheduler = ServiceContainer.get_cleanup_scheduler()
    try:
        counts = await scheduler.run_once(actor=admin.username)
    except FeedStoreError:
        raise HTTPException(status_code=500, detail="cleanup failed")
    return {
        "status": "ok",
        "mode": scheduler.policy.cleanup_mode.value,
        "removed_time": counts.time,
        "removed_price": counts.price,
    }


# ============================================
# 反馈
# ============================================

@router.get("/feedback")
async def list_feedback(
    includeResolved: bool = Query(True),
    admin: CurrentUser = Depends(require_admin),
):
    try:
        items = await ServiceContainer.get_admin_service().list_feedback(200, includeResolved)
    except Exception as e:
        logger.error(f"获取反馈失败: {e}")
        raise HTTPException(status_code=500, detail="failed to list feedback")
    return [item.to_dict() for item in items]


@router.post("/feedback/{feedback_id}/resolve")
async def resolve_feedback(
    feedback_id: str,
    payload: ResolveFeedbackRequest,
    admin: CurrentUser = Depends(require_admin),
):
    feedback_id = feedback_id.strip()
    if not feedback_id:
        raise HTTPException(status_code=400, detail="missing feedback id")
    action = payload.action.strip().lower()
    if action not in RESOLVE_ACTIONS:
        raise HTTPException(status_code=400, detail="invalid action")

    admin_service = ServiceContainer.get_admin_service()
    try:
        feedback = await admin_service.get_feedback(feedback_id)
    except FeedbackNotFound:
        raise HTTPException(status_code=404, detail="feedback not found")
    if feedback.resolved:
        raise HTTPException(status_code=400, detail="feedback already resolved")

    removed_time = removed_price = 0
    if action == "delete":
        code = feedback.code.upper()
        try:
            removed_time, removed_price = await ServiceContainer.get_price_service().delete_by_code(code)
        except PartialRemovalError as e:
            await _audit("price_delete_failed", "feedback delete of code partially failed", admin.username, {
                "feedbackId": feedback.id,
                "code": code,
                "removedTime": str(e.counts.time),
                "removedPrice": str(e.counts.price),
            })
            raise HTTPException(status_code=500, detail="failed to delete code")
        except FeedStoreError:
            raise HTTPException(status_code=500, detail="failed to delete code")

    try:
        resolved = await admin_service.resolve_feedback(
            feedback_id, admin.username, action, removed_time, removed_price
        )
    except FeedbackAlreadyResolved:
        raise HTTPException(status_code=400, detail="feedback already resolved")
    return resolved.to_dict()


# ============================================
# 管理日志
# ============================================

@router.get("/logs")
async def list_logs(
    limit: int = Query(200, ge=1, le=500),
    admin: CurrentUser = Depends(require_admin),
):
    try:
        entries = await ServiceContainer.get_admin_service().list_logs(limit)
    except Exception as e:
        logger.error(f"获取管理日志失败: {e}")
        raise HTTPException(status_code=500, detail="failed to list logs")
    return [entry.to_dict() for entry in entries]
