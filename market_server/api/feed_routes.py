"""
行情流 API
公开接口: 查询行情流、提交价格、提交反馈
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ..auth import CurrentUser, get_optional_user
from ..errors import FeedStoreError
from ..rate_limit import rate_limit
from ..services import ServiceContainer
from ..validation import normalize_code, validate_code, validate_price

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Feed"])

FEEDBACK_REASON_MAX = 300


class SubmitRequest(BaseModel):
    code: str = ""
    price: float = 0
    server: str = ""


class FeedbackRequest(BaseModel):
    code: str = ""
    reason: str = ""


@router.get("/feed")
async def get_feed(
    sort: str = Query("time", description="排序方式: time 或 price"),
    limit: Optional[int] = Query(None, ge=1, le=200),
):
    """最新 / 最高价的价格记录"""
    settings = ServiceContainer.get_settings()
    service = ServiceContainer.get_price_service()
    try:
        records = await service.query_top(sort, limit or settings.FEED_DEFAULT_LIMIT)
    except FeedStoreError as e:
        logger.error(f"获取行情流失败: {e}")
        raise HTTPException(status_code=500, detail="failed to fetch feed")
    return [record.to_dict() for record in records]


@router.post("/submit", status_code=201, dependencies=[Depends(rate_limit)])
async def submit_price(payload: SubmitRequest):
    """提交价格 (无需登录)"""
    code = normalize_code(payload.code)
    try:
        validate_code(code)
        price = validate_price(payload.price)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    service = ServiceContainer.get_price_service()
    try:
        record = await service.add_record(code, price, payload.server.strip())
    except FeedStoreError as e:
        logger.error(f"提交价格失败 {code}: {e}")
        raise HTTPException(status_code=500, detail="failed to submit")
    return {"status": "ok", "item": record.to_dict()}


@router.post("/feedback", status_code=201, dependencies=[Depends(rate_limit)])
async def submit_feedback(
    payload: FeedbackRequest,
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    """举报某个代码的价格"""
    code = payload.code.strip().upper()
    reason = payload.reason.strip()
    if not code or not reason:
        raise HTTPException(status_code=400, detail="invalid feedback data")
    if len(reason) > FEEDBACK_REASON_MAX:
        raise HTTPException(status_code=400, detail="reason too long")

    reporter = user.username if user else "guest"
    admin_service = ServiceContainer.get_admin_service()
    try:
        feedback = await admin_service.add_feedback(code, reason, reporter)
    except Exception as e:
        logger.error(f"提交反馈失败: {e}")
        raise HTTPException(status_code=500, detail="failed to submit feedback")
    return feedback.to_dict()
