"""
管理服务 - 用户反馈与管理日志
"""
import logging
import time
import uuid
from dataclasses import replace
from typing import Optional

from ..db.redis_schema import (
    ADMIN_LOGS_KEY,
    ADMIN_LOGS_MAX,
    FEEDBACK_INDEX_KEY,
    FEEDBACK_KEY_PREFIX,
)
from ..errors import FeedbackAlreadyResolved, FeedbackNotFound
from ..models import AdminLogEntry, FeedbackMessage

logger = logging.getLogger(__name__)

FEEDBACK_SCAN_MAX = 500


def _now_ms() -> int:
    return int(time.time() * 1000)


class AdminService:
    def __init__(self, redis):
        self.redis = redis

    async def add_feedback(self, code: str, reason: str, reporter: str) -> FeedbackMessage:
        entry = FeedbackMessage(
            id=str(uuid.uuid4()),
            code=code,
            reason=reason,
            reporter=reporter,
            created_at=_now_ms(),
        )

        pipe = self.redis.pipeline(transaction=True)
        pipe.set(FEEDBACK_KEY_PREFIX + entry.id, entry.to_json())
        pipe.zadd(FEEDBACK_INDEX_KEY, {entry.id: entry.created_at})
        await pipe.execute()

        await self.append_log(AdminLogEntry(
            type="feedback_submitted",
            message=f"feedback submitted for code {code}",
            actor=reporter,
            timestamp=entry.created_at,
            metadata={"feedbackId": entry.id, "code": code},
        ))
        return entry

    async def get_feedback(self, feedback_id: str) -> FeedbackMessage:
        raw = await self.redis.get(FEEDBACK_KEY_PREFIX + feedback_id)
        if raw is None:
            raise FeedbackNotFound(feedback_id)
        feedback = FeedbackMessage.from_json(raw)
        if feedback is None:
            raise FeedbackNotFound(feedback_id)
        return feedback

    async def list_feedback(self, limit: int = 100, include_resolved: bool = True) -> list[FeedbackMessage]:
        """最新的反馈在前, 损坏或已删除的条目被跳过"""
        if limit <= 0:
            limit = 100

        ids = await self.redis.zrevrange(FEEDBACK_INDEX_KEY, 0, FEEDBACK_SCAN_MAX - 1)
        messages: list[FeedbackMessage] = []
        for feedback_id in ids:
            try:
                item = await self.get_feedback(feedback_id)
            except FeedbackNotFound:
                continue
            if not include_resolved and item.resolved:
                continue
            messages.append(item)
            if len(messages) >= limit:
                break
        return messages

    async def resolve_feedback(
        self,
        feedback_id: str,
        resolver: str,
        action: str,
        removed_time: int = 0,
        removed_price: int = 0,
    ) -> FeedbackMessage:
        feedback = await self.get_feedback(feedback_id)
        if feedback.resolved:
            raise FeedbackAlreadyResolved(feedback_id)

        now = _now_ms()
        resolved = feedback.resolve(resolver, action, now, removed_time, removed_price)
        await self.redis.set(FEEDBACK_KEY_PREFIX + resolved.id, resolved.to_json())

        if action == "delete":
            message = f"feedback {resolved.id} resolved with delete on code {resolved.code}"
        else:
            message = f"feedback {resolved.id} resolved by {resolver}"

        await self.append_log(AdminLogEntry(
            type="feedback_resolved",
            message=message,
            actor=resolver,
            timestamp=now,
            metadata={
                "feedbackId": resolved.id,
                "code": resolved.code,
                "action": action,
                "removedTime": str(removed_time),
                "removedPrice": str(removed_price),
            },
        ))
        return resolved

    async def append_log(self, entry: AdminLogEntry) -> AdminLogEntry:
        entry = replace(
            entry,
            id=entry.id.strip() or str(uuid.uuid4()),
            timestamp=entry.timestamp if entry.timestamp > 0 else _now_ms(),
            actor=entry.actor.strip() or "system",
        )

        pipe = self.redis.pipeline(transaction=True)
        pipe.lpush(ADMIN_LOGS_KEY, entry.to_json())
        pipe.ltrim(ADMIN_LOGS_KEY, 0, ADMIN_LOGS_MAX - 1)
        await pipe.execute()
        return entry

    async def list_logs(self, limit: int = 100) -> list[AdminLogEntry]:
        if limit <= 0:
            limit = 100
        limit = min(limit, ADMIN_LOGS_MAX)

        raws = await self.redis.lrange(ADMIN_LOGS_KEY, 0, limit - 1)
        entries = []
        for raw in raws:
            entry = AdminLogEntry.from_json(raw)
            if entry is not None:
                entries.append(entry)
        return entries

    async def try_append_log(self, entry: AdminLogEntry) -> Optional[AdminLogEntry]:
        """审计日志写入失败不影响主操作结果"""
        try:
            return await self.append_log(entry)
        except Exception as e:
            logger.warning(f"写入管理日志失败 ({entry.type}): {e}")
            return None
