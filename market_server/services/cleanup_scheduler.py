"""
每日清理任务
按部署策略在每天固定时间清空行情流或按保留期过期旧记录
"""
import asyncio
import logging
from datetime import datetime, timedelta, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..errors import FeedStoreError, PartialRemovalError, RemovalCounts
from ..models import AdminLogEntry
from .feed_policy import CleanupMode, FeedPolicy

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_HOUR = 3
DEFAULT_CLEANUP_MINUTE = 0


def parse_cleanup_time(value: str) -> tuple[int, int]:
    """解析 HH:MM, 非法时抛出 ValueError"""
    parsed = datetime.strptime((value or "").strip(), "%H:%M")
    return parsed.hour, parsed.minute


def resolve_timezone(name: str) -> Optional[tzinfo]:
    """Local 或空值返回 None (使用本机时区)"""
    name = (name or "").strip()
    if not name or name.lower() == "local":
        return None
    return ZoneInfo(name)


def next_run_after(now: datetime, hour: int, minute: int) -> datetime:
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class CleanupScheduler:
    """每日清理调度器"""

    def __init__(
        self,
        price_service,
        admin_service=None,
        policy: Optional[FeedPolicy] = None,
        hour: int = DEFAULT_CLEANUP_HOUR,
        minute: int = DEFAULT_CLEANUP_MINUTE,
        tz: Optional[tzinfo] = None,
        timeout_seconds: float = 30.0,
    ):
        self.price_service = price_service
        self.admin_service = admin_service
        self.policy = policy or price_service.policy
        self.hour = hour
        self.minute = minute
        self.tz = tz
        self.timeout_seconds = timeout_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @classmethod
    def from_settings(cls, price_service, admin_service, settings) -> "CleanupScheduler":
        try:
            hour, minute = parse_cleanup_time(settings.CLEANUP_TIME)
        except ValueError:
            logger.warning(f"CLEANUP_TIME 无效 {settings.CLEANUP_TIME!r}，回退到 03:00")
            hour, minute = DEFAULT_CLEANUP_HOUR, DEFAULT_CLEANUP_MINUTE
        try:
            tz = resolve_timezone(settings.CLEANUP_TIMEZONE)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"CLEANUP_TIMEZONE 无效 {settings.CLEANUP_TIMEZONE!r}，回退到本机时区")
            tz = None
        return cls(
            price_service,
            admin_service,
            policy=settings.feed_policy(),
            hour=hour,
            minute=minute,
            tz=tz,
            timeout_seconds=settings.CLEANUP_TIMEOUT_SECONDS,
        )

    def _now(self) -> datetime:
        if self.tz is None:
            return datetime.now().astimezone()
        return datetime.now(self.tz)

    def seconds_until_next_run(self) -> float:
        now = self._now()
        return max(0.0, (next_run_after(now, self.hour, self.minute) - now).total_seconds())

    async def start(self):
        """启动清理循环"""
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"✅ 每日清理任务已启动 ({self.hour:02d}:{self.minute:02d}, 模式: {self.policy.cleanup_mode.value})"
        )

    async def stop(self):
        """停止清理循环"""
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("✅ 每日清理任务已停止")

    async def _loop(self):
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.seconds_until_next_run())
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"每日清理异常: {e}", exc_info=True)

    async def run_once(self, actor: str = "system") -> RemovalCounts:
        """执行一次清理, 失败时写入审计日志后重新抛出"""
        mode = self.policy.cleanup_mode
        try:
            if mode is CleanupMode.EXPIRE:
                cutoff = self.policy.cutoff_for(self.price_service.now_ms())
                counts = await self.price_service.expire_older_than(cutoff, timeout=self.timeout_seconds)
            else:
                counts = await self.price_service.clear_all(timeout=self.timeout_seconds)
        except FeedStoreError as e:
            partial = e.counts if isinstance(e, PartialRemovalError) else RemovalCounts()
            logger.error(
                f"❌ 清理失败 ({mode.value}): {e} | 已删除 time={partial.time} price={partial.price}"
            )
            await self._audit("cleanup_failed", "scheduled feed cleanup failed", actor, mode, partial, error=str(e))
            raise

        logger.info(f"清理完成 ({mode.value}): 删除 {counts.time} 条时间记录, {counts.price} 条价格记录")
        await self._audit("cleanup_finished", "scheduled feed cleanup finished", actor, mode, counts)
        return counts

    async def _audit(self, entry_type, message, actor, mode, counts, error: str = ""):
        if self.admin_service is None:
            return
        metadata = {
            "mode": mode.value,
            "removedTime": str(counts.time),
            "removedPrice": str(counts.price),
        }
        if error:
            metadata["error"] = error
        await self.admin_service.try_append_log(AdminLogEntry(
            type=entry_type,
            message=message,
            actor=actor,
            metadata=metadata,
        ))
