"""
写接口限流 - 基于 Redis 的固定窗口计数
按客户端 IP 计数: X-Forwarded-For 第一个地址 > X-Real-IP > 连接地址
"""
import logging

from fastapi import HTTPException, Request
from redis.exceptions import RedisError

from .db.redis_schema import RATE_LIMIT_KEY_PREFIX
from .services import ServiceContainer

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


async def hit(redis, key: str, window_seconds: int) -> int:
    # 计数键由 SET NX EX 创建, 窗口 TTL 与首次计数在同一个事务里写入
    pipe = redis.pipeline(transaction=True)
    pipe.set(key, 0, ex=window_seconds, nx=True)
    pipe.incr(key)
    _, count = await pipe.execute()
    return int(count)


async def rate_limit(request: Request) -> None:
    """FastAPI 依赖: 超出窗口配额时返回 429"""
    settings = ServiceContainer.get_settings()
    redis = ServiceContainer.get_redis()
    key = RATE_LIMIT_KEY_PREFIX + client_ip(request)
    try:
        count = await hit(redis, key, settings.RATE_LIMIT_WINDOW_SECONDS)
    except (RedisError, OSError) as e:
        # 限流不可用时放行, 不阻断正常提交
        logger.warning(f"限流计数失败: {e}")
        return
    if count > settings.RATE_LIMIT_MAX:
        raise HTTPException(status_code=429, detail="Too many requests, please try again later.")
