"""
数据库连接层
提供 Redis 连接的统一管理
"""
import asyncio
import logging
from typing import Optional

# Redis 异步驱动
import redis.asyncio as redis
from redis.exceptions import RedisError

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


class RedisManager:
    """
    Redis 连接管理器
    负责客户端连接池的生命周期管理
    """

    _instance: Optional['RedisManager'] = None

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.redis_host = settings.REDIS_HOST
        self.redis_port = settings.REDIS_PORT
        self.redis_password = settings.REDIS_PASSWORD or None
        self.redis_db = settings.REDIS_DB
        self.init_retries = settings.REDIS_INIT_RETRIES

        self._redis_client: Optional[redis.Redis] = None

    @classmethod
    def get_instance(cls) -> 'RedisManager':
        """获取单例实例"""
        if cls._instance is None:
            cls._instance = RedisManager()
        return cls._instance

    def _create_client(self) -> redis.Redis:
        return redis.Redis(
            host=self.redis_host,
            port=self.redis_port,
            password=self.redis_password,
            db=self.redis_db,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            max_connections=200
        )

    async def initialize(self, retry_delay: float = 1.0, retry_max_delay: float = 5.0):
        """初始化 Redis 连接, 失败时指数退避重试"""
        logger.info("正在初始化 Redis 连接...")

        for attempt in range(1, self.init_retries + 1):
            try:
                self._redis_client = self._create_client()
                await self._redis_client.ping()

                info = await self._redis_client.info('memory')
                used_memory = info.get('used_memory_human', 'Unknown')
                logger.info(
                    f"✅ Redis 连接已建立 ({self.redis_host}:{self.redis_port}) | "
                    f"内存使用: {used_memory}"
                )
                return
            except (RedisError, OSError) as e:
                await self._discard_client()
                if attempt >= self.init_retries:
                    logger.error(f"❌ Redis 连接失败: {e}")
                    raise
                logger.warning(f"Redis 连接失败，{retry_delay:.1f}s 后重试 ({attempt}/{self.init_retries})")
                await asyncio.sleep(retry_delay)
                retry_delay = min(retry_delay * 2, retry_max_delay)

    async def _discard_client(self):
        if self._redis_client is not None:
            try:
                await self._redis_client.aclose()
            except (RedisError, OSError):
                pass
            self._redis_client = None

    async def close(self):
        """关闭连接"""
        if self._redis_client:
            await self._redis_client.aclose()
            self._redis_client = None
            logger.info("Redis 连接已关闭")

    @property
    def redis(self) -> redis.Redis:
        """获取 Redis 客户端"""
        if self._redis_client is None:
            raise RuntimeError("Redis 连接未初始化，请先调用 initialize()")
        return self._redis_client


async def get_redis() -> redis.Redis:
    """直接获取 Redis 客户端"""
    manager = RedisManager.get_instance()
    if manager._redis_client is None:
        await manager.initialize()
    return manager.redis
