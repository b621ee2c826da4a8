"""
服务容器 - 统一管理所有服务实例
Redis 客户端在初始化时注入, 便于测试替换
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    服务容器 - 依赖注入容器
    管理所有服务的单例实例
    """

    _price_service: Optional['PriceService'] = None
    _admin_service: Optional['AdminService'] = None
    _auth_service: Optional['AuthService'] = None
    _cleanup_scheduler: Optional['CleanupScheduler'] = None
    _settings: Optional['Settings'] = None
    _redis = None

    @classmethod
    def initialize(cls, redis, settings=None):
        """
        初始化所有服务
        在应用启动时调用
        """
        logger.info("🔧 初始化服务容器...")

        # 延迟导入避免循环依赖
        from ..config import get_settings
        from .admin_service import AdminService
        from .auth_service import AuthService
        from .cleanup_scheduler import CleanupScheduler
        from .price_service import PriceService

        settings = settings or get_settings()
        cls._settings = settings
        cls._redis = redis
        cls._price_service = PriceService(redis, settings.feed_policy())
        cls._admin_service = AdminService(redis)
        cls._auth_service = AuthService(redis, session_ttl_seconds=settings.SESSION_TTL_HOURS * 3600)
        cls._cleanup_scheduler = CleanupScheduler.from_settings(
            cls._price_service, cls._admin_service, settings
        )

        logger.info("✅ 服务容器初始化完成")

    @classmethod
    def _require(cls, service, name: str):
        if service is None:
            raise RuntimeError(f"{name} 未初始化，请先调用 ServiceContainer.initialize()")
        return service

    @classmethod
    def get_settings(cls):
        if cls._settings is None:
            from ..config import get_settings
            cls._settings = get_settings()
        return cls._settings

    @classmethod
    def get_redis(cls):
        """获取注入的 Redis 客户端"""
        return cls._require(cls._redis, "Redis")

    @classmethod
    def get_price_service(cls):
        """获取行情流服务"""
        return cls._require(cls._price_service, "PriceService")

    @classmethod
    def get_admin_service(cls):
        """获取管理服务"""
        return cls._require(cls._admin_service, "AdminService")

    @classmethod
    def get_auth_service(cls):
        """获取账号服务"""
        return cls._require(cls._auth_service, "AuthService")

    @classmethod
    def get_cleanup_scheduler(cls):
        """获取每日清理任务"""
        return cls._require(cls._cleanup_scheduler, "CleanupScheduler")

    @classmethod
    def reset(cls):
        """
        重置服务容器
        主要用于测试
        """
        cls._price_service = None
        cls._admin_service = None
        cls._auth_service = None
        cls._cleanup_scheduler = None
        cls._settings = None
        cls._redis = None
