"""
配置管理 - 使用Pydantic验证环境变量
所有部署策略在启动时一次性解析为 FeedPolicy
"""
from pydantic_settings import BaseSettings
from pydantic import validator, Field
from functools import lru_cache
from typing import List, Literal

from .services.feed_policy import CleanupMode, FeedPolicy, PrunePolicy


class Settings(BaseSettings):
    """应用配置 - 自动从环境变量加载并验证"""

    APP_ENV: Literal["dev", "test", "prod"] = Field(default="dev")

    # API配置
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8080, ge=1, le=65535)
    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    # Redis配置
    REDIS_HOST: str = Field(default="localhost")
    REDIS_PORT: int = Field(default=6379, ge=1, le=65535)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0, ge=0, le=15)
    REDIS_INIT_RETRIES: int = Field(default=5, ge=1)

    # 每日清理任务
    CLEANUP_TIME: str = Field(default="00:00", description="每日清理时间 HH:MM")
    CLEANUP_TIMEZONE: str = Field(default="Local", description="IANA时区名, Local=本机时区")
    CLEANUP_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)

    # 行情流策略
    FEED_PRUNE_POLICY: Literal["inline", "scheduled"] = Field(
        default="inline",
        description="inline=写入时顺带裁剪, scheduled=只依赖每日任务"
    )
    NIGHTLY_CLEANUP_MODE: Literal["clear", "expire"] = Field(
        default="clear",
        description="clear=每日清空, expire=每日按保留期过期"
    )
    FEED_RETENTION_HOURS: float = Field(default=24.0, gt=0)
    FEED_PRICE_INDEX_CAP: int = Field(default=1000, ge=1)
    FEED_DEFAULT_LIMIT: int = Field(default=50, ge=1, le=200)

    # 账号
    SESSION_TTL_HOURS: int = Field(default=72, ge=1)
    ADMIN_USERNAME: str = Field(default="")
    ADMIN_PASSWORD: str = Field(default="")

    # 限流 (写接口)
    RATE_LIMIT_MAX: int = Field(default=10, ge=1)
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=30, ge=1)

    # 日志
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    LOG_DIR: str = Field(default="logs")

    @validator('API_PORT', pre=True)
    def strip_port_colon(cls, v):
        """兼容 ':8080' 写法"""
        if isinstance(v, str) and v.startswith(":"):
            return v[1:]
        return v

    @validator('ADMIN_PASSWORD')
    def validate_admin_password(cls, v):
        if v and len(v) < 6:
            raise ValueError("管理员密码长度必须至少6个字符")
        return v

    @property
    def redis_url(self) -> str:
        """Redis连接URL"""
        password_part = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{password_part}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    def feed_policy(self) -> FeedPolicy:
        """解析行情流部署策略"""
        return FeedPolicy(
            prune_policy=PrunePolicy(self.FEED_PRUNE_POLICY),
            cleanup_mode=CleanupMode(self.NIGHTLY_CLEANUP_MODE),
            retention_hours=self.FEED_RETENTION_HOURS,
            price_index_cap=self.FEED_PRICE_INDEX_CAP,
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    获取配置单例
    使用lru_cache确保Settings只被实例化一次
    """
    return Settings()
