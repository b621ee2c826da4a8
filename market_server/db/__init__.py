# 数据库模块
from .connection import (
    RedisManager,
    get_redis
)

__all__ = [
    'RedisManager',
    'get_redis'
]
