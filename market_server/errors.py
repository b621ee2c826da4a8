"""
错误分类
- 输入校验: ValueError, 在到达存储前被拒绝
- 存储不可用/超时: FeedStoreError / FeedStoreTimeout
- 部分扫描失败: PartialRemovalError, 携带已完成的删除计数
- 单条记录解码失败: 不抛出, 直接跳过
"""
from typing import NamedTuple, Optional


class RemovalCounts(NamedTuple):
    time: int = 0
    price: int = 0


class FeedStoreError(Exception):
    """行情存储不可用或序列化失败"""


class FeedStoreTimeout(FeedStoreError):
    """存储操作超过调用方给定的期限"""


class PartialRemovalError(FeedStoreError):
    """删除扫描中途失败, counts 为失败前已删除的数量"""

    def __init__(self, message: str, counts: Optional[RemovalCounts] = None):
        super().__init__(message)
        self.counts = counts or RemovalCounts()


class UserNotFound(Exception):
    pass


class UserAlreadyExists(Exception):
    pass


class InvalidCredentials(Exception):
    pass


class AccountBanned(Exception):
    pass


class FeedbackNotFound(Exception):
    pass


class FeedbackAlreadyResolved(Exception):
    pass
