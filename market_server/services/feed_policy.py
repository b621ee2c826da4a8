"""
行情流部署策略
写入时裁剪 vs 仅依赖每日任务, 每日过期 vs 每日清空
"""
from dataclasses import dataclass
from enum import Enum

HOUR_MS = 60 * 60 * 1000


class PrunePolicy(str, Enum):
    INLINE = "inline"
    SCHEDULED = "scheduled"


class CleanupMode(str, Enum):
    CLEAR = "clear"
    EXPIRE = "expire"


@dataclass(frozen=True)
class FeedPolicy:
    prune_policy: PrunePolicy = PrunePolicy.INLINE
    cleanup_mode: CleanupMode = CleanupMode.CLEAR
    retention_hours: float = 24.0
    price_index_cap: int = 1000

    @property
    def retention_ms(self) -> int:
        return int(self.retention_hours * HOUR_MS)

    def cutoff_for(self, now_ms: int) -> int:
        """保留期截止时间戳, 早于该值的记录视为过期"""
        return now_ms - self.retention_ms
