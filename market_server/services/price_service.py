"""
行情流存储 - 两个有序集合维护同一批价格记录
market:feed:time 按提交时间排序, market:feed:price 按价格排序

两个索引之间没有共同主键, 记录的 JSON 本身就是 member,
所以按代码删除只能全量 ZSCAN 后逐批 ZREM。
两个索引之间只保证尽力一致: 写入用 pipeline 一起发出但不回滚,
读取路径必须容忍两者暂时不一致。
"""
import asyncio
import logging
import time
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from ..db.redis_schema import FEED_PRICE_KEY, FEED_TIME_KEY
from ..errors import FeedStoreError, FeedStoreTimeout, PartialRemovalError, RemovalCounts
from ..models import PriceRecord
from ..validation import validate_price
from .feed_policy import FeedPolicy, PrunePolicy

logger = logging.getLogger(__name__)

SCAN_BATCH = 200


class SortKey(str, Enum):
    TIME = "time"
    PRICE = "price"

    @classmethod
    def parse(cls, value) -> "SortKey":
        """未知取值一律按时间排序"""
        if isinstance(value, SortKey):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.TIME


_INDEX_KEYS = {
    SortKey.TIME: FEED_TIME_KEY,
    SortKey.PRICE: FEED_PRICE_KEY,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class _RemovalProgress:
    """扫描删除过程中已确认的删除数量"""

    def __init__(self):
        self.time = 0
        self.price = 0

    def counts(self) -> RemovalCounts:
        return RemovalCounts(self.time, self.price)


class PriceService:
    """
    行情流存储
    不持有任何可变状态, 所有写操作都委托给 Redis 自身的原子命令,
    因此可以被多个请求协程和后台清理任务并发使用
    """

    def __init__(
        self,
        redis,
        policy: Optional[FeedPolicy] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.redis = redis
        self.policy = policy or FeedPolicy()
        self._clock = clock or _now_ms

    def now_ms(self) -> int:
        return self._clock()

    async def _guarded(self, coro, timeout: Optional[float], op: str):
        try:
            if timeout is None:
                return await coro
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError as e:
            raise FeedStoreTimeout(f"{op} 超时 ({timeout}s)") from e
        except RedisTimeoutError as e:
            raise FeedStoreTimeout(f"{op} 超时: {e}") from e
        except (RedisError, OSError) as e:
            raise FeedStoreError(f"{op} 失败: {e}") from e

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    async def add_record(
        self,
        code: str,
        price: float,
        server: str = "",
        *,
        timeout: Optional[float] = None,
    ) -> PriceRecord:
        """
        写入一条价格记录 (code 需已由调用方规范化)
        两个索引的 ZADD 以及 inline 策略下的裁剪命令在同一个 pipeline 中发出,
        中途失败不会回滚已执行的命令;
        inline 策略下价格索引只保留时间索引中最近的 price_index_cap 条
        """
        now = self._clock()
        record = PriceRecord(code=code, price=validate_price(price), server=server or "", timestamp=now)
        try:
            member = record.to_member()
        except (TypeError, ValueError) as e:
            raise FeedStoreError(f"记录序列化失败: {e}") from e

        inline = self.policy.prune_policy is PrunePolicy.INLINE

        async def _write():
            pipe = self.redis.pipeline(transaction=False)
            pipe.zadd(FEED_TIME_KEY, {member: record.timestamp})
            pipe.zadd(FEED_PRICE_KEY, {member: record.price})
            if inline:
                # 价格索引的排名是价格顺序, 最近 K 条只能从时间索引取
                pipe.zrange(FEED_TIME_KEY, 0, -(self.policy.price_index_cap + 1))
                pipe.zremrangebyscore(FEED_TIME_KEY, "-inf", f"({self.policy.cutoff_for(now)}")
            results = await pipe.execute()
            if inline and results[2]:
                await self.redis.zrem(FEED_PRICE_KEY, *results[2])

        await self._guarded(_write(), timeout, "add_record")
        logger.debug(f"新增价格记录 {record.code} @ {record.price}")
        return record

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    async def iter_top(
        self,
        sort_key="time",
        limit: int = 50,
        *,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[PriceRecord]:
        """按分数从高到低惰性产出最多 limit 条记录, 无法解码的 member 被跳过"""
        if limit <= 0:
            return
        key = _INDEX_KEYS[SortKey.parse(sort_key)]
        members = await self._guarded(self.redis.zrevrange(key, 0, limit - 1), timeout, "query_top")
        for member in members:
            record = PriceRecord.from_member(member)
            if record is None:
                logger.debug(f"跳过无法解码的记录: {key} {member!r}")
                continue
            yield record

    async def query_top(
        self,
        sort_key="time",
        limit: int = 50,
        *,
        timeout: Optional[float] = None,
    ) -> list[PriceRecord]:
        return [record async for record in self.iter_top(sort_key, limit, timeout=timeout)]

    # ------------------------------------------------------------------
    # 删除
    # ------------------------------------------------------------------

    async def _remove_matching(self, key: str, predicate: Callable[[PriceRecord], bool]) -> AsyncIterator[int]:
        """ZSCAN 全量扫描, 每批 ZREM 命中的 member 并产出本批删除数"""
        cursor = 0
        while True:
            cursor, entries = await self.redis.zscan(key, cursor=cursor, count=SCAN_BATCH)
            doomed = []
            for member, _score in entries:
                record = PriceRecord.from_member(member)
                if record is not None and predicate(record):
                    doomed.append(member)
            if doomed:
                yield int(await self.redis.zrem(key, *doomed))
            if int(cursor) == 0:
                break

    async def _run_removal(self, op: str, body, timeout: Optional[float]) -> RemovalCounts:
        progress = _RemovalProgress()
        try:
            await self._guarded(body(progress), timeout, op)
        except FeedStoreError as e:
            counts = progress.counts()
            logger.warning(f"{op} 中途失败, 已删除 time={counts.time} price={counts.price}: {e}")
            raise PartialRemovalError(str(e), counts) from e
        return progress.counts()

    async def delete_by_code(self, code: str, *, timeout: Optional[float] = None) -> RemovalCounts:
        """
        删除两个索引中代码匹配 (忽略大小写) 的所有记录
        复杂度与索引大小成正比, 依赖时间过期把索引规模控制住
        """
        target = (code or "").strip().casefold()

        def _matches(record: PriceRecord) -> bool:
            return record.code.casefold() == target

        async def _body(progress: _RemovalProgress):
            async for removed in self._remove_matching(FEED_TIME_KEY, _matches):
                progress.time += removed
            async for removed in self._remove_matching(FEED_PRICE_KEY, _matches):
                progress.price += removed

        counts = await self._run_removal("delete_by_code", _body, timeout)
        logger.info(f"按代码删除 {code}: time={counts.time} price={counts.price}")
        return counts

    async def expire_older_than(self, cutoff_ms: int, *, timeout: Optional[float] = None) -> RemovalCounts:
        """
        删除时间戳早于 cutoff_ms 的记录
        时间索引直接按分数区间删除; 价格索引按价格排序, 只能扫描后逐条判断时间戳
        """
        cutoff_ms = int(cutoff_ms)

        def _expired(record: PriceRecord) -> bool:
            return 0 < record.timestamp < cutoff_ms

        async def _body(progress: _RemovalProgress):
            progress.time = int(await self.redis.zremrangebyscore(FEED_TIME_KEY, "-inf", f"({cutoff_ms}"))
            async for removed in self._remove_matching(FEED_PRICE_KEY, _expired):
                progress.price += removed

        counts = await self._run_removal("expire_older_than", _body, timeout)
        logger.info(f"过期清理 (cutoff={cutoff_ms}): time={counts.time} price={counts.price}")
        return counts

    async def clear_all(self, *, timeout: Optional[float] = None) -> RemovalCounts:
        """清空两个索引, 返回清空前的数量"""

        async def _clear():
            pipe = self.redis.pipeline(transaction=True)
            pipe.zcard(FEED_TIME_KEY)
            pipe.zcard(FEED_PRICE_KEY)
            pipe.delete(FEED_TIME_KEY, FEED_PRICE_KEY)
            time_count, price_count, _ = await pipe.execute()
            return RemovalCounts(int(time_count), int(price_count))

        counts = await self._guarded(_clear(), timeout, "clear_all")
        logger.info(f"清空行情流: time={counts.time} price={counts.price}")
        return counts
