"""
Redis 数据结构设计文档
用于 coinpulse 行情缓存与搜索索引重建

基于以下原则设计:
1. worker 写入, API 只读
2. 键名由 CacheKeyScheme 统一生成, 业务代码不拼接字符串
3. 支持发布/订阅模式
"""
import re
from dataclasses import dataclass
from typing import Optional

# ============================================
# Key Naming Convention (键命名规范)
# ============================================
# 格式: {prefix}{data_type}:{id}
# 示例: coin:bitcoin, page:1:data

# ============================================
# 1. 单币种行情 (Coin)
# ============================================
# Key: coin:{coin_id}
# Type: String (JSON, 行情源原始记录)
# TTL: 5 minutes (top coins) / 10 minutes (watchlist 回填)
#
# Example:
#   SET coin:bitcoin '{"id":"bitcoin","symbol":"btc","name":"Bitcoin","current_price":68000.5,...}' EX 300

# ============================================
# 2. 分页快照 (Page Snapshot)
# ============================================
# Key: page:{n}:data
# Type: String (JSON array, 按 market_cap_rank 升序)
# TTL: PAGE_TTL_SECONDS (0 = 不过期)
#
# 搜索索引重建的数据源: SCAN page:*:data
# 没有任何页面快照时, 索引重建回退到 PostgreSQL coins 表

# ============================================
# 3. Pub/Sub 频道 (Channels)
# ============================================
# channel: coin-updates - 每轮 top coins 写缓存后, 每个币种一条消息
# payload: {"coinId": "bitcoin", "data": {...完整记录...}}

_PAGE_NUMBER_RE = re.compile(r"page:(\d+):data$")


@dataclass(frozen=True)
class CacheKeyScheme:
    """缓存键命名规范"""
    prefix: str = ""
    coin_update_channel: str = "coin-updates"

    def entity_key(self, coin_id: str) -> str:
        return f"{self.prefix}coin:{coin_id}"

    def page_key(self, page: int) -> str:
        return f"{self.prefix}page:{int(page)}:data"

    @property
    def page_pattern(self) -> str:
        return f"{self.prefix}page:*:data"

    def page_number(self, key) -> Optional[int]:
        """从页面快照键解析页码, 非页面键返回 None"""
        if isinstance(key, (bytes, bytearray)):
            key = key.decode("utf-8")
        if not isinstance(key, str) or not key.startswith(self.prefix):
            return None
        match = _PAGE_NUMBER_RE.fullmatch(key[len(self.prefix):])
        if not match:
            return None
        return int(match.group(1))


# Redis 配置建议
# maxmemory-policy: volatile-ttl (优先删除即将过期的 key)
# notify-keyspace-events: 不需要
