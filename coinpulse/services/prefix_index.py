"""
币种前缀搜索索引 (Trie)
按名称和代码的小写前缀查找币种摘要
"""
import time
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class EntitySummary:
    id: str
    name: str
    symbol: str
    image: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "EntitySummary":
        return cls(
            id=str(record["id"]),
            name=str(record["name"]),
            symbol=str(record["symbol"]),
            image=record.get("image"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "symbol": self.symbol,
            "image": self.image,
        }


class TrieNode:
    __slots__ = ("children", "terminal", "summaries")

    def __init__(self):
        self.children: dict[str, TrieNode] = {}
        self.terminal: bool = False
        self.summaries: list[EntitySummary] = []


class PrefixIndex:
    """
    一代 (generation) 完整的前缀索引
    构建阶段只追加, freeze() 之后只读, 可被多个协程无锁并发读取
    """

    def __init__(self):
        self._root = TrieNode()
        self._frozen = False
        self._entries = 0
        self._nodes = 1

    def insert(self, key: str, summary: EntitySummary) -> None:
        """
        按 key 的小写形式逐字符下探并创建节点, 末节点标记为 terminal 并追加摘要
        空 key 直接追加到根节点
        """
        if self._frozen:
            raise RuntimeError("PrefixIndex is frozen; build a new generation instead")

        node = self._root
        for ch in (key or "").lower():
            child = node.children.get(ch)
            if child is None:
                child = TrieNode()
                node.children[ch] = child
                self._nodes += 1
            node = child

        node.terminal = True
        node.summaries.append(summary)
        self._entries += 1

    def search(self, prefix: str, limit: int = 10) -> list[EntitySummary]:
        """
        返回以 prefix 开头的所有 key 对应的摘要, 最多 limit 条
        顺序: 深度优先先序遍历, 子节点按插入顺序
        空 prefix 只返回以空 key 插入的摘要
        """
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        node = self._walk((prefix or "").lower())
        if node is None:
            return []

        if not prefix:
            return list(node.summaries[:limit])

        results: list[EntitySummary] = []
        stack = [node]
        while stack:
            current = stack.pop()
            if current.terminal and current.summaries:
                remaining = limit - len(results)
                results.extend(current.summaries[:remaining])
                if len(results) >= limit:
                    break
            # 逆序压栈, 保证按插入顺序出栈
            stack.extend(reversed(current.children.values()))
        return results

    def freeze(self) -> "PrefixIndex":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def node_count(self) -> int:
        return self._nodes

    def __len__(self) -> int:
        return self._entries

    def _walk(self, key: str) -> Optional[TrieNode]:
        node = self._root
        for ch in key:
            node = node.children.get(ch)
            if node is None:
                return None
        return node


class PrefixIndexHandle:
    """
    当前已发布索引代的持有者
    重建完成后整体替换引用, 读者只会看到旧代或新代, 不会看到半成品
    """

    def __init__(self, index: Optional[PrefixIndex] = None):
        self._current: Optional[PrefixIndex] = None
        self.generation = 0
        self.published_at: Optional[float] = None
        if index is not None:
            self.publish(index)

    @property
    def current(self) -> Optional[PrefixIndex]:
        return self._current

    def publish(self, index: PrefixIndex) -> int:
        if not index.frozen:
            index.freeze()
        self._current = index
        self.generation += 1
        self.published_at = time.time()
        return self.generation
