import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .prefix_index import EntitySummary, PrefixIndexHandle

logger = logging.getLogger(__name__)


class SearchValidationError(ValueError):
    """搜索参数不合法 (空查询等)"""


class IndexUnavailableError(RuntimeError):
    """还没有任何已发布的索引代"""


@dataclass(frozen=True)
class SearchResult:
    count: int
    results: list[EntitySummary] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "results": [r.to_dict() for r in self.results]}


class SearchService:
    def __init__(self, handle: PrefixIndexHandle, default_limit: int = 10, max_limit: int = 50):
        self.handle = handle
        self.default_limit = default_limit
        self.max_limit = max_limit

    def search(self, query: Optional[str], limit: Optional[int] = None) -> SearchResult:
        """
        在当前已发布的索引代上做前缀搜索, 重建期间读旧代
        strip 只用于空查询校验, 前缀按原样交给索引匹配
        """
        if not (query or "").strip():
            raise SearchValidationError("Missing search query")

        if limit is None:
            limit = self.default_limit
        if limit <= 0:
            raise SearchValidationError("limit must be positive")
        limit = min(limit, self.max_limit)

        index = self.handle.current
        if index is None:
            raise IndexUnavailableError("search index is not built yet")

        results = index.search(query, limit=limit)
        logger.debug(f"search q={query!r} limit={limit} hits={len(results)} generation={self.handle.generation}")
        return SearchResult(count=len(results), results=results)
