"""
币种搜索 API
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ..services import ServiceContainer
from ..services.search_service import IndexUnavailableError, SearchService, SearchValidationError

router = APIRouter(tags=["Search"])
logger = logging.getLogger(__name__)


def get_search_service() -> SearchService:
    return ServiceContainer.get_search_service()


@router.get("/search")
async def search_coins(
    q: Optional[str] = Query(None, description="名称或代码前缀，例如 bit / eth"),
    limit: Optional[int] = Query(None, description="返回条数, 超过上限时截断"),
    service: SearchService = Depends(get_search_service),
):
    """按名称/代码前缀搜索币种"""
    try:
        result = service.search(q, limit=limit)
    except SearchValidationError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except IndexUnavailableError as e:
        return JSONResponse(status_code=503, content={"error": str(e)})
    except Exception:
        logger.exception(f"search failed: q={q!r}")
        return JSONResponse(status_code=500, content={"error": "Search failed"})
    return result.to_dict()
