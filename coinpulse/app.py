"""
FastAPI 主应用入口
路由注册、异常处理、日志配置、后台服务启动
"""
import logging
import sys
from pathlib import Path
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .db import DatabaseManager
from .services import ServiceContainer

settings = get_settings()

# 创建logs目录
Path("logs").mkdir(exist_ok=True)

# 配置日志
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('logs/coinpulse.log', encoding='utf-8')
    ]
)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("=" * 60)
    logger.info("🚀 正在启动 coinpulse API Server...")
    logger.info("=" * 60)

    db = DatabaseManager.get_instance()
    try:
        # 1. 初始化数据库连接
        await db.initialize()

        # 2. 初始化服务容器
        ServiceContainer.initialize(db.redis, settings)

        # 2.1 建表（幂等）
        try:
            await ServiceContainer.get_repository().ensure_schema()
        except Exception as e:
            logger.warning(f"Schema初始化失败(索引重建回退查询将不可用): {e}")

        # 2.2 启动行情采集 worker
        if settings.WORKER_ENABLED:
            try:
                await ServiceContainer.get_market_data_service().start()
                logger.info("✅ 行情采集服务已启动")
            except Exception as e:
                logger.warning(f"行情采集服务启动失败(可忽略但建议修复): {e}")

        # 2.3 启动搜索索引重建（启动时立即构建一次）
        await ServiceContainer.get_index_service().start()
        logger.info("✅ 搜索索引重建服务已启动")

        # 2.4 启动 WebSocket 广播订阅
        await coin_relay.start(db.redis)

        logger.info("🎉 coinpulse API Server 启动成功！")

    except Exception as e:
        logger.error(f"❌ 启动失败: {e}", exc_info=True)
        raise

    yield

    # 清理资源
    logger.info("🔄 正在关闭 API Server...")
    try:
        await coin_relay.stop()
        try:
            await ServiceContainer.get_index_service().stop()
            logger.info("✅ 搜索索引重建服务已停止")
        except Exception:
            pass
        try:
            await ServiceContainer.get_market_data_service().stop()
            logger.info("✅ 行情采集服务已停止")
        except Exception:
            pass
        await db.close()
        logger.info("✅ 数据库连接已关闭")
    except Exception as e:
        logger.error(f"❌ 关闭时出错: {e}")


# 创建 FastAPI 应用
app = FastAPI(
    title="coinpulse",
    description="加密货币行情缓存与前缀搜索 REST API",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc"
)


# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# 全局异常处理器
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """统一异常处理"""
    logger.error(
        f"Unhandled exception at {request.method} {request.url.path}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "path": str(request.url.path),
            "method": request.method
        }
    )


# 导入所有路由
from .api.search_routes import router as search_router
from .api.coin_routes import router as coin_router
from .api.websocket import router as ws_router, manager as ws_manager, CoinUpdateRelay

coin_relay = CoinUpdateRelay(ws_manager, settings.COIN_UPDATE_CHANNEL)

app.include_router(search_router, prefix="/api/v1")
app.include_router(coin_router, prefix="/api/v1")
app.include_router(ws_router, prefix="/ws", tags=["WebSocket"])


@app.get("/", tags=["Health Check"])
async def root():
    """根端点 - 服务状态"""
    return {
        "status": "running",
        "service": "coinpulse",
        "version": "1.0.0",
        "api_docs": "/api/docs"
    }


@app.get("/health", tags=["Health Check"])
async def health_check():
    """详细健康检查 - 检查所有依赖服务"""
    db = DatabaseManager.get_instance()

    health_status = {
        "status": "healthy",
        "version": "1.0.0",
        "checks": {}
    }

    # 检查PostgreSQL
    try:
        async with db.pg_connection() as conn:
            await conn.fetchval("SELECT 1")
        health_status["checks"]["postgres"] = "connected"
    except Exception as e:
        health_status["checks"]["postgres"] = f"error: {str(e)}"
        health_status["status"] = "degraded"

    # 检查Redis
    try:
        await db.redis.ping()
        health_status["checks"]["redis"] = "connected"
    except Exception as e:
        health_status["checks"]["redis"] = f"error: {str(e)}"
        health_status["status"] = "degraded"

    # 搜索索引
    handle = ServiceContainer.get_index_handle()
    health_status["checks"]["search_index"] = {
        "generation": handle.generation,
        "published_at": handle.published_at,
        "entries": len(handle.current) if handle.current is not None else 0,
    }
    try:
        health_status["checks"]["search_index"]["last_error"] = ServiceContainer.get_index_service().last_error
    except RuntimeError:
        pass
    if handle.current is None:
        health_status["status"] = "degraded"

    return health_status


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "coinpulse.app:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=False,
        log_level="info"
    )
