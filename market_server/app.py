"""
FastAPI 主应用入口
路由注册、异常处理、日志配置、服务初始化
"""
import logging
import sys
from pathlib import Path
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .db import RedisManager
from .services import ServiceContainer

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(settings: Settings):
    """配置日志: 控制台 + 文件"""
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_dir / 'market.log', encoding='utf-8')
        ]
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    settings = get_settings()
    configure_logging(settings)

    logger.info("=" * 60)
    logger.info("🚀 正在启动 Market Feed API Server...")
    logger.info("=" * 60)

    db = RedisManager.get_instance()
    try:
        # 1. 初始化 Redis 连接
        await db.initialize()

        # 2. 初始化服务容器
        ServiceContainer.initialize(db.redis, settings)

        # 3. 确保管理员账号
        try:
            await ServiceContainer.get_auth_service().ensure_admin(
                settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD
            )
        except Exception as e:
            logger.warning(f"管理员账号初始化失败: {e}")

        # 4. 启动每日清理任务
        await ServiceContainer.get_cleanup_scheduler().start()

        logger.info("🎉 Market Feed API Server 启动成功！")
    except Exception as e:
        logger.error(f"❌ 启动失败: {e}", exc_info=True)
        raise

    yield

    logger.info("🔄 正在关闭 API Server...")
    try:
        await ServiceContainer.get_cleanup_scheduler().stop()
        await db.close()
    except Exception as e:
        logger.error(f"❌ 关闭时出错: {e}")
    finally:
        ServiceContainer.reset()


app = FastAPI(
    title="Market Price Feed",
    description="价格行情流 REST API - 提交、排行、审核",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc"
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Origin", "Content-Type", "Accept", "Authorization"],
)


# 全局异常处理器
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """统一异常处理, 不向客户端暴露存储细节"""
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


from .api.feed_routes import router as feed_router
from .api.auth_routes import router as auth_router
from .api.admin_routes import router as admin_router

app.include_router(feed_router, prefix="/api/v1")
app.include_router(auth_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/", tags=["Health Check"])
async def root():
    """根端点 - 服务状态"""
    return {
        "status": "running",
        "service": "Market Price Feed",
        "version": "1.0.0",
        "api_docs": "/api/docs"
    }


@app.get("/health", tags=["Health Check"])
async def health_check():
    """健康检查 - 检查 Redis"""
    health_status = {
        "status": "healthy",
        "checks": {}
    }

    try:
        await ServiceContainer.get_redis().ping()
        health_status["checks"]["redis"] = "connected"
    except Exception as e:
        health_status["checks"]["redis"] = f"error: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "market_server.app:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )
