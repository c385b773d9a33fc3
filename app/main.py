"""购物车库存预占服务入口

所有错误都以 {"success": false, "error": <kind>, "message": <text>} 返回，
error 取值见 app.core.exceptions.ErrorKind。
"""

from contextlib import asynccontextmanager
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.exceptions import ErrorKind, InventoryError
from app.db.session import engine
from app.core.redis import async_redis
from app.routers import inventory_router

import uvicorn

SERVICE_NAME = "cart-inventory-service"
SERVICE_VERSION = "1.0.0"

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def check_database() -> bool:
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error("❌ Database check failed: %s", e)
        return False


async def check_redis() -> bool:
    try:
        await async_redis.ping()
        return True
    except (RedisError, OSError) as e:
        logger.warning(f"⚠️  Redis check failed: {e}")
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"Starting {SERVICE_NAME}: reservation TTL {settings.RESERVATION_TTL_MINUTES} min, "
        f"commit trigger {settings.ORDER_COMMIT_TRIGGER}"
    )

    # 数据库不可用时无法提供任何库存操作，直接启动失败
    if not check_database():
        raise RuntimeError("Database connection failed")
    logger.info("✅ Database connection successful")

    # Redis 只用于清理锁和 Celery，不可用时清理任务不加锁执行
    if await check_redis():
        logger.info("✅ Redis connected successfully")
    else:
        logger.warning("⚠️  Cleanup will run without the distributed lock")

    yield

    logger.info("Shutting down application...")


app = FastAPI(
    title="购物车库存预占服务 API",
    description="购物车库存预占、释放、下单扣减与过期清理，数据库条件更新防超卖",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 生产环境中应该指定具体域名
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(inventory_router.router, prefix="/api/v1")


def error_response(status_code: int, kind: ErrorKind, message: str, **extra) -> JSONResponse:
    content = {"success": False, "error": kind.value, "message": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(InventoryError)
async def inventory_exception_handler(request: Request, exc: InventoryError):
    logger.warning(f"Inventory error on {request.url.path}: {exc.kind.value} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error on {request.url.path}: {exc}")
    return error_response(
        422,
        ErrorKind.VALIDATION_ERROR,
        "请求参数验证失败",
        details=jsonable_encoder(exc.errors()),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.error(f"HTTP error: {exc.status_code} - {exc.detail}")
    kind = ErrorKind.NOT_FOUND if exc.status_code == 404 else ErrorKind.VALIDATION_ERROR
    return error_response(exc.status_code, kind, str(exc.detail))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return error_response(500, ErrorKind.STORE_ERROR, "服务器内部错误")


@app.get("/health")
async def health_check():
    """健康检查：数据库不可用时返回 503，Redis 不可用只标记为 degraded"""
    database_ok = check_database()
    redis_ok = await check_redis()
    status = "healthy" if database_ok and redis_ok else "degraded" if database_ok else "unhealthy"
    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": status,
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "database": database_ok,
            "redis": redis_ok,
        },
    )


@app.get("/")
async def read_root():
    return {
        "message": "欢迎使用购物车库存预占服务",
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
