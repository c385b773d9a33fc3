"""Redis 客户端配置模块"""

from redis import Redis
from redis.asyncio import Redis as AsyncRedis

from app.core.config import settings

# 统一的 Redis 配置
REDIS_URL = settings.redis_url

# 基础 Redis 客户端
redis_client = Redis.from_url(REDIS_URL, decode_responses=True)
async_redis = AsyncRedis.from_url(REDIS_URL, decode_responses=True)

# 过期预占清理任务的全局锁，保证同一时间只有一个清理实例在跑
CLEANUP_LOCK_KEY = "lock:inventory:cleanup"
CLEANUP_LOCK_TTL_SECONDS = 300


def create_cleanup_lock(client: Redis = None):
    """创建清理任务使用的 Redis 锁（非阻塞获取）"""
    client = client or redis_client
    return client.lock(
        CLEANUP_LOCK_KEY,
        timeout=CLEANUP_LOCK_TTL_SECONDS,
        blocking=False,
    )

# 导出
__all__ = [
    "redis_client",
    "async_redis",
    "create_cleanup_lock",
    "REDIS_URL",
]
