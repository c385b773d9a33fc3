"""库存相关的 Celery 任务"""

from celery_app import app
from app.db.session import SessionLocal
from app.services.reservation_coordinator import ReservationCoordinator
from app.core.redis import create_cleanup_lock
import logging

logger = logging.getLogger(__name__)

@app.task(name='tasks.inventory.cleanup_expired_reservations')
def cleanup_expired_reservations(batch_size: int = 500):
    """清理过期的购物车预占并归还库存

    Args:
        batch_size: 批处理大小，默认500条

    Returns:
        清理的记录数量描述
    """
    db = SessionLocal()
    try:
        service = ReservationCoordinator(db, lock=create_cleanup_lock())
        count = service.cleanup_expired(batch_size)
        result = f"成功清理 {count} 条过期预占记录"
        logger.info(result)
        return result
    except Exception as e:
        logger.error(f"清理过期预占任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

# 导出任务
__all__ = [
    'cleanup_expired_reservations',
]
