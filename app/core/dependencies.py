"""依赖注入配置模块"""

from fastapi import Depends

# 数据库会话依赖
from app.db.session import SessionLocal
from sqlalchemy.orm import Session

# Redis 依赖
from app.core.redis import redis_client, create_cleanup_lock

from app.services.alert_service import AlertService
from app.services.reservation_coordinator import ReservationCoordinator


def get_redis():
    """获取同步 Redis 客户端"""
    return redis_client

def get_cleanup_lock(redis = Depends(get_redis)):
    """获取过期清理使用的 Redis 锁"""
    return create_cleanup_lock(redis)

def get_db() -> Session:
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_reservation_coordinator(db: Session = Depends(get_db)) -> ReservationCoordinator:
    """获取预占协调服务（不带清理锁）"""
    return ReservationCoordinator(db=db)


def get_cleanup_coordinator(
    db: Session = Depends(get_db),
    lock = Depends(get_cleanup_lock),
) -> ReservationCoordinator:
    """获取带清理锁的预占协调服务"""
    return ReservationCoordinator(db=db, lock=lock)


def get_alert_service(db: Session = Depends(get_db)) -> AlertService:
    return AlertService(db)


# 常用的依赖注入别名
CoordinatorDep = Depends(get_reservation_coordinator)
CleanupCoordinatorDep = Depends(get_cleanup_coordinator)
AlertServiceDep = Depends(get_alert_service)
