"""购物车预占记录的持久化操作，不包含任何业务规则"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app.db.base import nullable_eq
from app.models.cart_reservations import CartReservation


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReservationStore:

    def __init__(self, db: Session):
        self.db = db

    def get(
        self,
        session_id: str,
        product_id: int,
        variation_id: Optional[int] = None,
        for_update: bool = False,
    ) -> Optional[CartReservation]:
        stmt = (
            select(CartReservation)
            .where(
                CartReservation.session_id == session_id,
                CartReservation.product_id == product_id,
                nullable_eq(CartReservation.variation_id, variation_id),
            )
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def add(
        self,
        session_id: str,
        product_id: int,
        quantity: int,
        expires_at: datetime,
        variation_id: Optional[int] = None,
    ) -> CartReservation:
        reservation = CartReservation(
            session_id=session_id,
            product_id=product_id,
            variation_id=variation_id,
            quantity=quantity,
            expires_at=expires_at,
        )
        self.db.add(reservation)
        # 立即 flush，唯一索引冲突在这里抛出 IntegrityError
        self.db.flush()
        return reservation

    def update(self, reservation: CartReservation, quantity: int, expires_at: datetime) -> CartReservation:
        reservation.quantity = quantity
        reservation.expires_at = expires_at
        self.db.flush()
        return reservation

    def list_for_session(self, session_id: str) -> List[CartReservation]:
        stmt = (
            select(CartReservation)
            .where(CartReservation.session_id == session_id)
            .order_by(CartReservation.id)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_expired(
        self,
        now: datetime,
        batch_size: int,
        exclude_ids: Iterable[int] = (),
    ) -> List[CartReservation]:
        """批量查询已过期的预占，skip_locked 防止多个清理 worker 抢同一批"""
        stmt = (
            select(CartReservation)
            .where(CartReservation.expires_at < now)
            .order_by(CartReservation.expires_at)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            stmt = stmt.where(CartReservation.id.notin_(exclude_ids))
        return list(self.db.execute(stmt).scalars().all())

    def count_expired(self, now: datetime) -> int:
        stmt = select(func.count(CartReservation.id)).where(CartReservation.expires_at < now)
        return self.db.execute(stmt).scalar_one()

    def delete_by_id(self, reservation_id: int, expired_before: Optional[datetime] = None) -> bool:
        """按ID删除预占

        expired_before 不为空时只删除仍然过期的记录，避免误删刚被续期的预占。
        返回 False 表示记录已不存在（被其他请求删除或已续期），调用方视为成功。
        """
        stmt = delete(CartReservation).where(CartReservation.id == reservation_id)
        if expired_before is not None:
            stmt = stmt.where(CartReservation.expires_at < expired_before)
        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount > 0

    def pin_for_session(self, session_id: str, order_id: str, expires_at: datetime) -> int:
        """把会话的预占绑定到待支付订单，并把过期时间顺延到 expires_at"""
        stmt = (
            update(CartReservation)
            .where(CartReservation.session_id == session_id)
            .values(order_id=order_id, expires_at=expires_at)
            .execution_options(synchronize_session="evaluate")
        )
        return self.db.execute(stmt).rowcount

    def delete_for_session(self, session_id: str) -> int:
        stmt = delete(CartReservation).where(CartReservation.session_id == session_id)
        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount
