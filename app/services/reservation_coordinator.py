"""购物车库存预占协调服务

购物车的每次加购、改数量、删除、下单都会调用这里。每个请求都是独立的
数据库事务，服务本身不保存任何会话状态，session_id 由调用方显式传入。

单个预占 key (session_id, product_id, variation_id) 的状态：

    不存在 --reserve--> 已预占 --release / 下单确认 / 过期清理--> 不存在
    已预占 --reserve--> 已预占（数量被替换，过期时间顺延）
    已预占 --下单（payment_confirmed 模式）--> 待支付（绑定订单号，过期时间顺延到支付窗口结束）
    待支付 --支付确认--> 不存在

下单确认不会保留任何预占痕迹，只留下 out 流水。
"""

import enum
import logging
from datetime import timedelta
from typing import Optional

from redis.exceptions import LockError, RedisError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    InactiveError,
    InsufficientStockError,
    InventoryError,
    StoreError,
    ValidationError,
)
from app.models.cart_reservations import CartReservation
from app.models.stock_movements import MovementType, StockMovement
from app.services.alert_service import AlertService
from app.services.reservation_store import ReservationStore, utcnow
from app.services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)

CART_OPERATOR = "cart_service"
CLEANUP_OPERATOR = "system_cleanup"


class CommitTrigger(str, enum.Enum):
    """预占转为正式扣减的触发点"""
    ORDER_SUBMITTED = "order_submitted"      # 提交订单即扣减（默认）
    PAYMENT_CONFIRMED = "payment_confirmed"  # 支付网关回调确认后扣减


class ReservationCoordinator:
    """预占协调服务"""

    def __init__(
        self,
        db: Session,
        lock=None,
        ttl_minutes: Optional[int] = None,
        commit_trigger: Optional[str] = None,
        payment_hold_minutes: Optional[int] = None,
    ):
        self.db = db
        self.lock = lock
        self.ttl = timedelta(minutes=ttl_minutes or settings.RESERVATION_TTL_MINUTES)
        self.payment_hold = timedelta(minutes=payment_hold_minutes or settings.PAYMENT_HOLD_MINUTES)
        self.commit_trigger = CommitTrigger(commit_trigger or settings.ORDER_COMMIT_TRIGGER)
        self.alerts = AlertService(db)
        self.ledger = StockLedger(db, alerts=self.alerts)
        self.reservations = ReservationStore(db)

    # ==================== 预占 ====================

    def reserve(
        self,
        session_id: str,
        product_id: int,
        quantity: int,
        variation_id: Optional[int] = None,
    ) -> CartReservation:
        """预占库存（加购 / 修改数量）

        同一 key 重复调用时替换数量并顺延过期时间，流水只记录与旧预占的差额，
        可售库存始终等于 总库存 - 所有有效预占。
        """
        self._validate_session(session_id)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError("预占数量必须为正整数")

        for attempt in (1, 2):
            try:
                reservation = self._upsert(session_id, product_id, quantity, variation_id)
                self.db.commit()
                logger.info(
                    f"预占库存成功: session_id={session_id}, product_id={product_id}, "
                    f"variation_id={variation_id}, quantity={quantity}"
                )
                return reservation
            except IntegrityError as e:
                self.db.rollback()
                if attempt == 2:
                    raise StoreError(f"预占记录写入失败: {str(e.orig)}") from e
                # 并发首次插入同一 key 触发唯一索引冲突，按更新重试一次
                logger.warning(f"预占记录冲突，重试: session_id={session_id}, product_id={product_id}")
            except InventoryError as e:
                self.db.rollback()
                logger.error(f"预占库存失败: session_id={session_id}, product_id={product_id}, error={e.message}")
                raise
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"预占库存失败: {str(e)}")
                raise StoreError(f"预占库存失败: {str(e)}") from e

    def _upsert(self, session_id, product_id, quantity, variation_id) -> CartReservation:
        product, variation = self.ledger.get_stock_record(product_id, variation_id)
        if not product.active or (variation is not None and not variation.active):
            raise InactiveError(f"商品已下架: product_id={product_id}")

        existing = self.reservations.get(session_id, product_id, variation_id, for_update=True)
        self._ensure_not_pinned(existing)
        held = existing.quantity if existing else 0
        delta = quantity - held

        if delta > 0:
            try:
                self.ledger.apply_movement(
                    product_id,
                    MovementType.RESERVED,
                    delta,
                    variation_id=variation_id,
                    reason="Cart reservation",
                    reference_id=f"cart_{session_id}",
                    created_by=CART_OPERATOR,
                )
            except InsufficientStockError as e:
                available = (e.available or 0) + held
                raise InsufficientStockError(
                    f"库存不足，可售 {available}，请求 {quantity}",
                    available=available,
                    requested=quantity,
                ) from None
        elif delta < 0:
            self.ledger.apply_movement(
                product_id,
                MovementType.RELEASED,
                -delta,
                variation_id=variation_id,
                reason="Cart reservation reduced",
                reference_id=f"cart_release_{session_id}",
                created_by=CART_OPERATOR,
            )

        expires_at = utcnow() + self.ttl
        if existing is not None:
            return self.reservations.update(existing, quantity, expires_at)
        return self.reservations.add(
            session_id, product_id, quantity, expires_at, variation_id=variation_id
        )

    # ==================== 释放 ====================

    def release(
        self,
        session_id: str,
        product_id: int,
        variation_id: Optional[int] = None,
    ) -> bool:
        """释放预占（移出购物车），没有预占时直接返回 False，可重复调用"""
        self._validate_session(session_id)
        try:
            reservation = self.reservations.get(session_id, product_id, variation_id, for_update=True)
            if reservation is None:
                self.db.rollback()
                logger.info(f"没有需要释放的预占: session_id={session_id}, product_id={product_id}")
                return False
            self._ensure_not_pinned(reservation)

            released = self._release_reservation(
                reservation,
                reason="Cart reservation released",
                reference_id=f"cart_release_{session_id}",
                created_by=CART_OPERATOR,
            )
            self.db.commit()
        except InventoryError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"释放预占失败: {str(e)}")
            raise StoreError(f"释放预占失败: {str(e)}") from e

        if released:
            logger.info(f"释放预占成功: session_id={session_id}, product_id={product_id}")
        return released

    def _release_reservation(
        self,
        reservation: CartReservation,
        reason: str,
        reference_id: str,
        created_by: str,
        expired_before=None,
    ) -> bool:
        """删除预占并归还库存；记录已被其他请求处理时返回 False"""
        product_id = reservation.product_id
        variation_id = reservation.variation_id
        quantity = reservation.quantity

        if not self.reservations.delete_by_id(reservation.id, expired_before=expired_before):
            return False
        self.db.expunge(reservation)

        self.ledger.apply_movement(
            product_id,
            MovementType.RELEASED,
            quantity,
            variation_id=variation_id,
            reason=reason,
            reference_id=reference_id,
            created_by=created_by,
        )
        return True

    # ==================== 下单确认 ====================

    def commit_order(self, trigger, session_id: str, order_id: str) -> Optional[dict]:
        """只有触发点与配置一致时才执行扣减，否则返回 None

        payment_confirmed 模式下提交订单不扣减，但会把预占绑定到订单并顺延到
        支付窗口结束，避免支付回调到达前被过期清理归还。
        """
        trigger = CommitTrigger(trigger)
        if trigger is not self.commit_trigger:
            logger.info(
                f"跳过库存确认: trigger={trigger.value}, 当前配置={self.commit_trigger.value}, "
                f"order_id={order_id}"
            )
            if trigger is CommitTrigger.ORDER_SUBMITTED:
                self.hold_for_payment(session_id, order_id)
            return None
        return self.process_order(session_id, order_id)

    def hold_for_payment(self, session_id: str, order_id: str) -> int:
        """把会话的预占锁定给待支付订单，返回锁定的行数"""
        self._validate_session(session_id)
        if not order_id:
            raise ValidationError("订单ID不能为空")

        expires_at = utcnow() + self.payment_hold
        try:
            pinned = self.reservations.pin_for_session(session_id, order_id, expires_at)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"锁定待支付预占失败: order_id={order_id}, error={str(e)}")
            raise StoreError(f"锁定待支付预占失败: {str(e)}") from e

        logger.info(
            f"预占已锁定等待支付: session_id={session_id}, order_id={order_id}, "
            f"rows={pinned}, expires_at={expires_at.isoformat()}"
        )
        return pinned

    def process_order(self, session_id: str, order_id: str) -> dict:
        """把会话的全部预占转为正式出库

        每一行先删除预占记录认领该行，删除成功后再 released 归还预占、out 正式扣减，
        三步在同一个 SAVEPOINT 内。认领不到说明该行已被并发释放或过期清理，库存
        已经归还，不能再扣减。单行失败只记录到 failed_items 供人工对账，不影响其他行；
        最后无条件删除该会话的剩余预占。
        """
        self._validate_session(session_id)
        if not order_id:
            raise ValidationError("订单ID不能为空")

        result = {
            "order_id": order_id,
            "session_id": session_id,
            "processed_items": [],
            "failed_items": [],
            "cleared_reservations": 0,
        }
        try:
            reservations = self.reservations.list_for_session(session_id)
            if not reservations:
                logger.info(f"会话没有需要确认的预占: session_id={session_id}, order_id={order_id}")

            claimed = 0
            for reservation in reservations:
                line = {
                    "product_id": reservation.product_id,
                    "variation_id": reservation.variation_id,
                    "quantity": reservation.quantity,
                }
                try:
                    with self.db.begin_nested():
                        owned = self.reservations.delete_by_id(reservation.id)
                        if owned:
                            self._convert_to_sale(line, order_id)
                    if not owned:
                        logger.warning(
                            f"预占已被释放或过期清理，不再扣减: order_id={order_id}, "
                            f"product_id={line['product_id']}, variation_id={line['variation_id']}"
                        )
                        result["failed_items"].append({**line, "error": "预占已失效，库存已归还"})
                        continue
                    claimed += 1
                    result["processed_items"].append(line)
                except (InventoryError, SQLAlchemyError) as e:
                    logger.error(
                        f"订单行库存扣减失败，需人工对账: order_id={order_id}, "
                        f"product_id={line['product_id']}, variation_id={line['variation_id']}, "
                        f"quantity={line['quantity']}, error={str(e)}"
                    )
                    result["failed_items"].append({**line, "error": str(e)})

            result["cleared_reservations"] = claimed + self.reservations.delete_for_session(session_id)
            for reservation in reservations:
                self.db.expunge(reservation)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"订单库存确认失败: order_id={order_id}, error={str(e)}")
            raise StoreError(f"订单库存确认失败: {str(e)}") from e

        logger.info(
            f"订单库存确认完成: order_id={order_id}, 成功 {len(result['processed_items'])} 行, "
            f"失败 {len(result['failed_items'])} 行"
        )
        return result

    def _convert_to_sale(self, line: dict, order_id: str) -> None:
        common = dict(
            variation_id=line["variation_id"],
            order_id=order_id,
            reference_id=f"order_{order_id}",
            created_by=CART_OPERATOR,
        )
        self.ledger.apply_movement(
            line["product_id"],
            MovementType.RELEASED,
            line["quantity"],
            reason="Reservation converted to sale",
            **common,
        )
        self.ledger.apply_movement(
            line["product_id"],
            MovementType.OUT,
            line["quantity"],
            reason="Order completed",
            **common,
        )

    # ==================== 过期清理 ====================

    def cleanup_expired(self, batch_size: Optional[int] = None) -> int:
        """清理过期预占并归还库存

        可以与自身以及正在进行的 reserve / release 并发执行：
        每行用带过期条件的 DELETE 删除，删除不到（已被删除或刚续期）就跳过。

        Returns:
            清理的预占数量
        """
        batch_size = batch_size or settings.CLEANUP_BATCH_SIZE
        locked = self._acquire_lock()
        if locked is False:
            logger.info("其他实例正在清理过期预占，跳过本次执行")
            return 0

        try:
            return self._sweep(batch_size)
        finally:
            if locked:
                self._release_lock()

    def count_expired(self) -> int:
        return self.reservations.count_expired(utcnow())

    def _sweep(self, batch_size: int) -> int:
        total_cleaned = 0
        attempted = set()

        while True:
            now = utcnow()
            try:
                expired = self.reservations.list_expired(now, batch_size, exclude_ids=attempted)
            except SQLAlchemyError as e:
                self.db.rollback()
                raise StoreError(f"查询过期预占失败: {str(e)}") from e

            if not expired:
                break

            logger.info(f"本次清理 {len(expired)} 条过期预占记录")
            for reservation in expired:
                reservation_id, session_id = reservation.id, reservation.session_id
                attempted.add(reservation_id)
                try:
                    with self.db.begin_nested():
                        cleaned = self._release_reservation(
                            reservation,
                            reason="Cart reservation expired",
                            reference_id=f"cart_release_{session_id}",
                            created_by=CLEANUP_OPERATOR,
                            expired_before=now,
                        )
                    if cleaned:
                        total_cleaned += 1
                except (InventoryError, SQLAlchemyError) as e:
                    logger.error(
                        f"清理单条预占记录失败: reservation_id={reservation_id}, "
                        f"session_id={session_id}, error={str(e)}"
                    )

            self.db.commit()
            logger.info(f"已完成批次清理，累计清理 {total_cleaned} 条记录")

            if len(expired) < batch_size:
                break

        logger.info(f"清理任务完成，总共清理 {total_cleaned} 条过期预占记录")
        return total_cleaned

    def _acquire_lock(self) -> Optional[bool]:
        """None 表示未配置锁或 Redis 不可用，直接执行清理"""
        if self.lock is None:
            return None
        try:
            return bool(self.lock.acquire())
        except RedisError as e:
            logger.warning(f"获取清理锁失败，不加锁继续执行: {str(e)}")
            return None

    def _release_lock(self) -> None:
        try:
            self.lock.release()
        except (LockError, RedisError) as e:
            logger.warning(f"释放清理锁失败（可能已过期）: {str(e)}")

    # ==================== 运营操作 ====================

    def record_movement(
        self,
        product_id: int,
        movement_type,
        quantity: int,
        variation_id: Optional[int] = None,
        reason: Optional[str] = None,
        order_id: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> StockMovement:
        """后台手工入库 / 出库 / 盘点"""
        try:
            movement = self.ledger.apply_movement(
                product_id,
                movement_type,
                quantity,
                variation_id=variation_id,
                reason=reason,
                order_id=order_id,
                notes=notes,
                created_by=created_by,
            )
            self.db.commit()
            return movement
        except InventoryError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"记录库存流水失败: {str(e)}")
            raise StoreError(f"记录库存流水失败: {str(e)}") from e

    @staticmethod
    def _ensure_not_pinned(reservation: Optional[CartReservation]) -> None:
        if reservation is not None and reservation.order_id:
            raise ValidationError(f"订单 {reservation.order_id} 待支付，购物车预占已锁定")

    @staticmethod
    def _validate_session(session_id: str) -> None:
        if not session_id or not str(session_id).strip():
            raise ValidationError("session_id 不能为空")
