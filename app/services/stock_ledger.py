"""库存台账

商品（或规格）上的 stock_quantity 是唯一的可售库存来源，stock_movements
是只追加的审计流水。所有库存变更都必须经过 apply_movement：

- in / released：库存增加
- out / reserved：库存扣减，使用条件更新
  ``UPDATE ... SET stock = stock - q WHERE stock >= q``，
  检查与扣减在数据库中一步完成，并发预占不会超卖
- adjustment：盘点，直接设置为目标库存

本类不负责提交事务，由调用方（ReservationCoordinator）统一 commit / rollback。
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.exceptions import InsufficientStockError, NotFoundError, ValidationError
from app.models.product import Product
from app.models.product_variation import ProductVariation
from app.models.stock_movements import MovementType, StockMovement

logger = logging.getLogger(__name__)


class StockLedger:
    """库存台账服务"""

    def __init__(self, db: Session, alerts=None):
        self.db = db
        self.alerts = alerts

    def get_stock_record(
        self,
        product_id: int,
        variation_id: Optional[int] = None,
        for_update: bool = False,
    ) -> Tuple[Product, Optional[ProductVariation]]:
        """加载商品及规格记录，不存在时抛 NotFoundError"""
        product = self._load(Product, product_id, for_update and variation_id is None)
        if product is None:
            raise NotFoundError(f"商品不存在: product_id={product_id}")

        variation = None
        if variation_id is not None:
            variation = self._load(ProductVariation, variation_id, for_update)
            if variation is None or variation.product_id != product.id:
                raise NotFoundError(
                    f"商品规格不存在: product_id={product_id}, variation_id={variation_id}"
                )
        return product, variation

    def current_stock(self, product_id: int, variation_id: Optional[int] = None) -> int:
        """查询当前可售库存（每次都直接读库，不走缓存）

        规格库存只在规格属于该商品时返回，否则视为不存在。
        """
        if variation_id is not None:
            stock = self.db.execute(
                select(ProductVariation.stock_quantity).where(
                    ProductVariation.id == variation_id,
                    ProductVariation.product_id == product_id,
                )
            ).scalar_one_or_none()
        else:
            stock = self._read_stock(Product, product_id)
        if stock is None:
            raise NotFoundError(
                f"库存记录不存在: product_id={product_id}, variation_id={variation_id}"
            )
        return stock

    def apply_movement(
        self,
        product_id: int,
        movement_type,
        quantity: int,
        variation_id: Optional[int] = None,
        reason: Optional[str] = None,
        order_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> StockMovement:
        """写入一条库存流水并同步更新可售库存

        Raises:
            ValidationError: 变更类型未知或数量不合法
            NotFoundError: 商品/规格不存在
            InsufficientStockError: 扣减后库存会小于 0
        """
        try:
            movement_type = MovementType(movement_type)
        except ValueError:
            raise ValidationError(f"未知的库存变更类型: {movement_type}") from None

        if not isinstance(quantity, int) or isinstance(quantity, bool):
            raise ValidationError("库存变更数量必须为整数")
        if movement_type is MovementType.ADJUSTMENT:
            if quantity < 0:
                raise ValidationError("盘点后的库存不能为负数")
        elif quantity <= 0:
            raise ValidationError("库存变更数量必须大于 0")

        self.get_stock_record(product_id, variation_id)
        model, record_id = self._target(product_id, variation_id)

        if movement_type.sign is None:
            previous_stock, new_stock = self._set_stock(model, record_id, quantity)
        else:
            previous_stock, new_stock = self._shift_stock(
                model, record_id, movement_type.sign * quantity
            )

        movement = StockMovement(
            product_id=product_id,
            variation_id=variation_id,
            movement_type=movement_type,
            quantity=quantity,
            previous_stock=previous_stock,
            new_stock=new_stock,
            reason=reason,
            order_id=order_id,
            reference_id=reference_id,
            notes=notes,
            created_by=created_by,
        )
        self.db.add(movement)
        self.db.flush()

        logger.info(
            f"库存流水: product_id={product_id}, variation_id={variation_id}, "
            f"type={movement_type.value}, quantity={quantity}, {previous_stock} -> {new_stock}"
        )

        if self.alerts is not None:
            self.alerts.recompute_safely(product_id, variation_id)

        return movement

    def list_movements(
        self,
        product_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[StockMovement]:
        """最近的库存流水，按时间倒序"""
        stmt = select(StockMovement).order_by(
            StockMovement.created_at.desc(), StockMovement.id.desc()
        )
        if product_id is not None:
            stmt = stmt.where(StockMovement.product_id == product_id)
        return list(self.db.execute(stmt.limit(limit)).scalars().all())

    # ==================== 内部方法 ====================

    @staticmethod
    def _target(product_id, variation_id):
        if variation_id is not None:
            return ProductVariation, variation_id
        return Product, product_id

    def _load(self, model, record_id, for_update=False):
        stmt = (
            select(model)
            .where(model.id == record_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def _read_stock(self, model, record_id) -> Optional[int]:
        return self.db.execute(
            select(model.stock_quantity).where(model.id == record_id)
        ).scalar_one_or_none()

    def _shift_stock(self, model, record_id, delta: int) -> Tuple[int, int]:
        stmt = (
            update(model)
            .where(model.id == record_id)
            .values(stock_quantity=model.stock_quantity + delta)
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            # 条件扣减：库存不足时影响行数为 0
            stmt = stmt.where(model.stock_quantity >= -delta)

        result = self.db.execute(stmt)
        if result.rowcount == 0:
            available = self._read_stock(model, record_id) or 0
            raise InsufficientStockError(
                f"库存不足，可售 {available}，请求 {-delta}",
                available=available,
                requested=-delta,
            )

        # 当前事务已持有该行的写锁，读到的就是本次更新后的值
        new_stock = self._read_stock(model, record_id)
        return new_stock - delta, new_stock

    def _set_stock(self, model, record_id, target: int) -> Tuple[int, int]:
        record = self._load(model, record_id, for_update=True)
        previous_stock = record.stock_quantity
        self.db.execute(
            update(model)
            .where(model.id == record_id)
            .values(stock_quantity=target)
            .execution_options(synchronize_session=False)
        )
        return previous_stock, target
