"""库存预警

每次库存流水写入后重新计算该商品（规格）的预警状态：

- out_of_stock：库存为 0
- low_stock：0 < 库存 <= low_stock_threshold
- reorder_point：启用补货点且库存 <= reorder_point

每个 (商品, 规格, 预警类型) 只保留一条记录。运营手动设置的
resolved / ignored 状态只有在库存数值再次变化时才会被重新激活，
预警记录永远不会被删除。
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import InventoryError, NotFoundError
from app.db.base import nullable_eq
from app.models.inventory_alerts import AlertStatus, AlertType, InventoryAlert
from app.models.product import Product
from app.models.product_variation import ProductVariation
from app.services.reservation_store import utcnow

logger = logging.getLogger(__name__)


def evaluate_conditions(stock: int, low_stock_threshold: int, reorder_point: int) -> dict:
    """返回 {预警类型: (是否触发, 阈值)}"""
    return {
        AlertType.OUT_OF_STOCK: (stock == 0, 0),
        AlertType.LOW_STOCK: (0 < stock <= low_stock_threshold, low_stock_threshold),
        AlertType.REORDER_POINT: (
            reorder_point > 0 and stock <= reorder_point,
            reorder_point,
        ),
    }


class AlertService:

    def __init__(self, db: Session):
        self.db = db

    def recompute(self, product_id: int, variation_id: Optional[int] = None) -> List[InventoryAlert]:
        """根据最新库存更新预警，返回当前处于 active 的预警"""
        record = self._load_record(product_id, variation_id)
        stock = record.stock_quantity

        existing = {
            alert.alert_type: alert
            for alert in self.db.execute(
                select(InventoryAlert)
                .where(
                    InventoryAlert.product_id == product_id,
                    nullable_eq(InventoryAlert.variation_id, variation_id),
                )
                .execution_options(populate_existing=True)
            ).scalars().all()
        }

        conditions = evaluate_conditions(stock, record.low_stock_threshold, record.reorder_point)
        for alert_type, (triggered, threshold) in conditions.items():
            alert = existing.get(alert_type)
            if alert is None:
                if triggered:
                    alert = InventoryAlert(
                        product_id=product_id,
                        variation_id=variation_id,
                        alert_type=alert_type,
                        threshold_value=threshold,
                        current_stock=stock,
                        status=AlertStatus.ACTIVE,
                    )
                    self.db.add(alert)
                    existing[alert_type] = alert
                    logger.info(
                        f"新增库存预警: product_id={product_id}, variation_id={variation_id}, "
                        f"type={alert_type.value}, stock={stock}"
                    )
                continue

            stock_changed = alert.current_stock != stock
            alert.current_stock = stock
            alert.threshold_value = threshold
            if triggered and alert.status != AlertStatus.ACTIVE and stock_changed:
                alert.status = AlertStatus.ACTIVE
                alert.resolved_at = None
                logger.info(f"库存变化，重新激活预警: alert_id={alert.id}, type={alert_type.value}")

        self.db.flush()
        return [a for a in existing.values() if a.status == AlertStatus.ACTIVE]

    def recompute_safely(self, product_id: int, variation_id: Optional[int] = None) -> None:
        """在 SAVEPOINT 中重算预警，失败只记录日志，不影响库存流水"""
        try:
            with self.db.begin_nested():
                self.recompute(product_id, variation_id)
        except (SQLAlchemyError, InventoryError) as e:
            logger.warning(
                f"库存预警计算失败（不影响库存变更）: product_id={product_id}, "
                f"variation_id={variation_id}, error={str(e)}"
            )

    def list_active(self, limit: int = 100) -> List[dict]:
        """查询 active 预警，附带商品名称/SKU 与规格信息"""
        stmt = (
            select(InventoryAlert, Product, ProductVariation)
            .join(Product, Product.id == InventoryAlert.product_id)
            .outerjoin(ProductVariation, ProductVariation.id == InventoryAlert.variation_id)
            .where(InventoryAlert.status == AlertStatus.ACTIVE)
            .order_by(InventoryAlert.created_at.desc(), InventoryAlert.id.desc())
            .limit(limit)
        )
        return [
            self._to_dict(alert, product, variation)
            for alert, product, variation in self.db.execute(stmt).all()
        ]

    def resolve(self, alert_id: int) -> InventoryAlert:
        alert = self._get(alert_id)
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = utcnow()
        self.db.commit()
        logger.info(f"预警已处理: alert_id={alert_id}")
        return alert

    def ignore(self, alert_id: int) -> InventoryAlert:
        alert = self._get(alert_id)
        alert.status = AlertStatus.IGNORED
        self.db.commit()
        logger.info(f"预警已忽略: alert_id={alert_id}")
        return alert

    def _get(self, alert_id: int) -> InventoryAlert:
        alert = self.db.execute(
            select(InventoryAlert).where(InventoryAlert.id == alert_id)
        ).scalar_one_or_none()
        if alert is None:
            raise NotFoundError(f"预警不存在: alert_id={alert_id}")
        return alert

    def _load_record(self, product_id, variation_id):
        model = ProductVariation if variation_id is not None else Product
        record_id = variation_id if variation_id is not None else product_id
        record = self.db.execute(
            select(model)
            .where(model.id == record_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            raise NotFoundError(
                f"库存记录不存在: product_id={product_id}, variation_id={variation_id}"
            )
        return record

    @staticmethod
    def _to_dict(alert, product, variation) -> dict:
        return {
            "id": alert.id,
            "product_id": alert.product_id,
            "variation_id": alert.variation_id,
            "alert_type": alert.alert_type.value,
            "threshold_value": alert.threshold_value,
            "current_stock": alert.current_stock,
            "status": alert.status.value,
            "created_at": alert.created_at,
            "updated_at": alert.updated_at,
            "product_name": product.name,
            "product_sku": product.sku,
            "variation_type": variation.variation_type if variation else None,
            "variation_value": variation.variation_value if variation else None,
        }
