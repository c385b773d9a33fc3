import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    TIMESTAMP,
    Enum,
    Index,
    ForeignKey,
    func,
)
from app.db.base import Base, BigIntPK


class AlertType(str, enum.Enum):
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    REORDER_POINT = "reorder_point"


class AlertStatus(str, enum.Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"  # 运营手动处理
    IGNORED = "ignored"    # 运营手动忽略


class InventoryAlert(Base):
    __tablename__ = "inventory_alerts"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    product_id = Column(
        BigInteger,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    variation_id = Column(
        BigInteger,
        ForeignKey("product_variations.id", ondelete="RESTRICT"),
        nullable=True,
    )

    alert_type = Column(
        Enum(
            AlertType,
            name="inventory_alert_type",
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
    )

    threshold_value = Column(
        Integer,
        nullable=True,
        comment="触发时的阈值",
    )

    current_stock = Column(
        Integer,
        nullable=False,
        comment="最近一次计算时的库存",
    )

    status = Column(
        Enum(
            AlertStatus,
            name="inventory_alert_status",
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=AlertStatus.ACTIVE,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    resolved_at = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )


Index(
    "uq_inventory_alerts_key",
    InventoryAlert.product_id,
    InventoryAlert.variation_id,
    InventoryAlert.alert_type,
    unique=True,
    postgresql_nulls_not_distinct=True,
)

Index(
    "idx_inventory_alerts_status_created",
    InventoryAlert.status,
    InventoryAlert.created_at.desc(),
)
