import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    Text,
    TIMESTAMP,
    Enum,
    Index,
    ForeignKey,
    CheckConstraint,
    func,
)
from app.db.base import Base, BigIntPK


# 1️ 库存变更类型（数据库 ENUM）

class MovementType(str, enum.Enum):
    IN = "in"                  # 入库
    OUT = "out"                # 出库（订单确认扣减）
    ADJUSTMENT = "adjustment"  # 人工盘点，直接设置为目标值
    RESERVED = "reserved"      # 购物车预占
    RELEASED = "released"      # 释放预占

    @property
    def sign(self):
        """+1 增加库存，-1 扣减库存，None 表示直接设置"""
        if self in (MovementType.IN, MovementType.RELEASED):
            return 1
        if self in (MovementType.OUT, MovementType.RESERVED):
            return -1
        return None


# 2️ 库存流水表（只追加，不更新、不删除）

class StockMovement(Base):
    __tablename__ = "stock_movements"

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
        comment="商品ID",
    )

    variation_id = Column(
        BigInteger,
        ForeignKey("product_variations.id", ondelete="RESTRICT"),
        nullable=True,
        comment="规格ID（为空表示商品本身）",
    )

    movement_type = Column(
        Enum(
            MovementType,
            name="stock_movement_type",
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        comment="库存变更类型",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="变更数量（adjustment 为目标库存）",
    )

    previous_stock = Column(
        Integer,
        nullable=False,
        comment="变更前可售库存",
    )

    new_stock = Column(
        Integer,
        nullable=False,
        comment="变更后可售库存",
    )

    reason = Column(
        String(255),
        nullable=True,
    )

    order_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="订单ID（可能为空，例如购物车预占、人工调整）",
    )

    reference_id = Column(
        String(128),
        nullable=True,
        index=True,
        comment="关联标识：cart_{session} / cart_release_{session} / order_{order}",
    )

    notes = Column(
        Text,
        nullable=True,
    )

    created_by = Column(
        String(64),
        nullable=True,
        comment="操作人/服务名",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "quantity >= 0",
            name="ck_stock_movements_quantity_non_negative",
        ),
        CheckConstraint(
            "new_stock >= 0",
            name="ck_stock_movements_new_stock_non_negative",
        ),
    )


# 3️ 组合索引（按商品查最近流水）

Index(
    "idx_stock_movements_product_created_desc",
    StockMovement.product_id,
    StockMovement.created_at.desc(),
)
