from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    Boolean,
    ForeignKey,
    TIMESTAMP,
    CheckConstraint,
    func,
    true,
)
from app.db.base import Base, BigIntPK


class ProductVariation(Base):
    """商品规格（尺码、颜色等），库存独立于主商品记录"""
    __tablename__ = "product_variations"

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
        comment="所属商品ID",
    )

    variation_type = Column(
        String(50),
        nullable=False,
        comment="规格类型，如 size / color",
    )

    variation_value = Column(
        String(100),
        nullable=False,
        comment="规格值，如 M / 蓝色",
    )

    stock_quantity = Column(
        Integer,
        nullable=False,
        server_default="0",
        comment="当前可售库存（已扣除购物车预占）",
    )

    low_stock_threshold = Column(
        Integer,
        nullable=False,
        server_default="5",
        comment="低库存预警阈值",
    )

    reorder_point = Column(
        Integer,
        nullable=False,
        server_default="0",
        comment="补货点，0 表示不启用",
    )

    active = Column(
        Boolean,
        nullable=False,
        server_default=true(),
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "stock_quantity >= 0",
            name="ck_variations_stock_non_negative",
        ),
    )
