from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    Index,
    ForeignKey,
    CheckConstraint,
    func,
)
from app.db.base import Base, BigIntPK


class CartReservation(Base):
    """购物车预占：每个 (session_id, product_id, variation_id) 最多一条"""
    __tablename__ = "cart_reservations"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    session_id = Column(
        String(128),
        nullable=False,
        index=True,
        comment="浏览器购物车会话ID",
    )

    product_id = Column(
        BigInteger,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        comment="商品ID",
    )

    variation_id = Column(
        BigInteger,
        ForeignKey("product_variations.id", ondelete="RESTRICT"),
        nullable=True,
        comment="规格ID",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="预占数量",
    )

    expires_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        index=True,
        comment="预占过期时间",
    )

    # 等待支付确认时记录订单号，过期时间同时顺延到支付窗口结束
    order_id = Column(
        String(64),
        nullable=True,
        comment="待支付订单ID",
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

    __table_args__ = (
        CheckConstraint(
            "quantity > 0",
            name="ck_cart_reservations_quantity_positive",
        ),
    )


# 同一会话同一商品规格只能有一条预占记录（variation_id 为空也视为相同）
Index(
    "uq_cart_reservations_key",
    CartReservation.session_id,
    CartReservation.product_id,
    CartReservation.variation_id,
    unique=True,
    postgresql_nulls_not_distinct=True,
)
