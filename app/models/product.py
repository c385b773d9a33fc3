from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    TIMESTAMP,
    CheckConstraint,
    Index,
    func,
    true,
)
from app.db.base import Base, BigIntPK


class Product(Base):
    __tablename__ = "products"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    sku = Column(
        String(64),
        nullable=True,
        unique=True,
        comment="商品唯一SKU",
    )

    name = Column(
        String(255),
        nullable=False,
        comment="商品名称",
    )

    # 只允许通过库存流水修改，禁止业务代码直接写入
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
        comment="是否上架（下架即软删除）",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "stock_quantity >= 0",
            name="ck_products_stock_non_negative",
        ),
    )


Index(
    "idx_products_name",
    Product.name,
)
