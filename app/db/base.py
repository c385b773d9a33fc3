from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite 只对 INTEGER PRIMARY KEY 自增，测试环境下降级为 Integer
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def nullable_eq(column, value):
    """可空外键的等值条件：None 时生成 IS NULL"""
    if value is None:
        return column.is_(None)
    return column == value
