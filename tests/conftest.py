"""测试配置和 fixtures"""
import pytest
from unittest.mock import Mock
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from redis import Redis

from app.db.base import Base
import app.models  # noqa: F401  注册模型
from app.models.product import Product
from app.models.product_variation import ProductVariation


def make_sqlite_engine(url="sqlite://", begin="BEGIN", **kwargs):
    """创建 SQLite 引擎，手动发出 BEGIN 让 SAVEPOINT 正常工作"""
    engine = create_engine(url, echo=False, **kwargs)

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql(begin)

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def sqlite_engine_factory():
    return make_sqlite_engine


@pytest.fixture
def db_engine():
    engine = make_sqlite_engine(
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """内存数据库会话"""
    SessionLocal = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def mock_redis():
    """创建模拟 Redis 客户端"""
    redis_mock = Mock(spec=Redis)
    redis_mock.ping.return_value = True
    return redis_mock


@pytest.fixture
def mock_lock():
    """创建模拟清理锁"""
    lock_mock = Mock()
    lock_mock.acquire.return_value = True
    lock_mock.release.return_value = None
    return lock_mock


@pytest.fixture
def make_product(db_session):
    """创建商品的工厂函数"""
    def _make(stock=10, low_stock_threshold=2, reorder_point=0, active=True, sku=None, name="测试商品"):
        product = Product(
            sku=sku,
            name=name,
            stock_quantity=stock,
            low_stock_threshold=low_stock_threshold,
            reorder_point=reorder_point,
            active=active,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture
def make_variation(db_session):
    """创建商品规格的工厂函数"""
    def _make(product, stock=5, variation_type="size", variation_value="M", active=True,
              low_stock_threshold=1, reorder_point=0):
        variation = ProductVariation(
            product_id=product.id,
            variation_type=variation_type,
            variation_value=variation_value,
            stock_quantity=stock,
            low_stock_threshold=low_stock_threshold,
            reorder_point=reorder_point,
            active=active,
        )
        db_session.add(variation)
        db_session.commit()
        return variation
    return _make
