"""预占协调服务单元测试"""
import pytest
from datetime import timedelta
from unittest.mock import patch
from sqlalchemy import select

from app.core.exceptions import (
    InactiveError,
    InsufficientStockError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from app.models.cart_reservations import CartReservation
from app.models.stock_movements import MovementType, StockMovement
from app.services.reservation_coordinator import CommitTrigger, ReservationCoordinator
from app.services.reservation_store import utcnow


def naive(dt):
    return dt.replace(tzinfo=None)


def reservations_for(db, session_id):
    return db.execute(
        select(CartReservation).where(CartReservation.session_id == session_id)
    ).scalars().all()


def movements(db, movement_type=None):
    stmt = select(StockMovement).order_by(StockMovement.id)
    if movement_type is not None:
        stmt = stmt.where(StockMovement.movement_type == movement_type)
    return db.execute(stmt).scalars().all()


def expire(db, session_id, minutes=1):
    for reservation in reservations_for(db, session_id):
        reservation.expires_at = utcnow() - timedelta(minutes=minutes)
    db.commit()


class TestReserve:

    def test_reserve_success(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)

        reservation = service.reserve("s1", product.id, 4)

        rows = reservations_for(db_session, "s1")
        assert len(rows) == 1
        assert rows[0].quantity == 4
        ttl = naive(rows[0].expires_at) - naive(utcnow())
        assert timedelta(minutes=29) < ttl <= timedelta(minutes=30)
        assert reservation.id == rows[0].id
        assert service.ledger.current_stock(product.id) == 6

        [movement] = movements(db_session)
        assert movement.movement_type == MovementType.RESERVED
        assert movement.quantity == 4
        assert movement.reference_id == "cart_s1"
        assert (movement.previous_stock, movement.new_stock) == (10, 6)

    def test_repeated_reserve_replaces_quantity(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)

        service.reserve("s1", product.id, 2)
        service.reserve("s1", product.id, 5)

        rows = reservations_for(db_session, "s1")
        assert len(rows) == 1
        assert rows[0].quantity == 5
        assert service.ledger.current_stock(product.id) == 5

        reserved = movements(db_session, MovementType.RESERVED)
        assert [m.quantity for m in reserved] == [2, 3]

    def test_reserve_smaller_quantity_returns_difference(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)

        service.reserve("s1", product.id, 6)
        service.reserve("s1", product.id, 2)

        assert reservations_for(db_session, "s1")[0].quantity == 2
        assert service.ledger.current_stock(product.id) == 8
        released = movements(db_session, MovementType.RELEASED)
        assert [(m.quantity, m.reference_id) for m in released] == [(4, "cart_release_s1")]

    def test_reserve_same_quantity_only_refreshes_expiry(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 3)
        expire(db_session, "s1", minutes=-5)  # 剩余 5 分钟

        service.reserve("s1", product.id, 3)

        row = reservations_for(db_session, "s1")[0]
        assert naive(row.expires_at) - naive(utcnow()) > timedelta(minutes=29)
        assert len(movements(db_session)) == 1
        assert service.ledger.current_stock(product.id) == 7

    def test_increase_counts_own_hold_as_available(self, db_session, make_product):
        product = make_product(stock=5)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 3)

        service.reserve("s1", product.id, 5)

        assert service.ledger.current_stock(product.id) == 0
        with pytest.raises(InsufficientStockError) as exc_info:
            service.reserve("s1", product.id, 6)
        assert exc_info.value.available == 5
        assert reservations_for(db_session, "s1")[0].quantity == 5

    def test_insufficient_stock_writes_nothing(self, db_session, make_product):
        product = make_product(stock=3)
        service = ReservationCoordinator(db_session)

        with pytest.raises(InsufficientStockError):
            service.reserve("s1", product.id, 4)

        assert reservations_for(db_session, "s1") == []
        assert movements(db_session) == []
        assert service.ledger.current_stock(product.id) == 3

    def test_reserve_unknown_product(self, db_session):
        service = ReservationCoordinator(db_session)
        with pytest.raises(NotFoundError):
            service.reserve("s1", 404, 1)

    def test_reserve_inactive_product(self, db_session, make_product):
        product = make_product(active=False)
        service = ReservationCoordinator(db_session)
        with pytest.raises(InactiveError):
            service.reserve("s1", product.id, 1)
        assert movements(db_session) == []

    def test_reserve_inactive_variation(self, db_session, make_product, make_variation):
        product = make_product()
        variation = make_variation(product, active=False)
        service = ReservationCoordinator(db_session)
        with pytest.raises(InactiveError):
            service.reserve("s1", product.id, 1, variation_id=variation.id)

    @pytest.mark.parametrize("quantity", [0, -2, True])
    def test_reserve_invalid_quantity(self, db_session, make_product, quantity):
        product = make_product()
        service = ReservationCoordinator(db_session)
        with pytest.raises(ValidationError):
            service.reserve("s1", product.id, quantity)

    def test_reserve_requires_session(self, db_session, make_product):
        product = make_product()
        service = ReservationCoordinator(db_session)
        with pytest.raises(ValidationError):
            service.reserve("  ", product.id, 1)

    def test_variation_reservations_are_separate_keys(self, db_session, make_product, make_variation):
        product = make_product(stock=10)
        small = make_variation(product, stock=4, variation_value="P")
        large = make_variation(product, stock=4, variation_value="G")
        service = ReservationCoordinator(db_session)

        service.reserve("s1", product.id, 2, variation_id=small.id)
        service.reserve("s1", product.id, 3, variation_id=large.id)

        assert len(reservations_for(db_session, "s1")) == 2
        assert service.ledger.current_stock(product.id, small.id) == 2
        assert service.ledger.current_stock(product.id, large.id) == 1
        assert service.ledger.current_stock(product.id) == 10

    def test_store_failure_is_typed(self, db_session, make_product):
        from sqlalchemy.exc import OperationalError

        product = make_product()
        service = ReservationCoordinator(db_session)
        with patch.object(service.reservations, "get", side_effect=OperationalError("SELECT", {}, Exception("连接断开"))):
            with pytest.raises(StoreError):
                service.reserve("s1", product.id, 1)


class TestRelease:

    def test_reserve_then_release_restores_stock(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 4)

        assert service.release("s1", product.id) is True

        assert reservations_for(db_session, "s1") == []
        assert service.ledger.current_stock(product.id) == 10
        released = movements(db_session, MovementType.RELEASED)
        assert [(m.quantity, m.reference_id) for m in released] == [(4, "cart_release_s1")]

    def test_release_missing_key_is_noop(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)

        assert service.release("s1", product.id) is False
        assert movements(db_session) == []

    def test_release_twice(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 2)

        assert service.release("s1", product.id) is True
        assert service.release("s1", product.id) is False
        assert service.ledger.current_stock(product.id) == 10

    def test_release_only_matching_variation(self, db_session, make_product, make_variation):
        product = make_product(stock=10)
        variation = make_variation(product, stock=5)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 1)
        service.reserve("s1", product.id, 2, variation_id=variation.id)

        service.release("s1", product.id, variation_id=variation.id)

        [remaining] = reservations_for(db_session, "s1")
        assert remaining.variation_id is None
        assert service.ledger.current_stock(product.id, variation.id) == 5
        assert service.ledger.current_stock(product.id) == 9


class TestScenarios:

    def test_two_sessions_competing(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)

        service.reserve("s1", product.id, 4)
        assert service.ledger.current_stock(product.id) == 6

        with pytest.raises(InsufficientStockError):
            service.reserve("s2", product.id, 7)
        assert service.ledger.current_stock(product.id) == 6

        service.release("s1", product.id)
        assert service.ledger.current_stock(product.id) == 10

        service.reserve("s2", product.id, 7)
        assert service.ledger.current_stock(product.id) == 3

    def test_same_key_replaced(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)

        service.reserve("s1", product.id, 2)
        service.reserve("s1", product.id, 5)

        rows = reservations_for(db_session, "s1")
        assert [r.quantity for r in rows] == [5]
        assert service.ledger.current_stock(product.id) == 5


class TestProcessOrder:

    def test_process_order_commits_every_line(self, db_session, make_product):
        shirt = make_product(stock=10, name="T恤")
        cap = make_product(stock=5, name="帽子")
        service = ReservationCoordinator(db_session)
        service.reserve("s1", shirt.id, 2)
        service.reserve("s1", cap.id, 1)
        service.reserve("s2", cap.id, 1)

        result = service.process_order("s1", "ORDER001")

        assert result["failed_items"] == []
        assert len(result["processed_items"]) == 2
        assert result["cleared_reservations"] == 2
        assert reservations_for(db_session, "s1") == []
        assert len(reservations_for(db_session, "s2")) == 1
        # 预占时已扣减，确认后库存不再变化
        assert service.ledger.current_stock(shirt.id) == 8
        assert service.ledger.current_stock(cap.id) == 3

        out = movements(db_session, MovementType.OUT)
        assert sorted(m.quantity for m in out) == [1, 2]
        assert all(m.order_id == "ORDER001" for m in out)
        assert all(m.reference_id == "order_ORDER001" for m in out)

    def test_process_order_partial_failure_still_clears(self, db_session, make_product):
        shirt = make_product(stock=10, name="T恤")
        cap = make_product(stock=5, name="帽子")
        service = ReservationCoordinator(db_session)
        service.reserve("s1", shirt.id, 2)
        service.reserve("s1", cap.id, 1)

        original = service.ledger.apply_movement

        def flaky(product_id, movement_type, quantity, **kwargs):
            if product_id == cap.id and movement_type == MovementType.OUT:
                raise StoreError("写入失败")
            return original(product_id, movement_type, quantity, **kwargs)

        with patch.object(service.ledger, "apply_movement", side_effect=flaky):
            result = service.process_order("s1", "ORDER002")

        assert [item["product_id"] for item in result["processed_items"]] == [shirt.id]
        assert len(result["failed_items"]) == 1
        assert result["failed_items"][0]["product_id"] == cap.id
        assert "写入失败" in result["failed_items"][0]["error"]
        assert reservations_for(db_session, "s1") == []
        # 失败行的 released 也被回滚，预占时扣掉的库存保持扣减状态
        assert service.ledger.current_stock(cap.id) == 4
        assert [m.product_id for m in movements(db_session, MovementType.OUT)] == [shirt.id]

    def test_process_order_without_reservations(self, db_session):
        service = ReservationCoordinator(db_session)
        result = service.process_order("empty", "ORDER003")
        assert result["processed_items"] == []
        assert result["cleared_reservations"] == 0

    def test_process_order_requires_order_id(self, db_session):
        service = ReservationCoordinator(db_session)
        with pytest.raises(ValidationError):
            service.process_order("s1", "")

    def test_commit_order_respects_trigger(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session, commit_trigger="payment_confirmed")
        service.reserve("s1", product.id, 2)

        assert service.commit_order(CommitTrigger.ORDER_SUBMITTED, "s1", "ORDER004") is None
        assert len(reservations_for(db_session, "s1")) == 1

        result = service.commit_order(CommitTrigger.PAYMENT_CONFIRMED, "s1", "ORDER004")
        assert result["cleared_reservations"] == 1
        assert reservations_for(db_session, "s1") == []

    def test_process_order_skips_row_released_meanwhile(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 3)

        original = service.reservations.list_for_session

        def list_then_release(session_id):
            rows = original(session_id)
            # 读取之后被其他请求删除并归还库存
            for row in rows:
                service.reservations.delete_by_id(row.id)
                service.ledger.apply_movement(product.id, MovementType.RELEASED, row.quantity)
            return rows

        with patch.object(service.reservations, "list_for_session", side_effect=list_then_release):
            result = service.process_order("s1", "ORDER005")

        assert result["processed_items"] == []
        assert result["failed_items"][0]["quantity"] == 3
        assert result["cleared_reservations"] == 0
        assert service.ledger.current_stock(product.id) == 10
        assert movements(db_session, MovementType.OUT) == []


class TestPaymentHold:

    def make_service(self, db_session):
        return ReservationCoordinator(db_session, commit_trigger="payment_confirmed", payment_hold_minutes=60)

    def test_order_submitted_pins_reservations(self, db_session, make_product):
        product = make_product(stock=10)
        service = self.make_service(db_session)
        service.reserve("s1", product.id, 3)

        assert service.commit_order(CommitTrigger.ORDER_SUBMITTED, "s1", "ORDER006") is None

        [row] = reservations_for(db_session, "s1")
        assert row.order_id == "ORDER006"
        hold = naive(row.expires_at) - naive(utcnow())
        assert timedelta(minutes=59) < hold <= timedelta(minutes=60)
        assert service.ledger.current_stock(product.id) == 7

    def test_submit_sweep_then_paid(self, db_session, make_product):
        product = make_product(stock=10)
        service = self.make_service(db_session)
        service.reserve("s1", product.id, 3)
        service.commit_order(CommitTrigger.ORDER_SUBMITTED, "s1", "ORDER007")

        # 普通购物车过期时间已过，待支付预占不受影响
        with patch("app.services.reservation_coordinator.utcnow", return_value=utcnow() + timedelta(minutes=31)):
            assert service.cleanup_expired() == 0

        result = service.commit_order(CommitTrigger.PAYMENT_CONFIRMED, "s1", "ORDER007")

        assert [item["quantity"] for item in result["processed_items"]] == [3]
        assert reservations_for(db_session, "s1") == []
        assert service.ledger.current_stock(product.id) == 7
        [out] = movements(db_session, MovementType.OUT)
        assert (out.quantity, out.order_id) == (3, "ORDER007")

    def test_unpaid_order_released_after_payment_window(self, db_session, make_product):
        product = make_product(stock=10)
        service = self.make_service(db_session)
        service.reserve("s1", product.id, 3)
        service.commit_order(CommitTrigger.ORDER_SUBMITTED, "s1", "ORDER008")

        with patch("app.services.reservation_coordinator.utcnow", return_value=utcnow() + timedelta(minutes=61)):
            assert service.cleanup_expired() == 1

        assert service.ledger.current_stock(product.id) == 10

    def test_pinned_cart_cannot_change(self, db_session, make_product):
        product = make_product(stock=10)
        service = self.make_service(db_session)
        service.reserve("s1", product.id, 3)
        service.commit_order(CommitTrigger.ORDER_SUBMITTED, "s1", "ORDER009")

        with pytest.raises(ValidationError):
            service.reserve("s1", product.id, 5)
        with pytest.raises(ValidationError):
            service.release("s1", product.id)
        assert service.ledger.current_stock(product.id) == 7

    def test_order_submitted_mode_does_not_pin(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 3)

        assert service.commit_order(CommitTrigger.PAYMENT_CONFIRMED, "s1", "ORDER010") is None

        [row] = reservations_for(db_session, "s1")
        assert row.order_id is None


class TestCleanupExpired:

    def test_cleanup_only_expired(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        service.reserve("old", product.id, 3)
        service.reserve("fresh", product.id, 2)
        expire(db_session, "old")

        cleaned = service.cleanup_expired()

        assert cleaned == 1
        assert reservations_for(db_session, "old") == []
        assert len(reservations_for(db_session, "fresh")) == 1
        assert service.ledger.current_stock(product.id) == 8
        released = movements(db_session, MovementType.RELEASED)
        assert [(m.quantity, m.reference_id, m.created_by) for m in released] == [
            (3, "cart_release_old", "system_cleanup")
        ]

    def test_cleanup_nothing_expired(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 1)

        assert service.cleanup_expired() == 0
        assert service.ledger.current_stock(product.id) == 9

    def test_cleanup_in_small_batches(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        for i in range(5):
            service.reserve(f"s{i}", product.id, 1)
            expire(db_session, f"s{i}")

        assert service.cleanup_expired(batch_size=2) == 5
        assert service.ledger.current_stock(product.id) == 10
        assert db_session.execute(select(CartReservation)).scalars().all() == []

    def test_cleanup_skips_rows_already_gone(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 2)
        expire(db_session, "s1")

        original = service.reservations.list_expired

        def list_then_release(*args, **kwargs):
            rows = original(*args, **kwargs)
            # 查询之后被其他请求删除
            for row in rows:
                service.reservations.delete_by_id(row.id)
            return rows

        with patch.object(service.reservations, "list_expired", side_effect=list_then_release):
            cleaned = service.cleanup_expired()

        assert cleaned == 0
        assert movements(db_session, MovementType.RELEASED) == []

    def test_cleanup_continues_after_row_failure(self, db_session, make_product):
        broken = make_product(stock=10, name="坏数据")
        healthy = make_product(stock=10, name="正常")
        service = ReservationCoordinator(db_session)
        service.reserve("s1", broken.id, 1)
        service.reserve("s2", healthy.id, 1)
        expire(db_session, "s1")
        expire(db_session, "s2")

        original = service.ledger.apply_movement

        def flaky(product_id, movement_type, quantity, **kwargs):
            if product_id == broken.id:
                raise StoreError("写入失败")
            return original(product_id, movement_type, quantity, **kwargs)

        with patch.object(service.ledger, "apply_movement", side_effect=flaky):
            cleaned = service.cleanup_expired()

        assert cleaned == 1
        assert len(reservations_for(db_session, "s1")) == 1
        assert reservations_for(db_session, "s2") == []

    def test_cleanup_skipped_when_lock_held(self, db_session, make_product, mock_lock):
        product = make_product(stock=10)
        mock_lock.acquire.return_value = False
        service = ReservationCoordinator(db_session, lock=mock_lock)
        service.reserve("s1", product.id, 1)
        expire(db_session, "s1")

        assert service.cleanup_expired() == 0
        assert len(reservations_for(db_session, "s1")) == 1
        mock_lock.release.assert_not_called()

    def test_cleanup_releases_lock(self, db_session, mock_lock):
        service = ReservationCoordinator(db_session, lock=mock_lock)
        service.cleanup_expired()
        mock_lock.acquire.assert_called_once()
        mock_lock.release.assert_called_once()

    def test_cleanup_runs_without_redis(self, db_session, make_product, mock_lock):
        from redis.exceptions import ConnectionError

        product = make_product(stock=10)
        mock_lock.acquire.side_effect = ConnectionError("Redis 不可用")
        service = ReservationCoordinator(db_session, lock=mock_lock)
        service.reserve("s1", product.id, 1)
        expire(db_session, "s1")

        assert service.cleanup_expired() == 1
        mock_lock.release.assert_not_called()

    def test_count_expired(self, db_session, make_product):
        product = make_product(stock=10)
        service = ReservationCoordinator(db_session)
        service.reserve("s1", product.id, 1)
        service.reserve("s2", product.id, 1)
        expire(db_session, "s1")
        assert service.count_expired() == 1


class TestRecordMovement:

    def test_record_movement(self, db_session, make_product):
        product = make_product(stock=1)
        service = ReservationCoordinator(db_session)

        movement = service.record_movement(
            product.id, "in", 9, reason="采购入库", notes="供应商 A", created_by="admin"
        )

        assert movement.id is not None
        assert movement.notes == "供应商 A"
        assert service.ledger.current_stock(product.id) == 10

    def test_record_movement_rolls_back_on_error(self, db_session, make_product):
        product = make_product(stock=1)
        service = ReservationCoordinator(db_session)
        with pytest.raises(InsufficientStockError):
            service.record_movement(product.id, "out", 2)
        assert movements(db_session) == []
