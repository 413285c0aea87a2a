"""
Tests for StockLedger.

Covers reservations (reserve, release, consume, lazy expiry), direct
movements, the append-only movement log, and tenant isolation.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from docledger_kernel.exceptions import (
    CrossTenantAccessError,
    EntityNotFoundError,
    InsufficientStockError,
    ReservationNotActiveError,
    ValidationError,
)
from docledger_kernel.models.product import (
    ReservationStatus,
    StockMovementType,
    StockReason,
)


def _position(container, org_id, product_id):
    return container.ledger_selector.stock_position(org_id, product_id)


class TestRegisterProduct:

    def test_opening_stock_is_a_movement(self, container, org_id, product):
        assert product.current_stock == Decimal("10")
        movements = container.ledger_selector.list_stock_movements(org_id, product.id)
        assert len(movements) == 1
        assert movements[0].movement_type == "add"
        assert movements[0].reason_category == "opening_balance"
        assert movements[0].previous_stock == Decimal("0")
        assert movements[0].new_stock == Decimal("10")

    def test_no_opening_stock_no_movement(self, stock, container, org_id):
        product = stock.register_product(org_id, "Service")
        assert product.current_stock == Decimal("0")
        assert container.ledger_selector.list_stock_movements(org_id, product.id) == []

    def test_unlimited_product_carries_no_stock(self, stock, org_id):
        with pytest.raises(ValidationError):
            stock.register_product(org_id, "Download", 5, unlimited_stock=True)

    def test_empty_name_rejected(self, stock, org_id):
        with pytest.raises(ValidationError):
            stock.register_product(org_id, "")


class TestReserve:

    def test_reserve_moves_reserved_not_current(self, stock, container, org_id, product, client):
        reservation = stock.reserve(org_id, product.id, 3, client_id=client.id)

        assert reservation.status == ReservationStatus.ACTIVE
        assert reservation.quantity == Decimal("3")
        position = _position(container, org_id, product.id)
        assert position.current_stock == Decimal("10")
        assert position.reserved_stock == Decimal("3")
        assert position.available_stock == Decimal("7")

    def test_default_expiry_from_ttl(self, stock, org_id, product, deterministic_clock):
        reservation = stock.reserve(org_id, product.id, 1)
        assert reservation.expiration_date == deterministic_clock.today() + timedelta(days=7)

    def test_reserve_up_to_available(self, stock, container, org_id, product):
        stock.reserve(org_id, product.id, 6)
        stock.reserve(org_id, product.id, 4)
        assert _position(container, org_id, product.id).available_stock == Decimal("0")

    def test_reserve_beyond_available_rejected(self, stock, container, org_id, product):
        stock.reserve(org_id, product.id, 8)
        with pytest.raises(InsufficientStockError) as exc_info:
            stock.reserve(org_id, product.id, 3)

        assert exc_info.value.requested == Decimal("3")
        assert exc_info.value.available == Decimal("2")
        assert _position(container, org_id, product.id).reserved_stock == Decimal("8")

    def test_out_of_stock_sale_allows_over_reservation(self, stock, org_id):
        product = stock.register_product(org_id, "Backorder", 1, allow_out_of_stock_sale=True)
        stock.reserve(org_id, product.id, 5)
        assert product.reserved_stock == Decimal("5")

    def test_unlimited_product_keeps_no_reserved_count(self, stock, container, org_id):
        product = stock.register_product(org_id, "Licence", unlimited_stock=True)
        reservation = stock.reserve(org_id, product.id, 100)

        assert reservation.is_active
        position = _position(container, org_id, product.id)
        assert position.reserved_stock == Decimal("0")
        assert position.available_stock is None

    @pytest.mark.parametrize("quantity", [0, "-1"])
    def test_non_positive_quantity_rejected(self, stock, org_id, product, quantity):
        with pytest.raises(ValidationError):
            stock.reserve(org_id, product.id, quantity)

    def test_past_expiry_rejected(self, stock, org_id, product, deterministic_clock):
        with pytest.raises(ValidationError):
            stock.reserve(
                org_id, product.id, 1,
                expiration_date=deterministic_clock.today() - timedelta(days=1),
            )

    def test_unknown_product(self, stock, org_id):
        from uuid import uuid4

        with pytest.raises(EntityNotFoundError):
            stock.reserve(org_id, uuid4(), 1)

    def test_reserved_event_logged(self, stock, org_id, product, captured_logs):
        stock.reserve(org_id, product.id, 2)
        events = [r for r in captured_logs() if r["message"] == "stock_reserved"]
        assert len(events) == 1
        assert events[0]["product_id"] == str(product.id)
        assert events[0]["quantity"] == "2"


class TestReleaseAndConsume:

    def test_release_returns_quantity(self, stock, container, org_id, product):
        reservation = stock.reserve(org_id, product.id, 4)
        released = stock.release_reservation(org_id, reservation.id)

        assert released.status == ReservationStatus.CANCELLED
        assert _position(container, org_id, product.id).reserved_stock == Decimal("0")

    def test_release_twice_is_a_noop(self, stock, container, org_id, product):
        reservation = stock.reserve(org_id, product.id, 4)
        stock.release_reservation(org_id, reservation.id)
        again = stock.release_reservation(org_id, reservation.id, ReservationStatus.EXPIRED)

        assert again.status == ReservationStatus.CANCELLED
        assert _position(container, org_id, product.id).reserved_stock == Decimal("0")

    def test_release_as_consumed_rejected(self, stock, org_id, product):
        reservation = stock.reserve(org_id, product.id, 1)
        with pytest.raises(ValidationError):
            stock.release_reservation(org_id, reservation.id, ReservationStatus.CONSUMED)

    def test_consume_decrements_both_counters(self, stock, container, org_id, product):
        reservation = stock.reserve(org_id, product.id, 3)
        movement = stock.consume_reservation(org_id, reservation.id, "sale")

        assert movement.movement_type == StockMovementType.REMOVE
        assert movement.reason_category == StockReason.SALE
        assert movement.reservation_id == reservation.id
        assert movement.previous_stock == Decimal("10")
        assert movement.new_stock == Decimal("7")
        assert reservation.status == ReservationStatus.CONSUMED
        position = _position(container, org_id, product.id)
        assert position.current_stock == Decimal("7")
        assert position.reserved_stock == Decimal("0")

    def test_consume_twice_rejected(self, stock, org_id, product):
        reservation = stock.reserve(org_id, product.id, 3)
        stock.consume_reservation(org_id, reservation.id)
        with pytest.raises(ReservationNotActiveError) as exc_info:
            stock.consume_reservation(org_id, reservation.id)
        assert exc_info.value.status == "consumed"

    def test_consume_cancelled_rejected(self, stock, org_id, product):
        reservation = stock.reserve(org_id, product.id, 3)
        stock.release_reservation(org_id, reservation.id)
        with pytest.raises(ReservationNotActiveError):
            stock.consume_reservation(org_id, reservation.id)

    def test_consume_unlimited_product_moves_nothing(self, stock, container, org_id):
        product = stock.register_product(org_id, "Licence", unlimited_stock=True)
        reservation = stock.reserve(org_id, product.id, 2)

        assert stock.consume_reservation(org_id, reservation.id) is None
        assert reservation.status == ReservationStatus.CONSUMED
        assert container.ledger_selector.list_stock_movements(org_id, product.id) == []


class TestExpiry:
    """A reservation lives through its expiration day and lapses after it."""

    def test_still_active_on_expiration_day(self, stock, container, org_id, product, deterministic_clock):
        stock.reserve(org_id, product.id, 2, expiration_date=deterministic_clock.today())
        assert stock.sweep_expired(org_id, product.id) == 0
        assert _position(container, org_id, product.id).reserved_stock == Decimal("2")

    def test_next_operation_releases_expired(self, stock, container, org_id, product, deterministic_clock):
        old = stock.reserve(org_id, product.id, 9, expiration_date=deterministic_clock.today())
        deterministic_clock.advance_days(1)

        # Would not fit if the lapsed reservation still counted
        stock.reserve(org_id, product.id, 5)

        assert old.status == ReservationStatus.EXPIRED
        assert _position(container, org_id, product.id).reserved_stock == Decimal("5")

    def test_consume_after_expiry_rejected(self, stock, org_id, product, deterministic_clock):
        reservation = stock.reserve(org_id, product.id, 1, expiration_date=deterministic_clock.today())
        deterministic_clock.advance_days(2)
        with pytest.raises(ReservationNotActiveError) as exc_info:
            stock.consume_reservation(org_id, reservation.id)
        assert exc_info.value.status == "expired"

    def test_sweep_counts_released(self, stock, container, org_id, product, deterministic_clock):
        today = deterministic_clock.today()
        stock.reserve(org_id, product.id, 1, expiration_date=today)
        stock.reserve(org_id, product.id, 2, expiration_date=today)
        stock.reserve(org_id, product.id, 3, expiration_date=today + timedelta(days=5))
        deterministic_clock.advance_days(1)

        assert stock.sweep_expired(org_id, product.id) == 2
        active = container.ledger_selector.list_active_reservations(org_id, product.id)
        assert [r.quantity for r in active] == [Decimal("3")]

    def test_expiry_leaves_counters_consistent(self, stock, org_id, product, deterministic_clock):
        stock.reserve(org_id, product.id, 4, expiration_date=date(2024, 3, 16))
        deterministic_clock.advance_days(3)
        stock.sweep_expired(org_id, product.id)
        assert stock.reconcile_product(org_id, product.id) == []


class TestApplyMovement:

    def test_add_and_remove_chain(self, stock, container, org_id, product):
        stock.apply_movement(org_id, product.id, 5, StockMovementType.ADD, StockReason.PURCHASE_RECEIPT)
        stock.apply_movement(org_id, product.id, 12, StockMovementType.REMOVE, StockReason.MANUAL_ADJUSTMENT)

        movements = container.ledger_selector.list_stock_movements(org_id, product.id)
        assert [m.sequence for m in movements] == [1, 2, 3]
        assert [m.new_stock for m in movements] == [Decimal("10"), Decimal("15"), Decimal("3")]
        for previous, current in zip(movements, movements[1:]):
            assert current.previous_stock == previous.new_stock

    def test_remove_below_zero_rejected(self, stock, container, org_id, product):
        with pytest.raises(InsufficientStockError):
            stock.apply_movement(org_id, product.id, 11, StockMovementType.REMOVE, StockReason.MANUAL_ADJUSTMENT)
        assert _position(container, org_id, product.id).current_stock == Decimal("10")

    def test_remove_cannot_eat_reserved_stock(self, stock, org_id, product):
        stock.reserve(org_id, product.id, 8)
        with pytest.raises(InsufficientStockError) as exc_info:
            stock.apply_movement(org_id, product.id, 3, StockMovementType.REMOVE, StockReason.SALE)
        assert exc_info.value.available == Decimal("2")

    def test_out_of_stock_sale_floor_is_zero(self, stock, org_id):
        product = stock.register_product(org_id, "Backorder", 4, allow_out_of_stock_sale=True)
        stock.reserve(org_id, product.id, 4)
        stock.apply_movement(org_id, product.id, 4, StockMovementType.REMOVE, StockReason.SALE)
        assert product.current_stock == Decimal("0")
        with pytest.raises(InsufficientStockError):
            stock.apply_movement(org_id, product.id, 1, StockMovementType.REMOVE, StockReason.SALE)

    def test_unlimited_product_rejected(self, stock, org_id):
        product = stock.register_product(org_id, "Licence", unlimited_stock=True)
        with pytest.raises(ValidationError):
            stock.apply_movement(org_id, product.id, 1, StockMovementType.ADD, StockReason.MANUAL_ADJUSTMENT)

    def test_reconcile_clean_after_activity(self, stock, org_id, product):
        reservation = stock.reserve(org_id, product.id, 2)
        stock.consume_reservation(org_id, reservation.id)
        stock.apply_movement(org_id, product.id, 3, StockMovementType.ADD, StockReason.CREDIT_NOTE_RETURN)
        stock.reserve(org_id, product.id, 1)
        assert stock.reconcile_product(org_id, product.id) == []


class TestTenantIsolation:

    def test_reserve_other_tenant_product(self, stock, org_id, other_org_id, product):
        with pytest.raises(CrossTenantAccessError):
            stock.reserve(other_org_id, product.id, 1)

    def test_consume_other_tenant_reservation(self, stock, org_id, other_org_id, product):
        reservation = stock.reserve(org_id, product.id, 1)
        with pytest.raises(CrossTenantAccessError):
            stock.consume_reservation(other_org_id, reservation.id)
        assert reservation.is_active

    def test_rejection_is_logged(self, stock, org_id, other_org_id, product, captured_logs):
        with pytest.raises(CrossTenantAccessError):
            stock.apply_movement(other_org_id, product.id, 1, StockMovementType.ADD, StockReason.MANUAL_ADJUSTMENT)
        events = [r for r in captured_logs() if r["message"] == "cross_tenant_access_rejected"]
        assert events and events[0]["entity_type"] == "Product"
