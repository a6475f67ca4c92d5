import pytest

from retailpos.errors import (
    InsufficientStockError,
    NotFoundError,
    StockConflictError,
    ValidationError,
)
from retailpos.models import StockMovement
from retailpos.services import inventory_service, ledger_service
from retailpos.services.concurrency import run_with_retry

ACTOR_ID = 7


def _movements(db_session, product_id):
    return (
        db_session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id)
        .all()
    )


class TestConditionalStockUpdate:

    def test_matching_expected_value_writes(self, db_session, store, product):
        inventory_service.update_product_stock(
            product.id, store.id, "venta", expected_before=5, new_value=9
        )
        db_session.commit()
        assert inventory_service.get_product(product.id, store.id).stock_venta == 9

    def test_stale_expected_value_conflicts(self, db_session, store, product):
        with pytest.raises(StockConflictError) as exc_info:
            inventory_service.update_product_stock(
                product.id, store.id, "venta", expected_before=4, new_value=9
            )
        db_session.rollback()
        assert exc_info.value.details["expected_before"] == 4
        assert inventory_service.get_product(product.id, store.id).stock_venta == 5

    def test_version_is_bumped(self, db_session, store, product):
        version = inventory_service.get_product(product.id, store.id).version_id
        inventory_service.update_product_stock(
            product.id, store.id, "deposito", expected_before=20, new_value=19
        )
        db_session.commit()
        assert inventory_service.get_product(product.id, store.id).version_id == version + 1

    def test_get_product_scoped_to_store(self, db_session, store, other_store, product):
        with pytest.raises(NotFoundError):
            inventory_service.get_product(product.id, other_store.id)


class TestApplyStockChange:

    def test_movement_records_before_and_after(self, db_session, store, product):
        movement = inventory_service.apply_stock_change(
            product_id=product.id,
            store_id=store.id,
            stock_type="venta",
            quantity_change=-2,
            movement_type="adjustment",
            reason="Damaged on shelf",
            actor_id=ACTOR_ID,
        )
        assert (movement.quantity_before, movement.quantity_change, movement.quantity_after) == (5, -2, 3)
        assert inventory_service.get_product(product.id, store.id).stock_venta == 3

    def test_never_goes_negative(self, db_session, store, product):
        with pytest.raises(InsufficientStockError) as exc_info:
            inventory_service.apply_stock_change(
                product_id=product.id,
                store_id=store.id,
                stock_type="venta",
                quantity_change=-6,
                movement_type="adjustment",
                reason="Too many",
                actor_id=ACTOR_ID,
            )
        db_session.rollback()
        assert exc_info.value.details["available"] == 5
        assert inventory_service.get_product(product.id, store.id).stock_venta == 5

    def test_retry_recovers_from_a_lost_race(self, db_session, store, product, monkeypatch):
        real_update = inventory_service.update_product_stock
        calls = {"n": 0}

        def racing_update(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StockConflictError("Stock changed concurrently")
            return real_update(*args, **kwargs)

        monkeypatch.setattr(inventory_service, "update_product_stock", racing_update)
        inventory_service.apply_stock_change(
            product_id=product.id,
            store_id=store.id,
            stock_type="venta",
            quantity_change=-1,
            movement_type="adjustment",
            reason="Retry",
            actor_id=ACTOR_ID,
        )

        assert calls["n"] == 2
        assert inventory_service.get_product(product.id, store.id).stock_venta == 4
        # Only the successful attempt left a ledger row
        assert [m.quantity_change for m in _movements(db_session, product.id)][-1] == -1
        assert len([m for m in _movements(db_session, product.id) if m.reason == "Retry"]) == 1


class TestRunWithRetry:

    def test_gives_up_after_configured_attempts(self, db_session):
        calls = []

        def always_conflicts():
            calls.append(1)
            raise StockConflictError("conflict")

        with pytest.raises(StockConflictError):
            run_with_retry(always_conflicts, attempts=2, backoff_base=0)
        assert len(calls) == 2

    def test_non_retryable_errors_propagate_immediately(self, db_session):
        calls = []

        def invalid():
            calls.append(1)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            run_with_retry(invalid, attempts=3, backoff_base=0)
        assert len(calls) == 1


class TestStockOperations:

    def test_restock_moves_warehouse_to_floor(self, db_session, store, product):
        result = inventory_service.restock_product(
            product_id=product.id, store_id=store.id, quantity=7, actor_id=ACTOR_ID
        )
        assert result["product"].stock_venta == 12
        assert result["product"].stock_deposito == 13
        assert sorted(m.quantity_change for m in result["movements"]) == [-7, 7]
        assert all(m.movement_type == "restock" for m in result["movements"])

    def test_restock_more_than_warehouse_holds(self, db_session, store, product):
        with pytest.raises(InsufficientStockError):
            inventory_service.restock_product(
                product_id=product.id, store_id=store.id, quantity=21, actor_id=ACTOR_ID
            )
        fresh = inventory_service.get_product(product.id, store.id)
        assert (fresh.stock_venta, fresh.stock_deposito) == (5, 20)

    def test_restock_requires_positive_quantity(self, db_session, store, product):
        with pytest.raises(ValidationError):
            inventory_service.restock_product(
                product_id=product.id, store_id=store.id, quantity=0, actor_id=ACTOR_ID
            )

    @pytest.mark.parametrize(
        "adjustment_type, quantity, expected",
        [("increase", 3, 8), ("decrease", 2, 3), ("set", 11, 11)],
    )
    def test_adjust_stock(self, db_session, store, product, adjustment_type, quantity, expected):
        result = inventory_service.adjust_stock(
            product_id=product.id,
            store_id=store.id,
            stock_type="venta",
            adjustment_type=adjustment_type,
            quantity=quantity,
            reason="Cycle count",
            actor_id=ACTOR_ID,
        )
        assert result["product"].stock_venta == expected
        assert result["movements"][0].quantity_after == expected

    def test_adjust_requires_reason(self, db_session, store, product):
        with pytest.raises(ValidationError):
            inventory_service.adjust_stock(
                product_id=product.id,
                store_id=store.id,
                stock_type="venta",
                adjustment_type="increase",
                quantity=1,
                reason="  ",
                actor_id=ACTOR_ID,
            )

    def test_adjust_decrease_below_zero(self, db_session, store, product):
        with pytest.raises(InsufficientStockError):
            inventory_service.adjust_stock(
                product_id=product.id,
                store_id=store.id,
                stock_type="deposito",
                adjustment_type="decrease",
                quantity=21,
                reason="Shrink",
                actor_id=ACTOR_ID,
            )

    def test_fill_warehouse(self, db_session, store, product):
        result = inventory_service.fill_warehouse(
            product_id=product.id, store_id=store.id, quantity=30, reason="Supplier delivery", actor_id=ACTOR_ID
        )
        assert result["product"].stock_deposito == 50

    def test_sales_floor_takes_difference_from_warehouse(self, db_session, store, product):
        result = inventory_service.update_sales_floor_stock(
            product_id=product.id, store_id=store.id, new_quantity=8, reason="Shelf refill", actor_id=ACTOR_ID
        )
        assert (result["product"].stock_venta, result["product"].stock_deposito) == (8, 17)
        assert len(result["movements"]) == 2

    def test_sales_floor_gives_difference_back(self, db_session, store, product):
        result = inventory_service.update_sales_floor_stock(
            product_id=product.id, store_id=store.id, new_quantity=2, reason="Shelf reset", actor_id=ACTOR_ID
        )
        assert (result["product"].stock_venta, result["product"].stock_deposito) == (2, 23)

    def test_sales_floor_warehouse_too_small(self, db_session, store, product):
        with pytest.raises(InsufficientStockError):
            inventory_service.update_sales_floor_stock(
                product_id=product.id, store_id=store.id, new_quantity=26, reason="Too much", actor_id=ACTOR_ID
            )


class TestStockQueries:

    def test_movements_newest_first_with_limit(self, db_session, store, product):
        inventory_service.fill_warehouse(
            product_id=product.id, store_id=store.id, quantity=1, reason="Delivery", actor_id=ACTOR_ID
        )
        rows = inventory_service.get_stock_movements(product.id, store.id, limit=2)
        assert len(rows) == 2
        assert rows[0].reason == "Delivery"
        assert rows[0].id > rows[1].id

    def test_low_stock_alerts(self, db_session, store, product, make_product):
        low = make_product(store, name="Almost Gone", venta=2, deposito=50)
        inactive = make_product(store, name="Retired", venta=0, deposito=0, is_active=False)

        alerts = inventory_service.get_low_stock_alerts(store.id)
        ids = [p.id for p in alerts]
        # product: venta 5 <= min 5
        assert low.id in ids
        assert product.id in ids
        assert inactive.id not in ids

    def test_every_operation_keeps_ledger_and_stock_in_sync(self, db_session, store, product):
        inventory_service.restock_product(product_id=product.id, store_id=store.id, quantity=3, actor_id=ACTOR_ID)
        inventory_service.update_sales_floor_stock(
            product_id=product.id, store_id=store.id, new_quantity=4, reason="Reset", actor_id=ACTOR_ID
        )
        assert ledger_service.audit_store_stock(store.id) == []


class TestStoreModel:

    def test_serialises_stored_columns_only(self, db_session, store):
        data = store.to_dict()
        assert data["tax_rate"] == "16.00"
        assert set(data) == {"id", "name", "code", "tax_rate", "created_at"}
