from decimal import Decimal

import pytest

from retailpos.errors import (
    InsufficientStockError,
    IntegrityViolationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from retailpos.models import Sale, StockMovement
from retailpos.services import document_service, inventory_service, ledger_service, sales_service
from retailpos.time_utils import current_year
from retailpos.validation import SaleLineRequest, SaleRequest

ACTOR_ID = 7


def _request(*lines, payment_method="cash", discount="0", require_payment_confirmation=False):
    return SaleRequest(
        items=list(lines),
        payment_method=payment_method,
        discount=Decimal(discount),
        require_payment_confirmation=require_payment_confirmation,
    )


def _sale_movements(db_session, sale_id):
    return (
        db_session.query(StockMovement)
        .filter_by(sale_id=sale_id, movement_type="sale")
        .order_by(StockMovement.id)
        .all()
    )


class TestProcessSale:
    """Validation, totals and immediate deduction."""

    def test_two_units_with_sixteen_percent_tax(self, db_session, store, product):
        sale = sales_service.process_sale(
            store.id, _request(SaleLineRequest(product_id=product.id, quantity=2)), ACTOR_ID
        )

        assert sale.subtotal == Decimal("20.00")
        assert sale.tax == Decimal("3.20")
        assert sale.total == Decimal("23.20")
        assert sale.payment_status == "completed"
        assert sale.user_id == ACTOR_ID

        assert inventory_service.get_product(product.id, store.id).stock_venta == 3

        movements = _sale_movements(db_session, sale.id)
        assert len(movements) == 1
        assert movements[0].quantity_change == -2
        assert movements[0].quantity_before == 5
        assert movements[0].quantity_after == 3
        assert movements[0].sale_item_id == sale.items[0].id
        assert movements[0].reason == f"Sale {sale.receipt_number}"
        assert movements[0].performed_by == ACTOR_ID

    def test_item_snapshot_and_line_totals(self, db_session, store, product, second_product):
        sale = sales_service.process_sale(
            store.id,
            _request(
                SaleLineRequest(product_id=product.id, quantity=1, discount=Decimal("0.50")),
                SaleLineRequest(product_id=second_product.id, quantity=3),
            ),
            ACTOR_ID,
        )
        first, second = sale.items

        assert first.product_name == "Ground Coffee"
        assert first.product_sku == "COF-250"
        assert first.subtotal == Decimal("10.00")
        assert first.total == Decimal("9.50")
        assert second.subtotal == Decimal("14.25")
        assert second.total == Decimal("14.25")
        # 23.75 * 16% = 3.80
        assert sale.subtotal == Decimal("23.75")
        assert sale.tax == Decimal("3.80")
        assert sale.total == Decimal("27.55")

    def test_rounding_happens_at_each_step(self, db_session, store, make_product):
        odd = make_product(store, name="Odd", price="0.35", venta=10)
        sale = sales_service.process_sale(
            store.id,
            _request(SaleLineRequest(product_id=odd.id, quantity=3), discount="0.10"),
            ACTOR_ID,
        )
        # 0.35 * 3 = 1.05; tax 0.168 -> 0.17; 1.05 + 0.17 - 0.10
        assert sale.items[0].unit_price == Decimal("0.35")
        assert sale.subtotal == Decimal("1.05")
        assert sale.tax == Decimal("0.17")
        assert sale.total == Decimal("1.12")
        assert sale.total == (sale.subtotal + sale.tax - sale.discount).quantize(Decimal("0.01"))

    def test_unit_price_override(self, db_session, store, product):
        sale = sales_service.process_sale(
            store.id,
            _request(SaleLineRequest(product_id=product.id, quantity=1, unit_price=Decimal("8.00"))),
            ACTOR_ID,
        )
        assert sale.items[0].unit_price == Decimal("8.00")
        assert sale.subtotal == Decimal("8.00")

    def test_deposito_pool_is_deducted(self, db_session, store, product):
        sales_service.process_sale(
            store.id,
            _request(SaleLineRequest(product_id=product.id, quantity=4, stock_type="deposito")),
            ACTOR_ID,
        )
        fresh = inventory_service.get_product(product.id, store.id)
        assert fresh.stock_deposito == 16
        assert fresh.stock_venta == 5

    def test_empty_items_rejected(self, db_session, store):
        with pytest.raises(ValidationError):
            sales_service.process_sale(store.id, _request(), ACTOR_ID)
        assert db_session.query(Sale).count() == 0

    def test_unknown_product(self, db_session, store):
        with pytest.raises(NotFoundError):
            sales_service.process_sale(
                store.id, _request(SaleLineRequest(product_id=999999, quantity=1)), ACTOR_ID
            )

    def test_product_from_other_store_is_not_found(self, db_session, store, other_store, make_product):
        foreign = make_product(other_store, name="Foreign", venta=5)
        with pytest.raises(NotFoundError):
            sales_service.process_sale(
                store.id, _request(SaleLineRequest(product_id=foreign.id, quantity=1)), ACTOR_ID
            )

    def test_inactive_product_cannot_be_sold(self, db_session, store, make_product):
        retired = make_product(store, name="Retired", venta=5, is_active=False)
        with pytest.raises(InvalidStateError):
            sales_service.process_sale(
                store.id, _request(SaleLineRequest(product_id=retired.id, quantity=1)), ACTOR_ID
            )

    def test_insufficient_stock_writes_nothing(self, db_session, store, product):
        with pytest.raises(InsufficientStockError) as exc_info:
            sales_service.process_sale(
                store.id, _request(SaleLineRequest(product_id=product.id, quantity=6)), ACTOR_ID
            )
        assert exc_info.value.details["requested"] == 6
        assert exc_info.value.details["available"] == 5
        assert db_session.query(Sale).count() == 0

    def test_lines_of_same_product_are_checked_together(self, db_session, store, product):
        with pytest.raises(InsufficientStockError) as exc_info:
            sales_service.process_sale(
                store.id,
                _request(
                    SaleLineRequest(product_id=product.id, quantity=3),
                    SaleLineRequest(product_id=product.id, quantity=3),
                ),
                ACTOR_ID,
            )
        assert exc_info.value.details["requested"] == 6

    def test_non_positive_quantity_rejected(self, db_session, store, product):
        with pytest.raises(ValidationError):
            sales_service.process_sale(
                store.id, _request(SaleLineRequest(product_id=product.id, quantity=0)), ACTOR_ID
            )

    def test_discount_larger_than_total_rejected(self, db_session, store, product):
        with pytest.raises(ValidationError):
            sales_service.process_sale(
                store.id,
                _request(SaleLineRequest(product_id=product.id, quantity=1), discount="50.00"),
                ACTOR_ID,
            )

    def test_line_total_beyond_column_range_rejected(self, db_session, store, make_product):
        pricey = make_product(store, name="Pricey", price="9999999999.99", venta=1000)
        with pytest.raises(ValidationError) as exc_info:
            sales_service.process_sale(
                store.id, _request(SaleLineRequest(product_id=pricey.id, quantity=1000)), ACTOR_ID
            )
        assert exc_info.value.details["field"] == "subtotal"
        assert db_session.query(Sale).count() == 0
        assert inventory_service.get_product(pricey.id, store.id).stock_venta == 1000

    def test_huge_unit_price_override_rejected(self, db_session, store, product):
        with pytest.raises(ValidationError):
            sales_service.process_sale(
                store.id,
                _request(SaleLineRequest(product_id=product.id, quantity=1, unit_price=Decimal("1e30"))),
                ACTOR_ID,
            )

    def test_unknown_store(self, db_session, product):
        with pytest.raises(NotFoundError):
            sales_service.process_sale(
                999999, _request(SaleLineRequest(product_id=product.id, quantity=1)), ACTOR_ID
            )


class TestReceiptNumbers:

    def test_sequence_per_store_and_year(self, db_session, store, other_store, product, make_product):
        year = current_year()
        first = sales_service.process_sale(
            store.id, _request(SaleLineRequest(product_id=product.id, quantity=1)), ACTOR_ID
        )
        second = sales_service.process_sale(
            store.id, _request(SaleLineRequest(product_id=product.id, quantity=1)), ACTOR_ID
        )
        elsewhere = make_product(other_store, name="Elsewhere", venta=3)
        third = sales_service.process_sale(
            other_store.id, _request(SaleLineRequest(product_id=elsewhere.id, quantity=1)), ACTOR_ID
        )

        assert first.receipt_number == f"REC-{year}-000001"
        assert second.receipt_number == f"REC-{year}-000002"
        assert third.receipt_number == f"REC-{year}-000001"
        assert document_service.latest_receipt_sequence(store.id, year) == 2
        assert document_service.latest_receipt_sequence(store.id, year - 1) is None

    def test_collision_is_an_integrity_violation(self, db_session, store, product, monkeypatch):
        first = sales_service.process_sale(
            store.id, _request(SaleLineRequest(product_id=product.id, quantity=1)), ACTOR_ID
        )
        monkeypatch.setattr(
            document_service, "next_receipt_number", lambda store_id, year=None: first.receipt_number
        )

        with pytest.raises(IntegrityViolationError):
            sales_service.process_sale(
                store.id, _request(SaleLineRequest(product_id=product.id, quantity=1)), ACTOR_ID
            )
        assert db_session.query(Sale).count() == 1
        # The losing sale deducted nothing
        assert inventory_service.get_product(product.id, store.id).stock_venta == 4


class TestPendingSales:

    def test_pending_sale_holds_no_stock(self, db_session, store, product):
        sale = sales_service.process_sale(
            store.id,
            _request(SaleLineRequest(product_id=product.id, quantity=2), require_payment_confirmation=True),
            ACTOR_ID,
        )
        assert sale.payment_status == "pending"
        assert inventory_service.get_product(product.id, store.id).stock_venta == 5
        assert _sale_movements(db_session, sale.id) == []

    def test_confirm_deducts_stock(self, db_session, store, product):
        sale = sales_service.process_sale(
            store.id,
            _request(SaleLineRequest(product_id=product.id, quantity=2), require_payment_confirmation=True),
            ACTOR_ID,
        )
        confirmed = sales_service.confirm_pending_sale(sale.id, store.id)

        assert confirmed.payment_status == "completed"
        assert inventory_service.get_product(product.id, store.id).stock_venta == 3
        assert len(_sale_movements(db_session, sale.id)) == 1

    def test_confirm_twice_fails(self, db_session, store, product):
        sale = sales_service.process_sale(
            store.id,
            _request(SaleLineRequest(product_id=product.id, quantity=1), require_payment_confirmation=True),
            ACTOR_ID,
        )
        sales_service.confirm_pending_sale(sale.id, store.id)

        with pytest.raises(InvalidStateError):
            sales_service.confirm_pending_sale(sale.id, store.id)
        assert inventory_service.get_product(product.id, store.id).stock_venta == 4

    def test_confirm_unknown_sale(self, db_session, store):
        with pytest.raises(NotFoundError):
            sales_service.confirm_pending_sale(999999, store.id)

    def test_confirm_in_wrong_store(self, db_session, store, other_store, product):
        sale = sales_service.process_sale(
            store.id,
            _request(SaleLineRequest(product_id=product.id, quantity=1), require_payment_confirmation=True),
            ACTOR_ID,
        )
        with pytest.raises(NotFoundError):
            sales_service.confirm_pending_sale(sale.id, other_store.id)

    def test_cancel_pending_sale(self, db_session, store, product):
        sale = sales_service.process_sale(
            store.id,
            _request(SaleLineRequest(product_id=product.id, quantity=2), require_payment_confirmation=True),
            ACTOR_ID,
        )
        cancelled = sales_service.cancel_pending_sale(sale.id, store.id, ACTOR_ID)

        assert cancelled.payment_status == "cancelled"
        assert inventory_service.get_product(product.id, store.id).stock_venta == 5
        with pytest.raises(InvalidStateError):
            sales_service.confirm_pending_sale(sale.id, store.id)

    def test_cannot_cancel_completed_sale(self, db_session, store, product):
        sale = sales_service.process_sale(
            store.id, _request(SaleLineRequest(product_id=product.id, quantity=1)), ACTOR_ID
        )
        with pytest.raises(InvalidStateError):
            sales_service.cancel_pending_sale(sale.id, store.id, ACTOR_ID)


class TestDeductionSaga:

    def _pending_two_items(self, store, product, second_product):
        return sales_service.process_sale(
            store.id,
            _request(
                SaleLineRequest(product_id=product.id, quantity=2),
                SaleLineRequest(product_id=second_product.id, quantity=4),
                require_payment_confirmation=True,
            ),
            ACTOR_ID,
        )

    def test_partial_failure_keeps_sale_and_earlier_items(self, db_session, store, product, second_product):
        sale = self._pending_two_items(store, product, second_product)
        # Stock drops between sale and confirmation
        inventory_service.adjust_stock(
            product_id=second_product.id,
            store_id=store.id,
            stock_type="venta",
            adjustment_type="set",
            quantity=1,
            reason="Breakage",
            actor_id=ACTOR_ID,
        )

        with pytest.raises(InsufficientStockError) as exc_info:
            sales_service.confirm_pending_sale(sale.id, store.id)

        details = exc_info.value.details
        assert details["sale_id"] == sale.id
        assert [i["product_id"] for i in details["deducted_items"]] == [product.id]
        assert [i["product_id"] for i in details["failed_items"]] == [second_product.id]
        assert details["failed_items"][0]["available"] == 1

        assert document_service.get_sale(sale.id, store.id).payment_status == "completed"
        assert inventory_service.get_product(product.id, store.id).stock_venta == 3
        assert inventory_service.get_product(second_product.id, store.id).stock_venta == 1

        status = sales_service.get_deduction_status(sale.id, store.id)
        assert status["complete"] is False
        assert status["missing_items"] == [sale.items[1].id]

    def test_reconcile_deducts_only_missing_items(self, db_session, store, product, second_product):
        sale = self._pending_two_items(store, product, second_product)
        inventory_service.adjust_stock(
            product_id=second_product.id,
            store_id=store.id,
            stock_type="venta",
            adjustment_type="set",
            quantity=1,
            reason="Breakage",
            actor_id=ACTOR_ID,
        )
        with pytest.raises(InsufficientStockError):
            sales_service.confirm_pending_sale(sale.id, store.id)

        inventory_service.restock_product(
            product_id=second_product.id, store_id=store.id, quantity=5, actor_id=ACTOR_ID
        )
        status = sales_service.reconcile_sale_deductions(sale.id, store.id, ACTOR_ID)

        assert status["complete"] is True
        assert inventory_service.get_product(product.id, store.id).stock_venta == 3
        assert inventory_service.get_product(second_product.id, store.id).stock_venta == 2
        assert len(_sale_movements(db_session, sale.id)) == 2

        # Running it again deducts nothing
        sales_service.reconcile_sale_deductions(sale.id, store.id, ACTOR_ID)
        assert len(_sale_movements(db_session, sale.id)) == 2
        assert inventory_service.get_product(product.id, store.id).stock_venta == 3

    def test_reconcile_requires_completed_sale(self, db_session, store, product, second_product):
        sale = self._pending_two_items(store, product, second_product)
        with pytest.raises(InvalidStateError):
            sales_service.reconcile_sale_deductions(sale.id, store.id, ACTOR_ID)

    def test_pending_sale_expects_no_deduction(self, db_session, store, product, second_product):
        sale = self._pending_two_items(store, product, second_product)
        status = sales_service.get_deduction_status(sale.id, store.id)
        assert status["deduction_expected"] is False
        assert status["complete"] is True
        assert all(not item["deducted"] for item in status["items"])

    def test_refund_blocked_until_reconciled(self, db_session, store, product, second_product):
        sale = self._pending_two_items(store, product, second_product)
        inventory_service.adjust_stock(
            product_id=second_product.id,
            store_id=store.id,
            stock_type="venta",
            adjustment_type="set",
            quantity=0,
            reason="Lost",
            actor_id=ACTOR_ID,
        )
        with pytest.raises(InsufficientStockError):
            sales_service.confirm_pending_sale(sale.id, store.id)

        with pytest.raises(InvalidStateError) as exc_info:
            sales_service.refund_sale(sale.id, store.id, ACTOR_ID)
        assert exc_info.value.details["missing_items"] == [sale.items[1].id]


class TestRefund:

    def test_refund_restores_stock(self, db_session, store, product, second_product):
        sale = sales_service.process_sale(
            store.id,
            _request(
                SaleLineRequest(product_id=product.id, quantity=2),
                SaleLineRequest(product_id=second_product.id, quantity=1),
            ),
            ACTOR_ID,
        )
        refunded = sales_service.refund_sale(sale.id, store.id, ACTOR_ID)

        assert refunded.payment_status == "refunded"
        assert inventory_service.get_product(product.id, store.id).stock_venta == 5
        assert inventory_service.get_product(second_product.id, store.id).stock_venta == 10

        returns = ledger_service.query_movements(store_id=store.id, sale_id=sale.id, movement_type="return")
        assert sorted(m.quantity_change for m in returns) == [1, 2]
        assert all(m.reason == f"Refund {sale.receipt_number}" for m in returns)
        assert all(m.return_type == "customer_mistake" for m in returns)

    def test_refund_twice_fails(self, db_session, store, product):
        sale = sales_service.process_sale(
            store.id, _request(SaleLineRequest(product_id=product.id, quantity=2)), ACTOR_ID
        )
        sales_service.refund_sale(sale.id, store.id, ACTOR_ID)

        with pytest.raises(InvalidStateError):
            sales_service.refund_sale(sale.id, store.id, ACTOR_ID)
        assert inventory_service.get_product(product.id, store.id).stock_venta == 5

    def test_refund_pending_sale_fails(self, db_session, store, product):
        sale = sales_service.process_sale(
            store.id,
            _request(SaleLineRequest(product_id=product.id, quantity=2), require_payment_confirmation=True),
            ACTOR_ID,
        )
        with pytest.raises(InvalidStateError):
            sales_service.refund_sale(sale.id, store.id, ACTOR_ID)
        assert inventory_service.get_product(product.id, store.id).stock_venta == 5

    def test_refund_unknown_sale(self, db_session, store):
        with pytest.raises(NotFoundError):
            sales_service.refund_sale(999999, store.id, ACTOR_ID)
