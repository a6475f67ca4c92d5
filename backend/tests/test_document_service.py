from decimal import Decimal

import pytest

from retailpos.errors import IntegrityViolationError, InvalidStateError, NotFoundError, ValidationError
from retailpos.models import Sale, SaleItem
from retailpos.services import document_service, sales_service
from retailpos.time_utils import current_year
from retailpos.validation import SaleLineRequest, SaleRequest

ACTOR_ID = 7


def _sell(store, product, *, quantity=1, payment_method="cash", actor_id=ACTOR_ID, pending=False):
    return sales_service.process_sale(
        store.id,
        SaleRequest(
            items=[SaleLineRequest(product_id=product.id, quantity=quantity)],
            payment_method=payment_method,
            require_payment_confirmation=pending,
        ),
        actor_id,
    )


def _header(store, receipt_number):
    return {
        "store_id": store.id,
        "user_id": ACTOR_ID,
        "subtotal": Decimal("1.00"),
        "tax": Decimal("0.00"),
        "discount": Decimal("0.00"),
        "total": Decimal("1.00"),
        "payment_method": "cash",
        "payment_status": "pending",
        "receipt_number": receipt_number,
    }


def _item(product):
    return {
        "product_id": product.id,
        "product_name": product.name,
        "quantity": 1,
        "unit_price": Decimal("1.00"),
        "subtotal": Decimal("1.00"),
        "discount": Decimal("0.00"),
        "total": Decimal("1.00"),
        "stock_type": "venta",
    }


class TestInsertSale:

    def test_header_and_items_written_together(self, db_session, store, product):
        sale = document_service.insert_sale(_header(store, "REC-2020-000001"), [_item(product), _item(product)])
        assert len(sale.items) == 2
        assert db_session.query(SaleItem).filter_by(sale_id=sale.id).count() == 2

    def test_requires_items(self, db_session, store):
        with pytest.raises(ValidationError):
            document_service.insert_sale(_header(store, "REC-2020-000001"), [])
        assert db_session.query(Sale).count() == 0

    def test_failed_item_rolls_back_header(self, db_session, store, product):
        bad_item = _item(product)
        bad_item["quantity"] = 0  # violates the CHECK constraint

        with pytest.raises(IntegrityViolationError):
            document_service.insert_sale(_header(store, "REC-2020-000001"), [_item(product), bad_item])
        db_session.rollback()
        assert db_session.query(Sale).count() == 0
        assert db_session.query(SaleItem).count() == 0

    def test_next_receipt_number_ignores_other_years(self, db_session, store, product):
        document_service.insert_sale(_header(store, "REC-2020-000041"), [_item(product)])
        year = current_year()
        assert document_service.next_receipt_number(store.id, 2020) == "REC-2020-000042"
        assert document_service.next_receipt_number(store.id) == f"REC-{year}-000001"

    def test_latest_sequence_is_numeric_max(self, db_session, store, other_store, product):
        for receipt_number in ("REC-2020-000009", "REC-2020-000041", "REC-2020-000010"):
            document_service.insert_sale(_header(store, receipt_number), [_item(product)])
        document_service.insert_sale(_header(other_store, "REC-2020-000500"), [_item(product)])

        assert document_service.latest_receipt_sequence(store.id, 2020) == 41

    def test_latest_sequence_past_pad_width(self, db_session, store, product):
        document_service.insert_sale(_header(store, "REC-2020-999999"), [_item(product)])
        document_service.insert_sale(_header(store, "REC-2020-1000000"), [_item(product)])

        assert document_service.latest_receipt_sequence(store.id, 2020) == 1000000
        assert document_service.next_receipt_number(store.id, 2020) == "REC-2020-1000001"


class TestStatusTransitions:

    def test_conditional_transition(self, db_session, store, product):
        sale = _sell(store, product, pending=True)
        updated = document_service.update_sale_status(
            sale.id, store.id, from_statuses=("pending",), to_status="cancelled"
        )
        assert updated.payment_status == "cancelled"
        assert updated.version_id == 2

    def test_wrong_current_status(self, db_session, store, product):
        sale = _sell(store, product)
        with pytest.raises(InvalidStateError) as exc_info:
            document_service.update_sale_status(
                sale.id, store.id, from_statuses=("pending",), to_status="cancelled"
            )
        assert exc_info.value.details["payment_status"] == "completed"

    def test_missing_sale(self, db_session, store):
        with pytest.raises(NotFoundError):
            document_service.update_sale_status(
                999999, store.id, from_statuses=("pending",), to_status="cancelled"
            )


class TestListAndSearch:

    def test_filters_and_pagination(self, db_session, store, product, second_product):
        _sell(store, product, payment_method="cash")
        _sell(store, second_product, payment_method="card")
        _sell(store, second_product, payment_method="card", actor_id=99)

        page = document_service.list_sales(store.id, payment_method="card", limit=1, page=2)
        assert page["pagination"] == {"page": 2, "limit": 1, "total": 2, "pages": 2}
        assert len(page["sales"]) == 1

        by_user = document_service.list_sales(store.id, user_id=99)
        assert [s.user_id for s in by_user["sales"]] == [99]

        everything = document_service.list_sales(store.id)
        ids = [s.id for s in everything["sales"]]
        assert ids == sorted(ids, reverse=True)

    def test_date_range_is_inclusive(self, db_session, store, product):
        _sell(store, product)
        sale = db_session.query(Sale).one()
        day = sale.created_at.strftime("%Y-%m-%d")

        assert document_service.list_sales(store.id, start_date=day, end_date=day)["pagination"]["total"] == 1
        assert document_service.list_sales(store.id, end_date="2000-01-01")["pagination"]["total"] == 0

    def test_bad_filters(self, db_session, store):
        with pytest.raises(ValidationError):
            document_service.list_sales(store.id, payment_status="paid")
        with pytest.raises(ValidationError):
            document_service.list_sales(store.id, start_date="yesterday")

    def test_search_by_id_or_receipt(self, db_session, store, other_store, product):
        sale = _sell(store, product)

        assert document_service.search_by_ticket(store.id, str(sale.id)).id == sale.id
        assert document_service.search_by_ticket(store.id, sale.receipt_number).id == sale.id
        with pytest.raises(NotFoundError):
            document_service.search_by_ticket(other_store.id, sale.receipt_number)
        with pytest.raises(ValidationError):
            document_service.search_by_ticket(store.id, "  ")

    def test_search_with_non_ascii_digits_is_a_receipt_lookup(self, db_session, store, product):
        _sell(store, product)
        with pytest.raises(NotFoundError):
            document_service.search_by_ticket(store.id, "²")
        with pytest.raises(NotFoundError):
            document_service.search_by_ticket(store.id, "١٢")
