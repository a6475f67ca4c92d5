"""
Returns reconciliation: remaining returnable quantity, batched partial returns,
the returned-products projection and the store defective-products report.

RETURNED QUANTITY is never stored on the sale. It is recomputed from the
ledger on every read as SUM(quantity_change) of the sale's `return` rows per
(product, stock pool), then allocated to the sale's items in item order, so
two items of the same product and pool share one budget.

RETURN TYPES:
- customer_mistake: stock restored to the pool the unit was sold from
- defective: ledger row only (counts against the remaining quantity); the
  unit is scrapped and the pool is left untouched

Each batch line commits on its own. A failing line raises before writing its
ledger row; lines processed before it stay committed.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import and_, func, or_

from ..errors import InsufficientStockError, InvalidStateError, PosError, ValidationError
from ..extensions import db
from ..models import Product, Sale, StockMovement
from ..models.inventory import (
    MOVEMENT_RETURN,
    RETURN_CUSTOMER_MISTAKE,
    RETURN_DEFECTIVE,
    RETURN_TYPES,
)
from ..models.sales import PAYMENT_STATUS_COMPLETED, PAYMENT_STATUS_REFUNDED
from ..money import ZERO, money_str, round2
from ..time_utils import to_utc_z
from ..validation import ReturnLineRequest
from . import document_service, inventory_service, ledger_service
from .concurrency import run_with_retry


def remaining_by_item(sale: Sale) -> dict[int, dict]:
    """{sale_item_id: {"returned_quantity", "remaining_quantity"}} from the current ledger."""
    budget = dict(ledger_service.returned_quantities(sale.id, sale.store_id))
    result = {}
    for item in sale.items:
        key = (item.product_id, item.stock_type)
        used = min(item.quantity, max(0, budget.get(key, 0)))
        budget[key] = budget.get(key, 0) - used
        result[item.id] = {
            "returned_quantity": used,
            "remaining_quantity": item.quantity - used,
        }
    return result


def _remaining_for_key(sale: Sale, product_id: int, stock_type: str) -> int:
    remaining = remaining_by_item(sale)
    return sum(
        remaining[item.id]["remaining_quantity"]
        for item in sale.items
        if item.product_id == product_id and item.stock_type == stock_type
    )


def get_returns_summary(sale_id: int, store_id: int) -> dict:
    """Per-item returned / remaining quantities plus the pool's current stock."""
    sale = document_service.get_sale(sale_id, store_id)
    remaining = remaining_by_item(sale)

    product_ids = {item.product_id for item in sale.items}
    products = {
        p.id: p
        for p in db.session.query(Product)
        .filter(Product.id.in_(product_ids))
        .populate_existing()
        .all()
    } if product_ids else {}

    items = []
    for item in sale.items:
        product = products.get(item.product_id)
        items.append({
            "sale_item": item.to_dict(),
            "returned_quantity": remaining[item.id]["returned_quantity"],
            "remaining_quantity": remaining[item.id]["remaining_quantity"],
            "stock_current": product.stock_for(item.stock_type) if product is not None else None,
        })

    return {
        "sale_id": sale.id,
        "receipt_number": sale.receipt_number,
        "payment_status": sale.payment_status,
        "items": items,
        "fully_returned": all(i["remaining_quantity"] == 0 for i in items),
    }


def _check_line(sale: Sale, line: ReturnLineRequest, index: int):
    item = document_service.get_sale_item(sale, line.sale_item_id)
    if item.product_id != line.product_id or item.stock_type != line.stock_type:
        raise ValidationError(
            "Return line does not match the sale item",
            details={
                "index": index,
                "sale_item_id": item.id,
                "expected_product_id": item.product_id,
                "expected_stock_type": item.stock_type,
                "product_id": line.product_id,
                "stock_type": line.stock_type,
            },
        )
    if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
        raise ValidationError(
            "quantity must be a positive integer",
            details={"index": index, "sale_item_id": item.id, "quantity": line.quantity},
        )
    if line.return_type not in RETURN_TYPES:
        raise ValidationError(
            f"return_type must be one of {', '.join(RETURN_TYPES)}",
            details={"index": index, "return_type": line.return_type},
        )
    return item


def _require_completed(sale: Sale) -> None:
    if sale.payment_status != PAYMENT_STATUS_COMPLETED:
        raise InvalidStateError(
            f"Cannot return items of a {sale.payment_status} sale",
            details={
                "sale_id": sale.id,
                "receipt_number": sale.receipt_number,
                "payment_status": sale.payment_status,
            },
        )


def _return_line(sale_id: int, store_id: int, actor_id: int, line: ReturnLineRequest, index: int) -> dict:
    def _op():
        sale = document_service.get_sale(sale_id, store_id)
        _require_completed(sale)
        item = _check_line(sale, line, index)

        if item.id not in ledger_service.sale_movements_by_item(sale_id, store_id):
            raise InvalidStateError(
                "Sale item was never deducted from stock; reconcile the sale first",
                details={"index": index, "sale_id": sale_id, "sale_item_id": item.id},
            )

        remaining = _remaining_for_key(sale, item.product_id, item.stock_type)
        if line.quantity > remaining:
            raise InsufficientStockError(
                "Return quantity exceeds the remaining returnable quantity",
                details={
                    "index": index,
                    "sale_id": sale_id,
                    "sale_item_id": item.id,
                    "product_id": item.product_id,
                    "stock_type": item.stock_type,
                    "requested": line.quantity,
                    "remaining": remaining,
                },
            )

        movement = inventory_service.apply_stock_change_locked(
            product_id=item.product_id,
            store_id=store_id,
            stock_type=item.stock_type,
            quantity_change=line.quantity,
            movement_type=MOVEMENT_RETURN,
            reason=f"Return {sale.receipt_number} ({line.return_type})",
            actor_id=actor_id,
            notes=line.notes,
            sale_id=sale_id,
            sale_item_id=item.id,
            return_type=line.return_type,
            touch_stock=line.return_type == RETURN_CUSTOMER_MISTAKE,
        )
        db.session.commit()
        return {
            "sale_item_id": line.sale_item_id,
            "product_id": line.product_id,
            "stock_type": line.stock_type,
            "quantity": line.quantity,
            "return_type": line.return_type,
            "movement_id": movement.id,
            "stock_after": movement.quantity_after,
        }

    return run_with_retry(_op)


def return_items_batch(
    sale_id: int,
    store_id: int,
    actor_id: int,
    items: list[ReturnLineRequest],
) -> dict:
    """
    Process return lines in order, then mark the sale refunded once nothing
    remains returnable.
    """
    if not items:
        raise ValidationError("At least one return line is required", details={"sale_id": sale_id})

    sale = document_service.get_sale(sale_id, store_id)
    _require_completed(sale)

    processed = []
    for index, line in enumerate(items):
        try:
            processed.append(_return_line(sale_id, store_id, actor_id, line, index))
        except PosError as exc:
            db.session.rollback()
            exc.details.setdefault("index", index)
            exc.details["processed_lines"] = len(processed)
            current_app.logger.warning(
                "Return batch for sale %s stopped at line %d (%d committed): %s",
                sale_id, index, len(processed), exc,
            )
            raise

    summary = get_returns_summary(sale_id, store_id)
    if summary["fully_returned"] and summary["payment_status"] != PAYMENT_STATUS_REFUNDED:
        try:
            document_service.update_sale_status(
                sale_id,
                store_id,
                from_statuses=(PAYMENT_STATUS_COMPLETED,),
                to_status=PAYMENT_STATUS_REFUNDED,
            )
        except InvalidStateError as exc:
            db.session.rollback()
            # A concurrent refund already got there
            if exc.details.get("payment_status") != PAYMENT_STATUS_REFUNDED:
                raise
        summary = get_returns_summary(sale_id, store_id)
        current_app.logger.info("Sale %s fully returned; marked refunded", sale_id)

    current_app.logger.info(
        "Processed %d return line(s) for sale %s (%s) by user %s",
        len(processed), sale_id, summary["receipt_number"], actor_id,
    )
    return {"processed": processed, "summary": summary}


def _infer_return_type(movement) -> str:
    text = f"{movement.reason or ''} {movement.notes or ''}".lower()
    return RETURN_DEFECTIVE if "defective" in text else RETURN_CUSTOMER_MISTAKE


def get_returned_products(sale_id: int, store_id: int) -> list[dict]:
    """Return rows of a sale, newest first, with the product name as sold."""
    sale = document_service.get_sale(sale_id, store_id)
    names = {item.id: item.product_name for item in sale.items}

    rows = ledger_service.query_movements(
        store_id=store_id,
        sale_id=sale_id,
        movement_type=MOVEMENT_RETURN,
    )
    result = []
    for row in rows:
        name = names.get(row.sale_item_id)
        if name is None and row.product is not None:
            name = row.product.name
        result.append({
            "movement_id": row.id,
            "sale_item_id": row.sale_item_id,
            "product_id": row.product_id,
            "product_name": name,
            "stock_type": row.stock_type,
            "quantity": row.quantity_change,
            "return_type": row.return_type or _infer_return_type(row),
            "reason": row.reason,
            "notes": row.notes,
            "performed_by": row.performed_by,
            "return_date": to_utc_z(row.created_at),
        })
    return result


def get_defective_products(store_id: int) -> list[dict]:
    """
    Defective returns of a store grouped by product, most units first.

    monetary_loss is the product's current cost times the defective units.
    Rows written before return_type was stored are matched on their text.
    """
    total_defective = func.sum(StockMovement.quantity_change)
    rows = (
        db.session.query(
            Product.id,
            Product.name,
            Product.cost,
            total_defective,
            func.max(StockMovement.created_at),
        )
        .select_from(StockMovement)
        .join(Product, Product.id == StockMovement.product_id)
        .filter(
            StockMovement.store_id == store_id,
            StockMovement.movement_type == MOVEMENT_RETURN,
            or_(
                StockMovement.return_type == RETURN_DEFECTIVE,
                and_(
                    StockMovement.return_type.is_(None),
                    or_(
                        StockMovement.reason.ilike("%defective%"),
                        StockMovement.notes.ilike("%defective%"),
                    ),
                ),
            ),
        )
        .group_by(Product.id, Product.name, Product.cost)
        .order_by(total_defective.desc(), Product.id.asc())
        .all()
    )
    return [
        {
            "product_id": product_id,
            "product_name": name,
            "total_defective": int(total),
            "last_return_date": to_utc_z(last_returned),
            "monetary_loss": money_str(round2((cost or ZERO) * int(total))),
        }
        for product_id, name, cost, total, last_returned in rows
    ]
