# Overview: Stock ledger; append-only StockMovement rows and the aggregates derived from them.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..errors import IntegrityViolationError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, StockMovement
from ..models.inventory import (
    MOVEMENT_RETURN,
    MOVEMENT_SALE,
    MOVEMENT_TYPES,
    RETURN_DEFECTIVE,
    RETURN_TYPES,
    STOCK_TYPES,
)
"""
Stock Ledger Invariants (authoritative)

- Append-only: rows are inserted, never updated or deleted.
- Rows are written inside the same DB transaction as the stock field change
  they describe; this module never commits.
- quantity_after = quantity_before + quantity_change for every row except
  defective returns, which record quantity_change > 0 with
  quantity_before == quantity_after (the unit is scrapped, not restocked).
- The newest row of a (product, stock pool) carries the pool's current value
  in quantity_after; Product.stock_* is a cache of that value.
- Returned quantity of a sale per (product, stock pool) is SUM(quantity_change)
  over its return rows; it is recomputed on every read.
"""


def append_movement(
    *,
    product_id: int,
    store_id: int,
    movement_type: str,
    stock_type: str,
    quantity_change: int,
    quantity_before: int,
    quantity_after: int,
    reason: str,
    performed_by: int,
    notes: str | None = None,
    sale_id: int | None = None,
    sale_item_id: int | None = None,
    return_type: str | None = None,
) -> StockMovement:
    """Append one ledger row to the current transaction (flushed, not committed)."""
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement_type {movement_type!r}")
    if stock_type not in STOCK_TYPES:
        raise ValidationError(f"Unknown stock_type {stock_type!r}")
    if return_type is not None and return_type not in RETURN_TYPES:
        raise ValidationError(f"Unknown return_type {return_type!r}")
    if not reason:
        raise ValidationError("Stock movements require a reason")

    scrapped = movement_type == MOVEMENT_RETURN and return_type == RETURN_DEFECTIVE
    if scrapped:
        consistent = quantity_before == quantity_after and quantity_change > 0
    else:
        consistent = quantity_after == quantity_before + quantity_change
    if not consistent or quantity_after < 0:
        raise IntegrityViolationError(
            "Stock movement arithmetic is inconsistent",
            details={
                "product_id": product_id,
                "stock_type": stock_type,
                "quantity_before": quantity_before,
                "quantity_change": quantity_change,
                "quantity_after": quantity_after,
            },
        )

    movement = StockMovement(
        product_id=product_id,
        store_id=store_id,
        movement_type=movement_type,
        stock_type=stock_type,
        quantity_change=quantity_change,
        quantity_before=quantity_before,
        quantity_after=quantity_after,
        reason=reason[:255],
        notes=notes,
        performed_by=performed_by,
        sale_id=sale_id,
        sale_item_id=sale_item_id,
        return_type=return_type,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def query_movements(
    *,
    store_id: int,
    product_id: int | None = None,
    sale_id: int | None = None,
    sale_item_id: int | None = None,
    movement_type: str | None = None,
    stock_type: str | None = None,
    limit: int | None = None,
    newest_first: bool = True,
) -> list[StockMovement]:
    q = db.session.query(StockMovement).filter(StockMovement.store_id == store_id)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if sale_id is not None:
        q = q.filter(StockMovement.sale_id == sale_id)
    if sale_item_id is not None:
        q = q.filter(StockMovement.sale_item_id == sale_item_id)
    if movement_type is not None:
        q = q.filter(StockMovement.movement_type == movement_type)
    if stock_type is not None:
        q = q.filter(StockMovement.stock_type == stock_type)

    if newest_first:
        q = q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
    else:
        q = q.order_by(StockMovement.created_at.asc(), StockMovement.id.asc())

    if limit is not None:
        q = q.limit(limit)
    return q.all()


def returned_quantities(sale_id: int, store_id: int) -> dict[tuple[int, str], int]:
    """SUM(quantity_change) of the sale's return rows, keyed by (product_id, stock_type)."""
    rows = (
        db.session.query(
            StockMovement.product_id,
            StockMovement.stock_type,
            func.coalesce(func.sum(StockMovement.quantity_change), 0),
        )
        .filter(
            StockMovement.store_id == store_id,
            StockMovement.sale_id == sale_id,
            StockMovement.movement_type == MOVEMENT_RETURN,
        )
        .group_by(StockMovement.product_id, StockMovement.stock_type)
        .all()
    )
    return {(product_id, stock_type): int(total or 0) for product_id, stock_type, total in rows}


def sale_movements_by_item(sale_id: int, store_id: int) -> dict[int, StockMovement]:
    """The `sale` deduction row recorded for each sale item, keyed by sale_item_id."""
    rows = query_movements(
        store_id=store_id,
        sale_id=sale_id,
        movement_type=MOVEMENT_SALE,
        newest_first=False,
    )
    return {m.sale_item_id: m for m in rows if m.sale_item_id is not None}


def latest_movement(product_id: int, store_id: int, stock_type: str) -> StockMovement | None:
    # Within one pool, id order is commit order
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id, store_id=store_id, stock_type=stock_type)
        .order_by(StockMovement.id.desc())
        .first()
    )


def _check_pool(product: Product, stock_type: str) -> dict:
    last = latest_movement(product.id, product.store_id, stock_type)
    cached = product.stock_for(stock_type)
    ledger_value = last.quantity_after if last is not None else None
    return {
        "product_id": product.id,
        "store_id": product.store_id,
        "stock_type": stock_type,
        "cached_quantity": cached,
        "ledger_quantity": ledger_value,
        "last_movement_id": last.id if last is not None else None,
        # A pool with no movements yet has nothing to disagree with
        "consistent": ledger_value is None or ledger_value == cached,
    }


def verify_stock_level(product_id: int, store_id: int, stock_type: str) -> dict:
    """
    Compare a pool's cached value with the newest ledger row.

    Raises IntegrityViolationError on mismatch (a lost update or an
    out-of-band write to the products table).
    """
    if stock_type not in STOCK_TYPES:
        raise ValidationError(f"Unknown stock_type {stock_type!r}")

    product = (
        db.session.query(Product)
        .filter_by(id=product_id, store_id=store_id)
        .populate_existing()
        .first()
    )
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id, "store_id": store_id})

    result = _check_pool(product, stock_type)
    if not result["consistent"]:
        current_app.logger.error(
            "Ledger/stock mismatch product=%s store=%s pool=%s cached=%s ledger=%s",
            product_id, store_id, stock_type, result["cached_quantity"], result["ledger_quantity"],
        )
        raise IntegrityViolationError("Stock level does not match the movement ledger", details=result)
    return result


def audit_store_stock(store_id: int) -> list[dict]:
    """Every (product, pool) of a store whose cached stock disagrees with the ledger."""
    mismatches = []
    products = db.session.query(Product).filter_by(store_id=store_id).order_by(Product.id).all()
    for product in products:
        for stock_type in STOCK_TYPES:
            result = _check_pool(product, stock_type)
            if not result["consistent"]:
                mismatches.append(result)
    if mismatches:
        current_app.logger.warning("Store %s has %d ledger/stock mismatches", store_id, len(mismatches))
    return mismatches
