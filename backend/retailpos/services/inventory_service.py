# Overview: Product stock store; the only writer of Product.stock_venta / stock_deposito.

# backend/retailpos/services/inventory_service.py

from __future__ import annotations

from flask import current_app
from sqlalchemy import or_, update

from ..errors import InsufficientStockError, NotFoundError, StockConflictError, ValidationError
from ..extensions import db
from ..models import Product, StockMovement
from ..models.inventory import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_RESTOCK,
    STOCK_TYPE_DEPOSITO,
    STOCK_TYPE_VENTA,
    STOCK_TYPES,
    stock_field,
)
from . import ledger_service
from .concurrency import lock_for_update, run_with_retry
"""
Stock Store Invariants (authoritative)

- stock_venta >= 0 and stock_deposito >= 0 at all times (also CHECKed in the DB).
- A pool is changed only by a conditional UPDATE
      ... SET stock_x = :after WHERE id = :id AND stock_x = :before
  issued in the same transaction as the StockMovement row recording
  before/after. If another writer changed the pool in between, the UPDATE
  matches no row, StockConflictError is raised, and run_with_retry re-reads
  and tries again. There are no lost updates and no ledger/cache drift.
- *_locked helpers neither retry nor commit; public operations wrap them in
  run_with_retry and commit once per operation.
"""

ADJUSTMENT_TYPES = ("increase", "decrease", "set")


def _require_stock_type(stock_type: str) -> None:
    if stock_type not in STOCK_TYPES:
        raise ValidationError(
            f"stock_type must be one of {', '.join(STOCK_TYPES)}",
            details={"stock_type": stock_type},
        )


def _require_quantity(quantity, *, allow_zero: bool = False, field: str = "quantity") -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"{field} must be an integer", details={field: quantity})
    if quantity < 0 or (quantity == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValidationError(f"{field} must be {qualifier}", details={field: quantity})
    return quantity


def get_product(product_id: int, store_id: int, *, lock: bool = False) -> Product:
    """Fresh read of a product in a store (bypasses the identity map cache)."""
    query = db.session.query(Product).filter_by(id=product_id, store_id=store_id).populate_existing()
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError(
            "Product not found",
            details={"product_id": product_id, "store_id": store_id},
        )
    return product


def update_product_stock(
    product_id: int,
    store_id: int,
    stock_type: str,
    *,
    expected_before: int,
    new_value: int,
) -> None:
    """
    Atomic compare-and-set of one stock pool.

    Raises StockConflictError when the pool no longer holds expected_before.
    """
    field = stock_field(stock_type)
    column = getattr(Product, field)
    stmt = (
        update(Product)
        .where(
            Product.id == product_id,
            Product.store_id == store_id,
            column == expected_before,
        )
        .values({field: new_value, "version_id": Product.version_id + 1})
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise StockConflictError(
            "Stock changed concurrently",
            details={
                "product_id": product_id,
                "store_id": store_id,
                "stock_type": stock_type,
                "expected_before": expected_before,
            },
        )


def apply_stock_change_locked(
    *,
    product_id: int,
    store_id: int,
    stock_type: str,
    quantity_change: int,
    movement_type: str,
    reason: str,
    actor_id: int,
    notes: str | None = None,
    sale_id: int | None = None,
    sale_item_id: int | None = None,
    return_type: str | None = None,
    touch_stock: bool = True,
) -> StockMovement:
    """
    Re-read the pool, write before+change, append the ledger row. No commit.

    touch_stock=False books the movement without changing the pool (defective
    returns); the pool is still compare-and-set to its own value so the row's
    quantity_after is guaranteed current at commit time.
    """
    _require_stock_type(stock_type)
    product = get_product(product_id, store_id, lock=True)

    before = product.stock_for(stock_type)
    after = before + quantity_change if touch_stock else before
    if after < 0:
        raise InsufficientStockError(
            f"Insufficient {stock_type} stock for {product.name}",
            details={
                "product_id": product_id,
                "product_name": product.name,
                "stock_type": stock_type,
                "requested": -quantity_change,
                "available": before,
            },
        )

    update_product_stock(
        product_id,
        store_id,
        stock_type,
        expected_before=before,
        new_value=after,
    )

    return ledger_service.append_movement(
        product_id=product_id,
        store_id=store_id,
        movement_type=movement_type,
        stock_type=stock_type,
        quantity_change=quantity_change,
        quantity_before=before,
        quantity_after=after,
        reason=reason,
        performed_by=actor_id,
        notes=notes,
        sale_id=sale_id,
        sale_item_id=sale_item_id,
        return_type=return_type,
    )


def apply_stock_change(**kwargs) -> StockMovement:
    """apply_stock_change_locked in its own committed transaction, retried on conflict."""
    def _op():
        movement = apply_stock_change_locked(**kwargs)
        db.session.commit()
        return movement

    return run_with_retry(_op)


# =============================================================================
# STOCK MANAGEMENT OPERATIONS
# =============================================================================

def restock_product(
    *,
    product_id: int,
    store_id: int,
    quantity: int,
    actor_id: int,
    notes: str | None = None,
) -> dict:
    """Move units from the warehouse (deposito) to the sales floor (venta)."""
    _require_quantity(quantity)

    def _op():
        warehouse = apply_stock_change_locked(
            product_id=product_id,
            store_id=store_id,
            stock_type=STOCK_TYPE_DEPOSITO,
            quantity_change=-quantity,
            movement_type=MOVEMENT_RESTOCK,
            reason="Stock moved to sales floor",
            actor_id=actor_id,
            notes=notes,
        )
        floor = apply_stock_change_locked(
            product_id=product_id,
            store_id=store_id,
            stock_type=STOCK_TYPE_VENTA,
            quantity_change=quantity,
            movement_type=MOVEMENT_RESTOCK,
            reason="Restocked from warehouse",
            actor_id=actor_id,
            notes=notes,
        )
        db.session.commit()
        return [floor, warehouse]

    movements = run_with_retry(_op)
    current_app.logger.info(
        "Restocked product %s in store %s: %d units deposito -> venta", product_id, store_id, quantity
    )
    return {
        "product": get_product(product_id, store_id),
        "movements": movements,
        "message": f"Successfully restocked {quantity} units",
    }


def adjust_stock(
    *,
    product_id: int,
    store_id: int,
    stock_type: str,
    adjustment_type: str,
    quantity: int,
    reason: str,
    actor_id: int,
    notes: str | None = None,
) -> dict:
    """Increase, decrease or set one pool. Decreasing below zero is refused."""
    _require_stock_type(stock_type)
    _require_quantity(quantity, allow_zero=True)
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError(
            f"adjustment_type must be one of {', '.join(ADJUSTMENT_TYPES)}",
            details={"adjustment_type": adjustment_type},
        )
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required for stock adjustments")

    def _op():
        if adjustment_type == "increase":
            change = quantity
        elif adjustment_type == "decrease":
            change = -quantity
        else:
            current = get_product(product_id, store_id, lock=True).stock_for(stock_type)
            change = quantity - current

        movement = apply_stock_change_locked(
            product_id=product_id,
            store_id=store_id,
            stock_type=stock_type,
            quantity_change=change,
            movement_type=MOVEMENT_ADJUSTMENT,
            reason=str(reason).strip(),
            actor_id=actor_id,
            notes=notes,
        )
        db.session.commit()
        return movement

    movement = run_with_retry(_op)
    current_app.logger.info(
        "Adjusted %s stock of product %s in store %s: %+d (%s)",
        stock_type, product_id, store_id, movement.quantity_change, adjustment_type,
    )
    return {
        "product": get_product(product_id, store_id),
        "movements": [movement],
        "message": f"{stock_type} stock adjusted ({adjustment_type} {quantity})",
    }


def fill_warehouse(
    *,
    product_id: int,
    store_id: int,
    quantity: int,
    reason: str,
    actor_id: int,
    notes: str | None = None,
) -> dict:
    _require_quantity(quantity)
    result = adjust_stock(
        product_id=product_id,
        store_id=store_id,
        stock_type=STOCK_TYPE_DEPOSITO,
        adjustment_type="increase",
        quantity=quantity,
        reason=reason,
        actor_id=actor_id,
        notes=notes,
    )
    result["message"] = f"Successfully added {quantity} units to warehouse"
    return result


def update_sales_floor_stock(
    *,
    product_id: int,
    store_id: int,
    new_quantity: int,
    reason: str,
    actor_id: int,
    notes: str | None = None,
) -> dict:
    """
    Set the sales floor pool to new_quantity.

    The difference is taken from (or given back to) the warehouse, so the
    product's total units never change through this operation.
    """
    _require_quantity(new_quantity, allow_zero=True, field="new_quantity")
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required for stock adjustments")

    def _op():
        product = get_product(product_id, store_id, lock=True)
        difference = new_quantity - product.stock_venta
        movements = []

        if difference > 0 and product.stock_deposito < difference:
            raise InsufficientStockError(
                f"Insufficient warehouse stock for {product.name}",
                details={
                    "product_id": product_id,
                    "stock_type": STOCK_TYPE_DEPOSITO,
                    "requested": difference,
                    "available": product.stock_deposito,
                },
            )

        movements.append(apply_stock_change_locked(
            product_id=product_id,
            store_id=store_id,
            stock_type=STOCK_TYPE_VENTA,
            quantity_change=difference,
            movement_type=MOVEMENT_ADJUSTMENT,
            reason=str(reason).strip(),
            actor_id=actor_id,
            notes=notes,
        ))
        if difference != 0:
            movements.append(apply_stock_change_locked(
                product_id=product_id,
                store_id=store_id,
                stock_type=STOCK_TYPE_DEPOSITO,
                quantity_change=-difference,
                movement_type=MOVEMENT_ADJUSTMENT,
                reason="Auto-adjusted for sales floor change",
                actor_id=actor_id,
                notes=f"Related: {notes or reason}",
            ))
        db.session.commit()
        return movements

    movements = run_with_retry(_op)
    return {
        "product": get_product(product_id, store_id),
        "movements": movements,
        "message": f"Sales floor stock set to {new_quantity} units",
    }


# =============================================================================
# QUERIES
# =============================================================================

def get_stock_movements(product_id: int, store_id: int, limit: int = 50) -> list[StockMovement]:
    get_product(product_id, store_id)
    limit = max(1, min(limit, 500))
    return ledger_service.query_movements(store_id=store_id, product_id=product_id, limit=limit)


def get_low_stock_alerts(store_id: int) -> list[Product]:
    """Active products at or below the minimum of either pool."""
    return (
        db.session.query(Product)
        .filter(
            Product.store_id == store_id,
            Product.is_active.is_(True),
            or_(
                Product.stock_venta <= Product.min_stock_venta,
                Product.stock_deposito <= Product.min_stock_deposito,
            ),
        )
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )
