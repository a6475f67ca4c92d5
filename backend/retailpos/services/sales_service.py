"""
Sale lifecycle: validation, totals, persistence, stock deduction, payment-state
transitions and full refunds.

Deduction is a saga, not a transaction: every sale item is deducted in its own
committed transaction and tagged with (sale_id, sale_item_id). A failure on one
item leaves earlier items deducted and the sale in place; the caller gets an
InsufficientStockError listing both sides, and reconcile_sale_deductions later
deducts only the items still missing their `sale` movement.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PosError,
    ValidationError,
)
from ..extensions import db
from ..models import Sale, Store
from ..models.inventory import MOVEMENT_RETURN, MOVEMENT_SALE, RETURN_CUSTOMER_MISTAKE, STOCK_TYPES
from ..models.sales import (
    PAYMENT_METHODS,
    PAYMENT_STATUS_CANCELLED,
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_REFUNDED,
)
from ..money import ZERO, checked_amount
from ..validation import SaleRequest
from . import document_service, inventory_service, ledger_service, return_service
from .concurrency import run_with_retry


def _get_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if store is None:
        raise NotFoundError("Store not found", details={"store_id": store_id})
    return store


def _validate_lines(store_id: int, request: SaleRequest) -> list[tuple]:
    """
    Resolve every line to its product and check pool availability.

    Quantities are summed per (product, pool) so two lines of the same product
    cannot each pass against the same stock. This is advisory only; deduction
    re-checks atomically.
    """
    if not request.items:
        raise ValidationError("A sale requires at least one item")
    if request.payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"payment_method must be one of {', '.join(PAYMENT_METHODS)}",
            details={"payment_method": request.payment_method},
        )

    resolved = []
    requested: dict[tuple[int, str], int] = {}
    for index, line in enumerate(request.items):
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                details={"index": index, "product_id": line.product_id, "quantity": line.quantity},
            )
        if line.stock_type not in STOCK_TYPES:
            raise ValidationError(
                f"stock_type must be one of {', '.join(STOCK_TYPES)}",
                details={"index": index, "stock_type": line.stock_type},
            )

        product = inventory_service.get_product(line.product_id, store_id)
        if not product.is_active:
            raise InvalidStateError(
                f"Product {product.name} is inactive and cannot be sold",
                details={"product_id": product.id},
            )
        key = (product.id, line.stock_type)
        requested[key] = requested.get(key, 0) + line.quantity
        resolved.append((line, product))

    products = {product.id: product for _, product in resolved}
    for (product_id, stock_type), quantity in requested.items():
        product = products[product_id]
        available = product.stock_for(stock_type)
        if quantity > available:
            raise InsufficientStockError(
                f"Insufficient {stock_type} stock for {product.name}",
                details={
                    "product_id": product_id,
                    "product_name": product.name,
                    "stock_type": stock_type,
                    "requested": quantity,
                    "available": available,
                },
            )
    return resolved


def compute_totals(resolved: list[tuple], tax_rate: Decimal, sale_discount: Decimal) -> tuple[dict, list[dict]]:
    """
    Money math, rounded half-up to cents after every step:

        line.subtotal = unit_price * quantity
        line.total    = line.subtotal - line.discount
        subtotal      = sum(line.total)
        tax           = subtotal * tax_rate / 100
        total         = subtotal + tax - sale_discount
    """
    sale_discount = checked_amount(sale_discount or ZERO, "discount")
    if sale_discount < 0:
        raise ValidationError("discount cannot be negative", details={"discount": str(sale_discount)})

    items = []
    subtotal = ZERO
    for line, product in resolved:
        unit_price = checked_amount(line.unit_price if line.unit_price is not None else product.price, "unit_price")
        if unit_price < 0:
            raise ValidationError("unit_price cannot be negative", details={"product_id": product.id})
        line_discount = checked_amount(line.discount or ZERO, "discount")
        if line_discount < 0:
            raise ValidationError("discount cannot be negative", details={"product_id": product.id})

        line_subtotal = checked_amount(unit_price * line.quantity, "subtotal")
        line_total = checked_amount(line_subtotal - line_discount, "total")
        if line_total < 0:
            raise ValidationError(
                "Line discount exceeds line subtotal",
                details={"product_id": product.id, "subtotal": str(line_subtotal), "discount": str(line_discount)},
            )
        subtotal = checked_amount(subtotal + line_total, "subtotal")
        items.append({
            "product_id": product.id,
            "product_name": product.name,
            "product_sku": product.sku,
            "product_barcode": product.barcode,
            "quantity": line.quantity,
            "unit_price": unit_price,
            "subtotal": line_subtotal,
            "discount": line_discount,
            "total": line_total,
            "stock_type": line.stock_type,
        })

    tax = checked_amount(subtotal * Decimal(tax_rate or 0) / Decimal(100), "tax")
    total = checked_amount(subtotal + tax - sale_discount, "total")
    if total < 0:
        raise ValidationError("Sale discount exceeds sale total", details={"discount": str(sale_discount)})

    totals = {"subtotal": subtotal, "tax": tax, "discount": sale_discount, "total": total}
    return totals, items


# =============================================================================
# DEDUCTION SAGA
# =============================================================================

def _deduct_sale_items(sale_id: int, store_id: int, actor_id: int) -> dict:
    """
    Deduct every item that has no `sale` movement yet, one committed
    transaction per item. Items already deducted are skipped.
    """
    sale = document_service.get_sale(sale_id, store_id)
    receipt_number = sale.receipt_number
    items = [(i.id, i.product_id, i.stock_type, i.quantity) for i in sale.items]
    existing = ledger_service.sale_movements_by_item(sale_id, store_id)

    deducted, skipped, failed = [], [], []
    for item_id, product_id, stock_type, quantity in items:
        if item_id in existing:
            skipped.append(item_id)
            continue
        try:
            movement = inventory_service.apply_stock_change(
                product_id=product_id,
                store_id=store_id,
                stock_type=stock_type,
                quantity_change=-quantity,
                movement_type=MOVEMENT_SALE,
                reason=f"Sale {receipt_number}",
                actor_id=actor_id,
                sale_id=sale_id,
                sale_item_id=item_id,
            )
            deducted.append({
                "sale_item_id": item_id,
                "product_id": product_id,
                "stock_type": stock_type,
                "quantity": quantity,
                "movement_id": movement.id,
            })
        except (PosError, SQLAlchemyError) as exc:
            db.session.rollback()
            entry = {
                "sale_item_id": item_id,
                "product_id": product_id,
                "stock_type": stock_type,
                "quantity": quantity,
                "error": str(exc),
            }
            if isinstance(exc, PosError):
                entry["code"] = exc.code
                entry["available"] = exc.details.get("available")
            failed.append(entry)
            current_app.logger.error(
                "Stock deduction failed for sale %s (%s) item %s product %s pool %s qty %s: %s",
                sale_id, receipt_number, item_id, product_id, stock_type, quantity, exc,
            )

    outcome = {
        "sale_id": sale_id,
        "receipt_number": receipt_number,
        "deducted_items": deducted,
        "skipped_items": skipped,
        "failed_items": failed,
    }
    if failed:
        current_app.logger.warning(
            "Sale %s (%s) is only partially deducted: %d failed, %d deducted; reconcile required",
            sale_id, receipt_number, len(failed), len(deducted),
        )
        raise InsufficientStockError(
            f"Sale {receipt_number} was recorded but stock deduction failed for {len(failed)} item(s)",
            details=outcome,
        )
    return outcome


def get_deduction_status(sale_id: int, store_id: int) -> dict:
    """Per-item view of which sale items have their `sale` movement."""
    sale = document_service.get_sale(sale_id, store_id)
    movements = ledger_service.sale_movements_by_item(sale_id, store_id)

    items = []
    for item in sale.items:
        movement = movements.get(item.id)
        items.append({
            "sale_item_id": item.id,
            "product_id": item.product_id,
            "stock_type": item.stock_type,
            "quantity": item.quantity,
            "deducted": movement is not None,
            "movement_id": movement.id if movement is not None else None,
        })

    expected = sale.payment_status in (PAYMENT_STATUS_COMPLETED, PAYMENT_STATUS_REFUNDED)
    missing = [i["sale_item_id"] for i in items if not i["deducted"]]
    return {
        "sale_id": sale.id,
        "receipt_number": sale.receipt_number,
        "payment_status": sale.payment_status,
        "deduction_expected": expected,
        "items": items,
        "missing_items": missing if expected else [],
        "complete": (not missing) if expected else True,
    }


def reconcile_sale_deductions(sale_id: int, store_id: int, actor_id: int) -> dict:
    """Deduct the items of a completed sale that are still missing their `sale` movement."""
    sale = document_service.get_sale(sale_id, store_id)
    if sale.payment_status != PAYMENT_STATUS_COMPLETED:
        raise InvalidStateError(
            "Only completed sales can be reconciled",
            details={"sale_id": sale_id, "payment_status": sale.payment_status},
        )
    outcome = _deduct_sale_items(sale_id, store_id, actor_id)
    current_app.logger.info(
        "Reconciled sale %s (%s): %d item(s) deducted",
        sale_id, outcome["receipt_number"], len(outcome["deducted_items"]),
    )
    return get_deduction_status(sale_id, store_id)


def _require_fully_deducted(sale: Sale) -> None:
    status = get_deduction_status(sale.id, sale.store_id)
    if status["missing_items"]:
        raise InvalidStateError(
            "Sale has items without a stock deduction; reconcile it first",
            details={
                "sale_id": sale.id,
                "receipt_number": sale.receipt_number,
                "missing_items": status["missing_items"],
            },
        )


# =============================================================================
# LIFECYCLE
# =============================================================================

def process_sale(
    store_id: int,
    request: SaleRequest,
    actor_id: int,
    require_payment_confirmation: bool | None = None,
) -> Sale:
    """
    Validate, price, persist and (unless payment is pending) deduct a sale.

    Raises InsufficientStockError after the sale is persisted if any item
    could not be deducted; the sale stays recorded (see module docstring).
    """
    if require_payment_confirmation is None:
        require_payment_confirmation = request.require_payment_confirmation

    store = _get_store(store_id)
    resolved = _validate_lines(store_id, request)
    totals, items = compute_totals(resolved, store.tax_rate, request.discount)

    status = PAYMENT_STATUS_PENDING if require_payment_confirmation else PAYMENT_STATUS_COMPLETED
    receipt_number = document_service.next_receipt_number(store_id)
    sale = document_service.insert_sale(
        {
            "store_id": store_id,
            "user_id": actor_id,
            "payment_method": request.payment_method,
            "payment_status": status,
            "receipt_number": receipt_number,
            "notes": request.notes,
            **totals,
        },
        items,
    )
    sale_id = sale.id
    current_app.logger.info(
        "Sale %s (%s) recorded in store %s: %d item(s), total %s, status %s",
        sale_id, receipt_number, store_id, len(items), totals["total"], status,
    )

    if status == PAYMENT_STATUS_COMPLETED:
        _deduct_sale_items(sale_id, store_id, actor_id)

    return document_service.get_sale(sale_id, store_id)


def confirm_pending_sale(sale_id: int, store_id: int, actor_id: int | None = None) -> Sale:
    """pending -> completed, then deduct stock for every item."""
    sale = document_service.update_sale_status(
        sale_id,
        store_id,
        from_statuses=(PAYMENT_STATUS_PENDING,),
        to_status=PAYMENT_STATUS_COMPLETED,
    )
    receipt_number = sale.receipt_number
    actor = actor_id if actor_id is not None else sale.user_id
    current_app.logger.info("Sale %s (%s) confirmed", sale_id, receipt_number)

    _deduct_sale_items(sale_id, store_id, actor)
    return document_service.get_sale(sale_id, store_id)


def cancel_pending_sale(sale_id: int, store_id: int, actor_id: int | None = None) -> Sale:
    """pending -> cancelled. Pending sales never touched stock, so nothing is restored."""
    sale = document_service.update_sale_status(
        sale_id,
        store_id,
        from_statuses=(PAYMENT_STATUS_PENDING,),
        to_status=PAYMENT_STATUS_CANCELLED,
    )
    current_app.logger.info("Sale %s (%s) cancelled by user %s", sale_id, sale.receipt_number, actor_id)
    return sale


def refund_sale(sale_id: int, store_id: int, actor_id: int) -> Sale:
    """
    Full refund: restore every unit not already returned, then mark refunded.

    Status change and stock restoration commit together. Items returned
    earlier through return_items_batch are not restored a second time.
    """
    sale = document_service.get_sale(sale_id, store_id)
    if sale.payment_status == PAYMENT_STATUS_REFUNDED:
        raise InvalidStateError(
            "Sale is already refunded",
            details={"sale_id": sale_id, "receipt_number": sale.receipt_number},
        )
    if sale.payment_status != PAYMENT_STATUS_COMPLETED:
        raise InvalidStateError(
            f"Cannot refund a {sale.payment_status} sale",
            details={"sale_id": sale_id, "payment_status": sale.payment_status},
        )
    _require_fully_deducted(sale)

    def _op():
        locked = document_service.transition_sale_status(
            sale_id,
            store_id,
            from_statuses=(PAYMENT_STATUS_COMPLETED,),
            to_status=PAYMENT_STATUS_REFUNDED,
        )
        receipt_number = locked.receipt_number
        remaining = return_service.remaining_by_item(locked)
        restored = 0
        for item in locked.items:
            quantity = remaining[item.id]["remaining_quantity"]
            if quantity <= 0:
                continue
            inventory_service.apply_stock_change_locked(
                product_id=item.product_id,
                store_id=store_id,
                stock_type=item.stock_type,
                quantity_change=quantity,
                movement_type=MOVEMENT_RETURN,
                reason=f"Refund {receipt_number}",
                actor_id=actor_id,
                sale_id=sale_id,
                sale_item_id=item.id,
                return_type=RETURN_CUSTOMER_MISTAKE,
            )
            restored += quantity
        db.session.commit()
        return receipt_number, restored

    receipt_number, restored = run_with_retry(_op)
    current_app.logger.info(
        "Sale %s (%s) refunded by user %s: %d unit(s) restored",
        sale_id, receipt_number, actor_id, restored,
    )
    return document_service.get_sale(sale_id, store_id)
