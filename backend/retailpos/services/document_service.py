# Overview: Sale aggregate store; receipt numbering, atomic sale persistence, lookups and status transitions.

from __future__ import annotations

from datetime import timedelta
from math import ceil

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..errors import IntegrityViolationError, InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Sale, SaleItem
from ..models.sales import PAYMENT_METHODS, PAYMENT_STATUSES
from ..time_utils import current_year, parse_iso_datetime

RECEIPT_PREFIX = "REC"
RECEIPT_PAD = 6


def format_receipt_number(year: int, sequence: int) -> str:
    return f"{RECEIPT_PREFIX}-{year}-{sequence:0{RECEIPT_PAD}d}"


def latest_receipt_sequence(store_id: int, year: int) -> int | None:
    """Highest sequence used by a store in a calendar year, or None."""
    prefix = f"{RECEIPT_PREFIX}-{year}-"
    # Zero-padded suffixes sort as text; length first keeps order past the pad width
    receipt_number = (
        db.session.query(Sale.receipt_number)
        .filter(Sale.store_id == store_id, Sale.receipt_number.like(f"{prefix}%"))
        .order_by(func.length(Sale.receipt_number).desc(), Sale.receipt_number.desc())
        .limit(1)
        .scalar()
    )
    if receipt_number is None:
        return None
    suffix = receipt_number[len(prefix):]
    if not (suffix.isascii() and suffix.isdecimal()):
        raise IntegrityViolationError(
            "Malformed receipt number",
            details={"store_id": store_id, "receipt_number": receipt_number},
        )
    return int(suffix)


def next_receipt_number(store_id: int, year: int | None = None) -> str:
    """
    Optimistic allocation: current max + 1.

    Two concurrent sales can read the same max; the loser hits the
    (store_id, receipt_number) unique constraint in insert_sale.
    """
    year = year or current_year()
    latest = latest_receipt_sequence(store_id, year)
    return format_receipt_number(year, (latest or 0) + 1)


def insert_sale(header: dict, items: list[dict]) -> Sale:
    """
    Persist a sale header and its items in one transaction.

    Either every row is written or none is. A receipt number collision
    surfaces as IntegrityViolationError.
    """
    if not items:
        raise ValidationError("A sale requires at least one item")

    sale = Sale(**header)
    db.session.add(sale)
    try:
        db.session.flush()
        for item in items:
            db.session.add(SaleItem(sale_id=sale.id, **item))
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        current_app.logger.error(
            "Could not persist sale %s for store %s: %s",
            header.get("receipt_number"), header.get("store_id"), exc.orig,
        )
        raise IntegrityViolationError(
            "Could not record sale: receipt number collision or constraint violation",
            details={
                "store_id": header.get("store_id"),
                "receipt_number": header.get("receipt_number"),
            },
        ) from exc
    return sale


def get_sale(sale_id: int, store_id: int) -> Sale:
    sale = (
        db.session.query(Sale)
        .filter_by(id=sale_id, store_id=store_id)
        .populate_existing()
        .first()
    )
    if sale is None:
        raise NotFoundError("Sale not found", details={"sale_id": sale_id, "store_id": store_id})
    return sale


def get_sale_item(sale: Sale, sale_item_id: int) -> SaleItem:
    for item in sale.items:
        if item.id == sale_item_id:
            return item
    raise NotFoundError(
        "Sale item not found on this sale",
        details={"sale_id": sale.id, "sale_item_id": sale_item_id},
    )


def transition_sale_status(
    sale_id: int,
    store_id: int,
    *,
    from_statuses: tuple[str, ...],
    to_status: str,
) -> Sale:
    """
    Conditional status change: UPDATE ... WHERE payment_status IN from_statuses.

    Does not commit. Raises NotFoundError when the sale does not exist and
    InvalidStateError when it is in any other status (including a concurrent
    transition that won the race).
    """
    stmt = (
        update(Sale)
        .where(
            Sale.id == sale_id,
            Sale.store_id == store_id,
            Sale.payment_status.in_(from_statuses),
        )
        .values(payment_status=to_status, version_id=Sale.version_id + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    sale = get_sale(sale_id, store_id)
    if result.rowcount != 1:
        raise InvalidStateError(
            f"Sale is {sale.payment_status}; expected {' or '.join(from_statuses)}",
            details={
                "sale_id": sale_id,
                "receipt_number": sale.receipt_number,
                "payment_status": sale.payment_status,
                "requested_status": to_status,
            },
        )
    return sale


def update_sale_status(sale_id: int, store_id: int, *, from_statuses: tuple[str, ...], to_status: str) -> Sale:
    sale = transition_sale_status(sale_id, store_id, from_statuses=from_statuses, to_status=to_status)
    db.session.commit()
    return sale


# =============================================================================
# Listing / search
# =============================================================================

def _date_bound(raw: str | None, field: str, *, end: bool):
    if not raw:
        return None
    try:
        value = parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date or datetime", details={field: raw})
    # A bare date as end bound covers the whole day
    if end and len(raw.strip()) == 10:
        value = value + timedelta(days=1)
    return value


def list_sales(
    store_id: int,
    *,
    user_id: int | None = None,
    payment_method: str | None = None,
    payment_status: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    page: int = 1,
    limit: int | None = None,
) -> dict:
    """Sales of a store, newest first, with page metadata."""
    default_limit = current_app.config.get("DEFAULT_PAGE_SIZE", 20)
    max_limit = current_app.config.get("MAX_PAGE_SIZE", 100)
    limit = max(1, min(limit or default_limit, max_limit))
    page = max(1, page or 1)

    if payment_method is not None and payment_method not in PAYMENT_METHODS:
        raise ValidationError("Unknown payment_method", details={"payment_method": payment_method})
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise ValidationError("Unknown payment_status", details={"payment_status": payment_status})

    q = db.session.query(Sale).filter(Sale.store_id == store_id)
    if user_id is not None:
        q = q.filter(Sale.user_id == user_id)
    if payment_method:
        q = q.filter(Sale.payment_method == payment_method)
    if payment_status:
        q = q.filter(Sale.payment_status == payment_status)

    start = _date_bound(start_date, "start_date", end=False)
    end = _date_bound(end_date, "end_date", end=True)
    if start is not None:
        q = q.filter(Sale.created_at >= start)
    if end is not None:
        if len(end_date.strip()) == 10:
            q = q.filter(Sale.created_at < end)
        else:
            q = q.filter(Sale.created_at <= end)

    total = q.count()
    sales = (
        q.order_by(Sale.created_at.desc(), Sale.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "sales": sales,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": ceil(total / limit) if total else 0,
        },
    }


def search_by_ticket(store_id: int, term: str) -> Sale:
    """An all-digit term is a sale id; anything else a receipt number."""
    term = (term or "").strip()
    if not term:
        raise ValidationError("ticket search term is required")

    if term.isascii() and term.isdecimal():
        return get_sale(int(term), store_id)

    sale = db.session.query(Sale).filter_by(store_id=store_id, receipt_number=term).first()
    if sale is None:
        raise NotFoundError("Sale not found", details={"store_id": store_id, "ticket": term})
    return sale
