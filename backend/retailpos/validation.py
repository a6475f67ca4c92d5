from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .errors import ValidationError
from .models.inventory import RETURN_TYPES, STOCK_TYPE_VENTA, STOCK_TYPES
from .models.sales import PAYMENT_METHODS
from .money import ZERO, to_money


@dataclass(frozen=True)
class SaleLineRequest:
    product_id: int
    quantity: int
    unit_price: Decimal | None = None  # None: use the product's current price
    discount: Decimal = ZERO
    stock_type: str = STOCK_TYPE_VENTA


@dataclass(frozen=True)
class SaleRequest:
    items: list[SaleLineRequest]
    payment_method: str
    discount: Decimal = ZERO
    notes: str | None = None
    require_payment_confirmation: bool = False


@dataclass(frozen=True)
class ReturnLineRequest:
    sale_item_id: int
    product_id: int
    stock_type: str
    quantity: int
    return_type: str
    notes: str | None = field(default=None, compare=False)


def coerce_int(value: Any, name: str) -> int:
    """Strict integer coercion: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer", details={"field": name})
        if "e" in stripped.lower():
            raise ValidationError(
                f"{name} must be a plain integer (scientific notation not allowed)",
                details={"field": name},
            )
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)", details={"field": name})
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer", details={"field": name})
    if isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal", details={"field": name})
    raise ValidationError(f"{name} must be an integer", details={"field": name})


def coerce_positive_int(value: Any, name: str) -> int:
    number = coerce_int(value, name)
    if number <= 0:
        raise ValidationError(f"{name} must be > 0", details={"field": name, name: number})
    return number


def _choice(value: Any, name: str, allowed: tuple[str, ...], default: str | None = None) -> str:
    if value is None and default is not None:
        return default
    if not isinstance(value, str) or value not in allowed:
        raise ValidationError(
            f"{name} must be one of {', '.join(allowed)}",
            details={"field": name, name: value},
        )
    return value


def _optional_text(value: Any, name: str, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if max_length and len(text) > max_length:
        raise ValidationError(f"{name} exceeds max length {max_length}", details={"field": name})
    return text or None


def _require_object(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def _require_list(value: Any, name: str) -> list:
    if not isinstance(value, list) or not value:
        raise ValidationError(f"{name} must be a non-empty list", details={"field": name})
    return value


def parse_sale_request(payload: Any) -> SaleRequest:
    """JSON body of POST /sales -> SaleRequest (400 on any malformed field)."""
    payload = _require_object(payload)
    raw_items = _require_list(payload.get("items"), "items")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object", details={"index": index})
        unit_price = raw.get("unit_price")
        items.append(SaleLineRequest(
            product_id=coerce_positive_int(raw.get("product_id"), "product_id"),
            quantity=coerce_positive_int(raw.get("quantity"), "quantity"),
            unit_price=None if unit_price is None else to_money(unit_price, "unit_price"),
            discount=to_money(raw.get("discount"), "discount"),
            stock_type=_choice(raw.get("stock_type"), "stock_type", STOCK_TYPES, default=STOCK_TYPE_VENTA),
        ))

    confirmation = payload.get("require_payment_confirmation", False)
    if not isinstance(confirmation, bool):
        raise ValidationError("require_payment_confirmation must be a boolean")

    return SaleRequest(
        items=items,
        payment_method=_choice(payload.get("payment_method"), "payment_method", PAYMENT_METHODS),
        discount=to_money(payload.get("discount"), "discount"),
        notes=_optional_text(payload.get("notes"), "notes"),
        require_payment_confirmation=confirmation,
    )


def parse_return_lines(payload: Any) -> list[ReturnLineRequest]:
    """JSON body of POST /returns ({"items": [...]}) -> list of ReturnLineRequest."""
    payload = _require_object(payload)
    raw_items = _require_list(payload.get("items"), "items")

    lines = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object", details={"index": index})
        missing = [k for k in ("sale_item_id", "product_id", "stock_type", "quantity", "return_type") if k not in raw]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={"index": index, "missing": missing},
            )
        lines.append(ReturnLineRequest(
            sale_item_id=coerce_positive_int(raw["sale_item_id"], "sale_item_id"),
            product_id=coerce_positive_int(raw["product_id"], "product_id"),
            stock_type=_choice(raw["stock_type"], "stock_type", STOCK_TYPES),
            quantity=coerce_positive_int(raw["quantity"], "quantity"),
            return_type=_choice(raw["return_type"], "return_type", RETURN_TYPES),
            notes=_optional_text(raw.get("notes"), "notes"),
        ))
    return lines


def parse_stock_change(payload: Any, *, required: tuple[str, ...]) -> dict:
    """Body of the product stock endpoints: quantity fields plus reason/notes."""
    payload = _require_object(payload)
    missing = [k for k in required if payload.get(k) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", details={"missing": missing})

    patch: dict = {}
    for key in ("quantity", "new_quantity"):
        if key in payload:
            patch[key] = coerce_int(payload[key], key)
    if "stock_type" in payload:
        patch["stock_type"] = _choice(payload["stock_type"], "stock_type", STOCK_TYPES)
    if "adjustment_type" in payload:
        patch["adjustment_type"] = _choice(
            payload["adjustment_type"], "adjustment_type", ("increase", "decrease", "set")
        )
    patch["reason"] = _optional_text(payload.get("reason"), "reason", max_length=255)
    patch["notes"] = _optional_text(payload.get("notes"), "notes")
    return patch
