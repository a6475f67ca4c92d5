# Overview: Flask API routes for product stock management; parses input and returns JSON responses.

# backend/retailpos/routes/stock.py
"""
Product stock routes.

Every write goes through inventory_service, which appends the matching
stock movement in the same transaction as the stock change.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PosError
from ..extensions import db
from ..services import inventory_service, ledger_service
from ..validation import parse_stock_change
from ..decorators import require_actor


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stores/<int:store_id>")


def _operation_response(result: dict):
    return jsonify({
        "product": result["product"].to_dict(),
        "movements": [m.to_dict() for m in result["movements"]],
        "message": result["message"],
    }), 200


def _unexpected(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/products/<int:product_id>/stock/restock")
@require_actor
def restock_route(store_id: int, product_id: int):
    """Move units from the warehouse to the sales floor. Body: {quantity, notes?}"""
    try:
        patch = parse_stock_change(request.get_json(silent=True), required=("quantity",))
        result = inventory_service.restock_product(
            product_id=product_id,
            store_id=store_id,
            quantity=patch["quantity"],
            actor_id=g.actor_id,
            notes=patch["notes"],
        )
        return _operation_response(result)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("Failed to restock product")


@stock_bp.post("/products/<int:product_id>/stock/adjust")
@require_actor
def adjust_route(store_id: int, product_id: int):
    """Body: {stock_type, adjustment_type: increase|decrease|set, quantity, reason, notes?}"""
    try:
        patch = parse_stock_change(
            request.get_json(silent=True),
            required=("stock_type", "adjustment_type", "quantity", "reason"),
        )
        result = inventory_service.adjust_stock(
            product_id=product_id,
            store_id=store_id,
            stock_type=patch["stock_type"],
            adjustment_type=patch["adjustment_type"],
            quantity=patch["quantity"],
            reason=patch["reason"],
            actor_id=g.actor_id,
            notes=patch["notes"],
        )
        return _operation_response(result)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("Failed to adjust stock")


@stock_bp.post("/products/<int:product_id>/stock/fill-warehouse")
@require_actor
def fill_warehouse_route(store_id: int, product_id: int):
    try:
        patch = parse_stock_change(request.get_json(silent=True), required=("quantity", "reason"))
        result = inventory_service.fill_warehouse(
            product_id=product_id,
            store_id=store_id,
            quantity=patch["quantity"],
            reason=patch["reason"],
            actor_id=g.actor_id,
            notes=patch["notes"],
        )
        return _operation_response(result)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("Failed to fill warehouse")


@stock_bp.put("/products/<int:product_id>/stock/sales-floor")
@require_actor
def sales_floor_route(store_id: int, product_id: int):
    """Set the sales floor quantity; the difference moves from/to the warehouse."""
    try:
        patch = parse_stock_change(request.get_json(silent=True), required=("new_quantity", "reason"))
        result = inventory_service.update_sales_floor_stock(
            product_id=product_id,
            store_id=store_id,
            new_quantity=patch["new_quantity"],
            reason=patch["reason"],
            actor_id=g.actor_id,
            notes=patch["notes"],
        )
        return _operation_response(result)
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("Failed to update sales floor stock")


@stock_bp.get("/products/<int:product_id>/stock/movements")
@require_actor
def movements_route(store_id: int, product_id: int):
    try:
        limit = request.args.get("limit", 50, type=int)
        rows = inventory_service.get_stock_movements(product_id, store_id, limit=limit)
        return jsonify({"movements": [m.to_dict() for m in rows]}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("Failed to list stock movements")


@stock_bp.get("/products/<int:product_id>/stock/verify")
@require_actor
def verify_route(store_id: int, product_id: int):
    """Compare cached stock with the ledger; 409 INTEGRITY_VIOLATION on mismatch."""
    try:
        stock_type = request.args.get("stock_type")
        if stock_type:
            checks = [ledger_service.verify_stock_level(product_id, store_id, stock_type)]
        else:
            checks = [
                ledger_service.verify_stock_level(product_id, store_id, "venta"),
                ledger_service.verify_stock_level(product_id, store_id, "deposito"),
            ]
        return jsonify({"checks": checks}), 200
    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _unexpected("Failed to verify stock level")


@stock_bp.get("/stock/low")
@require_actor
def low_stock_route(store_id: int):
    try:
        products = inventory_service.get_low_stock_alerts(store_id)
        return jsonify({"products": [p.to_dict() for p in products]}), 200
    except Exception:
        return _unexpected("Failed to list low stock alerts")
