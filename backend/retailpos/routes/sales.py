# Overview: Flask API routes for the sale lifecycle; parses input and returns JSON responses.

# backend/retailpos/routes/sales.py
"""Sales API routes. The acting user comes from the gateway (X-User-Id)."""

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..errors import PosError
from ..extensions import db
from ..services import document_service, sales_service
from ..validation import parse_sale_request
from ..decorators import require_actor


sales_bp = Blueprint("sales", __name__, url_prefix="/api/stores/<int:store_id>/sales")


def _error_response(e: PosError):
    return jsonify(e.to_dict()), e.http_status


def _unexpected(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("")
@require_actor
def process_sale_route(store_id: int):
    """
    Record a sale.

    Body: items[{product_id, quantity, unit_price?, discount?, stock_type?}],
    payment_method, discount?, notes?, require_payment_confirmation?
    """
    try:
        sale_request = parse_sale_request(request.get_json(silent=True))
        sale = sales_service.process_sale(store_id, sale_request, g.actor_id)
        return jsonify({"sale": sale.to_dict(include_items=True)}), 201

    except PosError as e:
        return _error_response(e)
    except Exception:
        return _unexpected("Failed to process sale")


@sales_bp.get("")
@require_actor
def list_sales_route(store_id: int):
    try:
        result = document_service.list_sales(
            store_id,
            user_id=request.args.get("user_id", type=int),
            payment_method=request.args.get("payment_method") or None,
            payment_status=request.args.get("payment_status") or None,
            start_date=request.args.get("start_date"),
            end_date=request.args.get("end_date"),
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", type=int),
        )
        return jsonify({
            "sales": [s.to_dict() for s in result["sales"]],
            "pagination": result["pagination"],
        }), 200

    except PosError as e:
        return _error_response(e)
    except Exception:
        return _unexpected("Failed to list sales")


@sales_bp.get("/search")
@require_actor
def search_sale_route(store_id: int):
    """Look up a sale by id (all digits) or receipt number."""
    try:
        sale = document_service.search_by_ticket(store_id, request.args.get("ticket", ""))
        return jsonify({"sale": sale.to_dict(include_items=True)}), 200

    except PosError as e:
        return _error_response(e)
    except Exception:
        return _unexpected("Failed to search sales")


@sales_bp.get("/<int:sale_id>")
@require_actor
def get_sale_route(store_id: int, sale_id: int):
    try:
        sale = document_service.get_sale(sale_id, store_id)
        return jsonify({"sale": sale.to_dict(include_items=True)}), 200

    except PosError as e:
        return _error_response(e)
    except Exception:
        return _unexpected("Failed to get sale")


@sales_bp.post("/<int:sale_id>/confirm")
@require_actor
def confirm_sale_route(store_id: int, sale_id: int):
    """pending -> completed; deducts stock."""
    try:
        sale = sales_service.confirm_pending_sale(sale_id, store_id, g.actor_id)
        return jsonify({"sale": sale.to_dict(include_items=True)}), 200

    except PosError as e:
        return _error_response(e)
    except Exception:
        return _unexpected("Failed to confirm sale")


@sales_bp.post("/<int:sale_id>/cancel")
@require_actor
def cancel_sale_route(store_id: int, sale_id: int):
    try:
        sale = sales_service.cancel_pending_sale(sale_id, store_id, g.actor_id)
        return jsonify({"sale": sale.to_dict()}), 200

    except PosError as e:
        return _error_response(e)
    except Exception:
        return _unexpected("Failed to cancel sale")


@sales_bp.post("/<int:sale_id>/refund")
@require_actor
def refund_sale_route(store_id: int, sale_id: int):
    """Full refund of every unit not already returned."""
    try:
        sale = sales_service.refund_sale(sale_id, store_id, g.actor_id)
        return jsonify({"sale": sale.to_dict(include_items=True)}), 200

    except PosError as e:
        return _error_response(e)
    except Exception:
        return _unexpected("Failed to refund sale")


@sales_bp.get("/<int:sale_id>/deductions")
@require_actor
def deduction_status_route(store_id: int, sale_id: int):
    try:
        return jsonify(sales_service.get_deduction_status(sale_id, store_id)), 200

    except PosError as e:
        return _error_response(e)
    except Exception:
        return _unexpected("Failed to get deduction status")


@sales_bp.post("/<int:sale_id>/deductions/reconcile")
@require_actor
def reconcile_deductions_route(store_id: int, sale_id: int):
    try:
        status = sales_service.reconcile_sale_deductions(sale_id, store_id, g.actor_id)
        return jsonify(status), 200

    except PosError as e:
        return _error_response(e)
    except Exception:
        return _unexpected("Failed to reconcile sale deductions")
